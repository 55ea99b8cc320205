"""Per-play impact measurement consumed by the effect learner."""

from __future__ import annotations

from dataclasses import dataclass

from resonance.config import LearningConfig
from resonance.models import PlaybackEvent

NEUTRAL_SCORE = 0.5


@dataclass(frozen=True)
class ImpactScore:
    """Bounded effect of a single play. Never persisted."""

    calm: float
    energy: float
    focus: float
    mood_lift: float
    was_skipped: bool
    has_biometric_data: bool
    skip_penalty: float = 0.0
    completion_bonus: float = 0.0


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def skip_penalty(event: PlaybackEvent, config: LearningConfig = LearningConfig()) -> float:
    """Two-tier penalty: a skip before the early threshold is a strong rejection."""
    if not event.was_skipped:
        return 0.0
    if event.listen_percentage < config.early_skip_threshold:
        return config.early_skip_penalty
    return config.late_skip_penalty


def completion_bonus(event: PlaybackEvent, config: LearningConfig = LearningConfig()) -> float:
    return (event.listen_percentage - config.completion_pivot) * config.completion_weight


def compute_impact(event: PlaybackEvent, config: LearningConfig = LearningConfig()) -> ImpactScore:
    penalty = skip_penalty(event, config)
    bonus = completion_bonus(event, config)
    behavioral = NEUTRAL_SCORE + bonus + penalty

    calm = energy = focus = behavioral
    hr = None if event.hr_delta is None else _clamp(event.hr_delta / config.hr_normalization, -1.0, 1.0)
    hrv = None if event.hrv_delta is None else _clamp(event.hrv_delta / config.hrv_normalization, -1.0, 1.0)

    if hr is not None and hrv is not None:
        calm += config.hrv_calm_weight * hrv - config.hr_calm_weight * hr
        energy += config.hr_energy_weight * hr
        focus += config.hrv_focus_weight * hrv
    elif hrv is not None:
        calm += config.single_signal_calm_weight * hrv
        focus += config.hrv_focus_weight * hrv
    elif hr is not None:
        calm -= config.single_signal_calm_weight * hr
        energy += config.hr_energy_weight * hr

    calm, energy, focus = _clamp(calm), _clamp(energy), _clamp(focus)
    return ImpactScore(
        calm=calm,
        energy=energy,
        focus=focus,
        mood_lift=_clamp(0.4 * calm + 0.3 * energy + 0.3 * focus),
        was_skipped=event.was_skipped,
        has_biometric_data=hr is not None or hrv is not None,
        skip_penalty=penalty,
        completion_bonus=bonus,
    )
