"""Real-time listener state estimation from biometric, context and manual signals."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from statistics import fmean
from typing import Sequence

from resonance.biometrics import BiometricReading
from resonance.config import StateEngineConfig
from resonance.models import ActivityContext, DataSource, MusicNeed, StateVector

# Baseline (focus, valence) for each context before stress adjustment.
_CONTEXT_BASELINES: dict[ActivityContext, tuple[float, float]] = {
    ActivityContext.WORKOUT: (0.40, 0.70),
    ActivityContext.POST_WORKOUT: (0.40, 0.65),
    ActivityContext.WORK: (0.70, 0.50),
    ActivityContext.DEEP_WORK: (0.85, 0.50),
    ActivityContext.COMMUTE: (0.40, 0.55),
    ActivityContext.RELAXATION: (0.30, 0.65),
    ActivityContext.PRE_SLEEP: (0.20, 0.55),
    ActivityContext.MORNING: (0.50, 0.55),
    ActivityContext.SOCIAL: (0.30, 0.70),
    ActivityContext.UNKNOWN: (0.50, 0.50),
}

_FORCED_NEEDS: dict[ActivityContext, MusicNeed] = {
    ActivityContext.WORKOUT: MusicNeed.ENERGIZE,
    ActivityContext.DEEP_WORK: MusicNeed.FOCUS,
    ActivityContext.PRE_SLEEP: MusicNeed.CALM,
    ActivityContext.POST_WORKOUT: MusicNeed.TRANSITION,
}

_WAKEFUL_CONTEXTS = frozenset({ActivityContext.MORNING, ActivityContext.WORK, ActivityContext.COMMUTE})

LOW_ENERGY_THRESHOLD = 0.3
HIGH_AROUSAL_THRESHOLD = 0.6


@dataclass(frozen=True)
class ManualMoodInput:
    valence: float
    energy: float
    recorded_at: datetime


@dataclass(frozen=True)
class TimeOfDayPrior:
    """Typical state for this time of day, learned from listening history."""

    energy: float
    valence: float = 0.5
    focus: float = 0.5


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _blend(current: float, target: float, weight: float) -> float:
    return (1.0 - weight) * current + weight * target


def trend_per_minute(readings: Sequence[BiometricReading]) -> float:
    """Least-squares slope of the readings in units per minute, 0 when undefined."""
    if len(readings) < 2:
        return 0.0
    origin = readings[0].recorded_at
    xs = [(reading.recorded_at - origin).total_seconds() / 60.0 for reading in readings]
    ys = [reading.value for reading in readings]
    mean_x = fmean(xs)
    mean_y = fmean(ys)
    denominator = sum((x - mean_x) ** 2 for x in xs)
    if denominator == 0:
        return 0.0
    return sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys)) / denominator


def _window(readings: Sequence[BiometricReading], now: datetime, minutes: float) -> list[BiometricReading]:
    start = now - timedelta(minutes=minutes)
    return sorted(
        (reading for reading in readings if start <= reading.recorded_at <= now),
        key=lambda reading: reading.recorded_at,
    )


def infer_need(
    context: ActivityContext,
    arousal: float,
    energy: float,
    stress: float,
    config: StateEngineConfig = StateEngineConfig(),
) -> MusicNeed:
    if stress > config.calm_stress_threshold:
        return MusicNeed.CALM
    if context in _FORCED_NEEDS:
        return _FORCED_NEEDS[context]
    if energy < LOW_ENERGY_THRESHOLD and context in _WAKEFUL_CONTEXTS:
        return MusicNeed.ENERGIZE
    if context is ActivityContext.WORK:
        return MusicNeed.FOCUS
    if context is ActivityContext.RELAXATION and arousal > HIGH_AROUSAL_THRESHOLD:
        return MusicNeed.CALM
    return MusicNeed.MAINTAIN


class StateEstimator:
    """Turns the latest signal windows into a StateVector on each tick.

    Missing signals never fail an estimate; the affected dimensions fall back
    to 0.5 and the confidence drops accordingly.
    """

    def __init__(self, config: StateEngineConfig = StateEngineConfig()) -> None:
        self.config = config
        self.latest: StateVector | None = None

    def _arousal(self, heart_rates: Sequence[BiometricReading]) -> float:
        config = self.config
        span = config.max_heart_rate - config.resting_heart_rate
        level = (heart_rates[-1].value - config.resting_heart_rate) / span
        trend = _clamp(trend_per_minute(heart_rates) / config.hr_trend_scale, -1.0, 1.0)
        return _clamp(level + config.trend_weight * trend)

    def _stress(self, hrv_samples: Sequence[BiometricReading]) -> float:
        config = self.config
        level = 1.0 - config.hrv_stress_weight * hrv_samples[-1].value / config.baseline_hrv
        trend = _clamp(trend_per_minute(hrv_samples) / config.hrv_trend_scale, -1.0, 1.0)
        return _clamp(level - config.trend_weight * trend)

    def estimate(
        self,
        now: datetime,
        heart_rates: Sequence[BiometricReading] = (),
        hrv_samples: Sequence[BiometricReading] = (),
        context: ActivityContext = ActivityContext.UNKNOWN,
        manual_mood: ManualMoodInput | None = None,
        prior: TimeOfDayPrior | None = None,
    ) -> StateVector:
        config = self.config
        context = ActivityContext(context)
        hr_window = _window(heart_rates, now, config.heart_rate_window_minutes)
        hrv_window = _window(hrv_samples, now, config.hrv_window_minutes)
        sources: set[DataSource] = set()

        arousal = 0.5
        if hr_window:
            arousal = self._arousal(hr_window)
            sources.add(DataSource.HEART_RATE)
        stress = 0.5
        if hrv_window:
            stress = self._stress(hrv_window)
            sources.add(DataSource.HRV)

        energy = 0.6 * arousal + 0.4 * (1.0 - stress)
        base_focus, base_valence = _CONTEXT_BASELINES[context]
        focus = _clamp(base_focus - 0.3 * max(0.0, stress - 0.5))
        valence = _clamp(base_valence - 0.4 * (stress - 0.5))

        if prior is not None:
            weight = config.prior_weight if sources else config.prior_weight_without_biometrics
            energy = _blend(energy, prior.energy, weight)
            valence = _blend(valence, prior.valence, weight)
            focus = _blend(focus, prior.focus, weight)
            sources.add(DataSource.HISTORICAL_PATTERN)

        if manual_mood is not None:
            age_minutes = max(0.0, (now - manual_mood.recorded_at).total_seconds() / 60.0)
            weight = config.manual_mood_weight * max(0.0, 1.0 - age_minutes / config.manual_mood_decay_minutes)
            if weight > 0:
                valence = _blend(valence, manual_mood.valence, weight)
                energy = _blend(energy, manual_mood.energy, weight)
                sources.add(DataSource.MANUAL_MOOD_INPUT)

        energy = _clamp(energy)
        state = StateVector(
            arousal=arousal,
            energy=energy,
            focus=_clamp(focus),
            stress=stress,
            valence=_clamp(valence),
            context=context,
            inferred_need=infer_need(context, arousal, energy, stress, config),
            confidence=0.5 * bool(hr_window) + 0.5 * bool(hrv_window),
            data_sources=frozenset(sources),
            timestamp=now,
        )
        self.latest = state
        return state


def estimate_state(
    now: datetime,
    heart_rates: Sequence[BiometricReading] = (),
    hrv_samples: Sequence[BiometricReading] = (),
    context: ActivityContext = ActivityContext.UNKNOWN,
    manual_mood: ManualMoodInput | None = None,
    prior: TimeOfDayPrior | None = None,
    config: StateEngineConfig = StateEngineConfig(),
) -> StateVector:
    return StateEstimator(config).estimate(now, heart_rates, hrv_samples, context, manual_mood, prior)
