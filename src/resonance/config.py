"""Tunable constants for learning, session reconstruction, state estimation and ranking."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
import json
from pathlib import Path

DEFAULT_PREFERENCES_PATH = Path.home() / ".resonance" / "preferences.json"


@dataclass(frozen=True)
class LearningConfig:
    """Impact heuristics and EMA parameters.

    The weights are plausible defaults rather than derived values, so every one
    of them can be overridden per run.
    """

    early_skip_threshold: float = 0.15
    early_skip_penalty: float = -0.3
    late_skip_penalty: float = -0.15
    completion_pivot: float = 0.5
    completion_weight: float = 0.2
    hrv_normalization: float = 10.0
    hr_normalization: float = 10.0
    hrv_calm_weight: float = 0.5
    hr_calm_weight: float = 0.3
    hr_energy_weight: float = 0.3
    hrv_focus_weight: float = 0.2
    single_signal_calm_weight: float = 0.8
    cold_start_samples: int = 5
    cold_start_alpha: float = 0.4
    steady_state_alpha: float = 0.2
    full_confidence_samples: int = 20
    behavioral_confidence_cap: float = 0.7
    familiarity_full_plays: int = 10
    batch_size: int = 100


@dataclass(frozen=True)
class SessionConfig:
    gap_minutes: float = 30.0
    minimum_session_minutes: float = 5.0
    biometric_padding_minutes: float = 5.0
    sleep_window_hours: float = 12.0
    minimum_night_sleep_hours: float = 3.0
    sleep_period_gap_minutes: float = 60.0
    target_sleep_hours: float = 8.0
    deep_sleep_target_fraction: float = 0.25
    post_workout_minutes: float = 60.0
    batch_size: int = 50


@dataclass(frozen=True)
class StateEngineConfig:
    update_interval_seconds: float = 30.0
    heart_rate_window_minutes: float = 5.0
    hrv_window_minutes: float = 10.0
    manual_mood_decay_minutes: float = 15.0
    manual_mood_weight: float = 0.7
    resting_heart_rate: float = 70.0
    max_heart_rate_base: float = 220.0
    user_age: int = 35
    baseline_hrv: float = 50.0
    hrv_stress_weight: float = 0.6
    hr_trend_scale: float = 10.0
    hrv_trend_scale: float = 5.0
    trend_weight: float = 0.1
    prior_weight: float = 0.2
    prior_weight_without_biometrics: float = 0.5
    calm_stress_threshold: float = 0.7

    @property
    def max_heart_rate(self) -> float:
        return self.max_heart_rate_base - self.user_age


@dataclass(frozen=True)
class UserPreferences:
    """User-tunable ranking weights and behavioral rules.

    Ranking weights are normalized by their sum at scoring time, so they need
    not add up to 1.0.
    """

    bpm_weight: float = 0.15
    energy_weight: float = 0.20
    familiarity_weight: float = 0.15
    historical_weight: float = 0.25
    context_weight: float = 0.25
    recency_weight: float = 0.2
    avoid_recent_minutes: int = 60
    max_same_artist_in_row: int = 2
    prefer_familiar_in_stress: bool = True
    enable_smooth_transitions: bool = True
    morning_max_bpm: float = 120.0
    night_max_bpm: float = 100.0
    night_start_hour: int = 21
    morning_end_hour: int = 9

    @property
    def weight_sum(self) -> float:
        return (
            self.bpm_weight
            + self.energy_weight
            + self.familiarity_weight
            + self.historical_weight
            + self.context_weight
        )

    def validated(self) -> UserPreferences:
        """Return a copy with every value clamped to its supported range."""

        def _clamp(value: float, low: float, high: float) -> float:
            return max(low, min(high, value))

        return replace(
            self,
            bpm_weight=max(0.0, self.bpm_weight),
            energy_weight=max(0.0, self.energy_weight),
            familiarity_weight=max(0.0, self.familiarity_weight),
            historical_weight=max(0.0, self.historical_weight),
            context_weight=max(0.0, self.context_weight),
            recency_weight=_clamp(self.recency_weight, 0.0, 1.0),
            avoid_recent_minutes=int(_clamp(self.avoid_recent_minutes, 0, 480)),
            max_same_artist_in_row=int(_clamp(self.max_same_artist_in_row, 1, 10)),
            morning_max_bpm=_clamp(self.morning_max_bpm, 60.0, 200.0),
            night_max_bpm=_clamp(self.night_max_bpm, 40.0, 150.0),
            night_start_hour=int(_clamp(self.night_start_hour, 18, 23)),
            morning_end_hour=int(_clamp(self.morning_end_hour, 5, 12)),
        )


PRESETS: dict[str, UserPreferences] = {
    "focus": UserPreferences(
        familiarity_weight=0.25,
        context_weight=0.30,
        night_max_bpm=90.0,
    ),
    "workout": UserPreferences(
        bpm_weight=0.30,
        energy_weight=0.35,
        familiarity_weight=0.10,
        morning_max_bpm=180.0,
        night_max_bpm=150.0,
    ),
    "relaxation": UserPreferences(
        energy_weight=0.10,
        historical_weight=0.35,
        morning_max_bpm=100.0,
        night_max_bpm=80.0,
    ),
}


def get_preset(name: str) -> UserPreferences:
    if name not in PRESETS:
        valid = ", ".join(sorted(PRESETS))
        raise ValueError(f"Unknown preset '{name}'. Expected one of: {valid}")
    return PRESETS[name].validated()


def load_preferences(path: Path | None = None) -> UserPreferences:
    """Load preferences from JSON, falling back to defaults when absent."""
    path = path or DEFAULT_PREFERENCES_PATH
    if not path.exists():
        return UserPreferences()
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object in {path}")
    known = {field.name for field in fields(UserPreferences)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown preference keys in {path}: {', '.join(unknown)}")
    return UserPreferences(**data).validated()


def save_preferences(preferences: UserPreferences, path: Path | None = None) -> Path:
    path = path or DEFAULT_PREFERENCES_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(asdict(preferences), indent=2), encoding="utf-8")
    return path
