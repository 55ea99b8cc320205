from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from resonance.biometrics import BiometricReading
from resonance.models import ActivityContext, DataSource, MusicNeed, StateVector
from resonance.state_engine import (
    ManualMoodInput,
    StateEstimator,
    TimeOfDayPrior,
    estimate_state,
    infer_need,
    trend_per_minute,
)

NOW = datetime(2024, 3, 5, 10, 0)


def _series(*values: float, step_minutes: float = 1.0) -> list[BiometricReading]:
    start = NOW - timedelta(minutes=step_minutes * (len(values) - 1))
    return [
        BiometricReading(value=value, recorded_at=start + timedelta(minutes=step_minutes * index))
        for index, value in enumerate(values)
    ]


def test_no_signals_yields_neutral_state() -> None:
    assert estimate_state(NOW) == StateVector.neutral(NOW)


def test_low_hrv_forces_calm_even_during_workout() -> None:
    state = estimate_state(NOW, hrv_samples=_series(50 / 3, 50 / 3), context=ActivityContext.WORKOUT)

    assert state.stress == pytest.approx(0.8)
    assert state.inferred_need is MusicNeed.CALM
    assert state.data_sources == frozenset({DataSource.HRV})
    assert state.confidence == 0.5


def test_heart_rate_level_maps_to_arousal() -> None:
    state = estimate_state(NOW, heart_rates=_series(127.5, 127.5, 127.5))

    assert state.arousal == pytest.approx(0.5)
    assert state.energy == pytest.approx(0.5)


def test_rising_heart_rate_raises_arousal() -> None:
    flat = estimate_state(NOW, heart_rates=_series(100, 100, 100))
    rising = estimate_state(NOW, heart_rates=_series(95, 100, 105))

    assert rising.arousal > flat.arousal


def test_latest_heart_rate_sets_arousal_level() -> None:
    state = estimate_state(NOW, heart_rates=_series(70, 70, 70, 70, 150))

    # Slope of 16 bpm/min saturates the trend nudge at +0.1.
    assert state.arousal == pytest.approx((150 - 70) / 115 + 0.1)


def test_latest_hrv_sets_stress_level() -> None:
    state = estimate_state(NOW, hrv_samples=_series(50, 50, 25))

    assert state.stress == pytest.approx(1.0 - 0.6 * 25 / 50 + 0.1)
    assert state.inferred_need is MusicNeed.CALM


def test_trend_is_least_squares_slope() -> None:
    assert trend_per_minute(_series(70, 72, 74)) == pytest.approx(2.0)
    assert trend_per_minute(_series(70)) == 0.0
    assert trend_per_minute([]) == 0.0


def test_confidence_reflects_available_signals() -> None:
    both = estimate_state(NOW, heart_rates=_series(80, 82), hrv_samples=_series(45, 48))
    heart_rate_only = estimate_state(NOW, heart_rates=_series(80, 82))

    assert both.confidence == 1.0
    assert heart_rate_only.confidence == 0.5
    assert both.data_sources == frozenset({DataSource.HEART_RATE, DataSource.HRV})


def test_samples_outside_window_are_ignored() -> None:
    stale = [BiometricReading(value=150.0, recorded_at=NOW - timedelta(minutes=10))]

    state = estimate_state(NOW, heart_rates=stale)

    assert state.arousal == 0.5
    assert state.confidence == 0.0


def test_manual_mood_decays_over_fifteen_minutes() -> None:
    fresh = estimate_state(NOW, manual_mood=ManualMoodInput(valence=1.0, energy=1.0, recorded_at=NOW))
    halfway = estimate_state(
        NOW, manual_mood=ManualMoodInput(valence=1.0, energy=1.0, recorded_at=NOW - timedelta(minutes=7.5))
    )
    expired = estimate_state(
        NOW, manual_mood=ManualMoodInput(valence=1.0, energy=1.0, recorded_at=NOW - timedelta(minutes=15))
    )

    assert fresh.valence == pytest.approx(0.85)
    assert fresh.energy == pytest.approx(0.85)
    assert DataSource.MANUAL_MOOD_INPUT in fresh.data_sources
    assert halfway.valence == pytest.approx(0.675)
    assert expired.valence == pytest.approx(0.5)
    assert DataSource.MANUAL_MOOD_INPUT not in expired.data_sources


def test_prior_weighs_more_without_biometrics() -> None:
    prior = TimeOfDayPrior(energy=0.9)

    without = estimate_state(NOW, prior=prior)
    with_heart_rate = estimate_state(NOW, heart_rates=_series(127.5, 127.5), prior=prior)

    assert without.energy == pytest.approx(0.7)
    assert with_heart_rate.energy == pytest.approx(0.58)
    assert DataSource.HISTORICAL_PATTERN in without.data_sources


@pytest.mark.parametrize(
    ("context", "arousal", "energy", "expected"),
    [
        (ActivityContext.WORKOUT, 0.5, 0.5, MusicNeed.ENERGIZE),
        (ActivityContext.DEEP_WORK, 0.5, 0.5, MusicNeed.FOCUS),
        (ActivityContext.PRE_SLEEP, 0.5, 0.5, MusicNeed.CALM),
        (ActivityContext.POST_WORKOUT, 0.5, 0.5, MusicNeed.TRANSITION),
        (ActivityContext.WORK, 0.5, 0.2, MusicNeed.ENERGIZE),
        (ActivityContext.WORK, 0.5, 0.5, MusicNeed.FOCUS),
        (ActivityContext.RELAXATION, 0.7, 0.5, MusicNeed.CALM),
        (ActivityContext.RELAXATION, 0.4, 0.5, MusicNeed.MAINTAIN),
        (ActivityContext.SOCIAL, 0.5, 0.5, MusicNeed.MAINTAIN),
    ],
)
def test_infer_need(context, arousal, energy, expected) -> None:
    assert infer_need(context, arousal, energy, 0.5) is expected


def test_estimator_keeps_latest_state() -> None:
    estimator = StateEstimator()

    state = estimator.estimate(NOW, context=ActivityContext.WORK)

    assert estimator.latest is state
    assert state.focus == pytest.approx(0.7)
    assert state.inferred_need is MusicNeed.FOCUS


def test_state_summary() -> None:
    state = estimate_state(NOW, hrv_samples=_series(50 / 3, 50 / 3), context=ActivityContext.WORK)

    assert state.summary == "work - need: calm (50% confidence)"
    assert state.dominant_characteristic == "Stressed"
