from __future__ import annotations

import json
from pathlib import Path

import pytest

from resonance.config import (
    PRESETS,
    UserPreferences,
    get_preset,
    load_preferences,
    save_preferences,
)


def test_missing_preferences_file_uses_defaults(tmp_path: Path) -> None:
    assert load_preferences(tmp_path / "missing.json") == UserPreferences()


def test_preferences_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "preferences.json"
    preferences = UserPreferences(bpm_weight=0.4, avoid_recent_minutes=30, enable_smooth_transitions=False)

    saved = save_preferences(preferences, path)

    assert saved == path
    assert load_preferences(path) == preferences


def test_loaded_preferences_are_clamped(tmp_path: Path) -> None:
    path = tmp_path / "preferences.json"
    path.write_text(
        json.dumps({"recency_weight": 3.0, "max_same_artist_in_row": 0, "night_start_hour": 2, "bpm_weight": -1}),
        encoding="utf-8",
    )

    preferences = load_preferences(path)

    assert preferences.recency_weight == 1.0
    assert preferences.max_same_artist_in_row == 1
    assert preferences.night_start_hour == 18
    assert preferences.bpm_weight == 0.0


def test_unknown_preference_keys_are_rejected(tmp_path: Path) -> None:
    path = tmp_path / "preferences.json"
    path.write_text(json.dumps({"volume": 11}), encoding="utf-8")

    with pytest.raises(ValueError, match="Unknown preference keys"):
        load_preferences(path)


def test_preferences_must_be_an_object(tmp_path: Path) -> None:
    path = tmp_path / "preferences.json"
    path.write_text("[]", encoding="utf-8")

    with pytest.raises(ValueError, match="Expected a JSON object"):
        load_preferences(path)


def test_presets() -> None:
    assert set(PRESETS) == {"focus", "workout", "relaxation"}
    assert get_preset("workout").energy_weight == 0.35
    with pytest.raises(ValueError, match="Unknown preset"):
        get_preset("party")


def test_weight_sum() -> None:
    assert UserPreferences().weight_sum == pytest.approx(1.0)
