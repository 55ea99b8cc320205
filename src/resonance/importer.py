"""Parse JSON exports of the library, playback log and biometric history."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import json
from pathlib import Path
from typing import Any

from resonance.biometrics import SLEEP_STAGES, BiometricReading, SleepSample, WorkoutSession
from resonance.features import estimate_features
from resonance.models import PlaybackEvent, Song


@dataclass(frozen=True)
class ImportProblem:
    file: Path
    message: str
    record_index: int | None = None


@dataclass(frozen=True)
class PlaylistRecord:
    playlist_id: str
    name: str
    song_ids: tuple[str, ...]


@dataclass(frozen=True)
class LibraryImport:
    songs: list[Song]
    playlists: list[PlaylistRecord]
    problems: list[ImportProblem]


@dataclass(frozen=True)
class EventImport:
    events: list[PlaybackEvent]
    problems: list[ImportProblem]


@dataclass(frozen=True)
class BiometricImport:
    heart_rates: list[BiometricReading]
    hrv: list[BiometricReading]
    sleep: list[SleepSample]
    workouts: list[WorkoutSession]
    problems: list[ImportProblem]


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Malformed JSON in {path}: {exc}") from exc


def _timestamp(value: object) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"Expected ISO-8601 string, got {value!r}")
    return datetime.fromisoformat(value)


def _required_timestamp(value: object) -> datetime:
    parsed = _timestamp(value)
    if parsed is None:
        raise ValueError("missing timestamp")
    return parsed


def _optional_float(entry: dict, key: str) -> float | None:
    value = entry.get(key)
    return None if value is None else float(value)


def _parse_song(entry: dict) -> Song:
    genre = entry.get("genre")
    estimated = estimate_features([genre] if genre else [])
    has_bpm = entry.get("bpm") is not None
    return Song(
        song_id=str(entry["id"]),
        title=str(entry["title"]),
        artist=str(entry["artist"]),
        genre=genre,
        bpm=float(entry["bpm"]) if has_bpm else estimated.bpm,
        energy=float(entry.get("energy", estimated.energy)),
        valence=float(entry.get("valence", estimated.valence)),
        instrumentalness=float(entry.get("instrumentalness", estimated.instrumentalness)),
        acoustic_density=float(entry.get("acoustic_density", estimated.acoustic_density)),
        duration_seconds=float(entry.get("duration", 0.0)),
        feature_confidence=float(entry.get("feature_confidence", 1.0 if has_bpm else estimated.confidence)),
    )


def load_library(path: Path | str) -> LibraryImport:
    """Songs without analyzed tempo get genre-based estimates."""
    file = Path(path)
    data = _read_json(file)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object with 'songs' and 'playlists' in {file}")

    songs: list[Song] = []
    playlists: list[PlaylistRecord] = []
    problems: list[ImportProblem] = []
    for index, entry in enumerate(data.get("songs", [])):
        try:
            songs.append(_parse_song(entry))
        except (KeyError, TypeError, ValueError) as exc:
            problems.append(ImportProblem(file, f"Invalid song: {exc}", index))
    for index, entry in enumerate(data.get("playlists", [])):
        try:
            playlists.append(
                PlaylistRecord(
                    playlist_id=str(entry["id"]),
                    name=str(entry.get("name", entry["id"])),
                    song_ids=tuple(str(song_id) for song_id in entry.get("songs", [])),
                )
            )
        except (KeyError, TypeError) as exc:
            problems.append(ImportProblem(file, f"Invalid playlist: {exc}", index))
    return LibraryImport(songs=songs, playlists=playlists, problems=problems)


def _parse_event(entry: dict) -> PlaybackEvent:
    hr_start = _optional_float(entry, "hr_at_start")
    hr_end = _optional_float(entry, "hr_at_end")
    hrv_start = _optional_float(entry, "hrv_at_start")
    hrv_end = _optional_float(entry, "hrv_at_end")
    hr_delta = _optional_float(entry, "hr_delta")
    hrv_delta = _optional_float(entry, "hrv_delta")
    if hr_delta is None and hr_start and hr_end is not None:
        hr_delta = hr_end - hr_start
    if hrv_delta is None and hrv_start and hrv_end is not None:
        hrv_delta = hrv_end - hrv_start
    return PlaybackEvent(
        event_id=str(entry["id"]),
        song_id=str(entry["song_id"]),
        playlist_id=entry.get("playlist_id"),
        started_at=_timestamp(entry.get("started_at")),
        ended_at=_timestamp(entry.get("ended_at")),
        song_duration=_optional_float(entry, "song_duration"),
        listen_percentage=float(entry.get("listen_percentage", 0.0)),
        was_skipped=bool(entry.get("was_skipped", False)),
        skip_reason=entry.get("skip_reason"),
        hr_at_start=hr_start,
        hr_at_end=hr_end,
        hrv_at_start=hrv_start,
        hrv_at_end=hrv_end,
        hr_delta=hr_delta,
        hrv_delta=hrv_delta,
        was_ai_selected=bool(entry.get("was_ai_selected", False)),
        selection_score=_optional_float(entry, "selection_score"),
        selection_reason=entry.get("selection_reason"),
    )


def load_events(path: Path | str) -> EventImport:
    file = Path(path)
    data = _read_json(file)
    if not isinstance(data, list):
        raise ValueError(f"Expected a JSON array of playback events in {file}")

    events: list[PlaybackEvent] = []
    problems: list[ImportProblem] = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            problems.append(ImportProblem(file, "Expected JSON object", index))
            continue
        try:
            events.append(_parse_event(entry))
        except (KeyError, TypeError, ValueError) as exc:
            problems.append(ImportProblem(file, f"Invalid event: {exc}", index))
    return EventImport(events=events, problems=problems)


def load_biometrics(path: Path | str) -> BiometricImport:
    file = Path(path)
    data = _read_json(file)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object of biometric series in {file}")

    problems: list[ImportProblem] = []

    def readings(key: str) -> list[BiometricReading]:
        parsed = []
        for index, entry in enumerate(data.get(key, [])):
            try:
                parsed.append(
                    BiometricReading(
                        value=float(entry["value"]),
                        recorded_at=_required_timestamp(entry["recorded_at"]),
                    )
                )
            except (KeyError, TypeError, ValueError) as exc:
                problems.append(ImportProblem(file, f"Invalid {key} reading: {exc}", index))
        return parsed

    heart_rates = readings("heart_rate")
    hrv = readings("hrv")

    sleep: list[SleepSample] = []
    for index, entry in enumerate(data.get("sleep", [])):
        try:
            if entry["stage"] not in SLEEP_STAGES:
                raise ValueError(f"unknown stage {entry['stage']!r}")
            sleep.append(
                SleepSample(
                    start=_required_timestamp(entry["start"]),
                    end=_required_timestamp(entry["end"]),
                    stage=entry["stage"],
                )
            )
        except (KeyError, TypeError, ValueError) as exc:
            problems.append(ImportProblem(file, f"Invalid sleep sample: {exc}", index))

    workouts: list[WorkoutSession] = []
    for index, entry in enumerate(data.get("workouts", [])):
        try:
            workouts.append(
                WorkoutSession(
                    workout_type=str(entry.get("type", "other")),
                    start=_required_timestamp(entry["start"]),
                    end=_required_timestamp(entry["end"]),
                )
            )
        except (KeyError, TypeError, ValueError) as exc:
            problems.append(ImportProblem(file, f"Invalid workout: {exc}", index))

    return BiometricImport(heart_rates=heart_rates, hrv=hrv, sleep=sleep, workouts=workouts, problems=problems)
