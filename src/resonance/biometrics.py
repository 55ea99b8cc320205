"""Biometric history collaborator: heart rate, HRV, sleep and workouts."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import sqlite3
from typing import Iterable, Protocol

HEART_RATE = "heart_rate"
HRV = "hrv"

SLEEP_IN_BED = "inBed"
SLEEP_AWAKE = "awake"
SLEEP_ASLEEP = "asleep"
SLEEP_CORE = "core"
SLEEP_DEEP = "deep"
SLEEP_REM = "rem"
SLEEP_STAGES = (SLEEP_IN_BED, SLEEP_AWAKE, SLEEP_ASLEEP, SLEEP_CORE, SLEEP_DEEP, SLEEP_REM)
ASLEEP_STAGES = frozenset({SLEEP_ASLEEP, SLEEP_CORE, SLEEP_DEEP, SLEEP_REM})


@dataclass(frozen=True)
class BiometricReading:
    value: float
    recorded_at: datetime


@dataclass(frozen=True)
class SleepSample:
    start: datetime
    end: datetime
    stage: str

    @property
    def hours(self) -> float:
        return max(0.0, (self.end - self.start).total_seconds() / 3600.0)


@dataclass(frozen=True)
class WorkoutSession:
    workout_type: str
    start: datetime
    end: datetime


class BiometricHistory(Protocol):
    def heart_rate_history(self, start: datetime, end: datetime) -> list[BiometricReading]:
        """Heart-rate readings in [start, end], ascending."""

    def hrv_history(self, start: datetime, end: datetime) -> list[BiometricReading]:
        """HRV (SDNN, ms) readings in [start, end], ascending."""

    def sleep_sessions(self, start: datetime, end: datetime) -> list[SleepSample]:
        """Sleep stage samples overlapping [start, end], ascending."""

    def workout_sessions(self, start: datetime, end: datetime) -> list[WorkoutSession]:
        """Workouts overlapping [start, end], ascending."""


def init_biometric_tables(connection: sqlite3.Connection) -> None:
    connection.executescript(
        """
        CREATE TABLE IF NOT EXISTS biometric_readings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            kind TEXT NOT NULL,
            value REAL NOT NULL,
            recorded_at TEXT NOT NULL,
            UNIQUE(kind, recorded_at)
        );

        CREATE INDEX IF NOT EXISTS idx_biometric_readings_kind_time
            ON biometric_readings (kind, recorded_at);

        CREATE TABLE IF NOT EXISTS sleep_samples (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            start_at TEXT NOT NULL,
            end_at TEXT NOT NULL,
            stage TEXT NOT NULL,
            UNIQUE(start_at, end_at, stage)
        );

        CREATE TABLE IF NOT EXISTS workouts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            workout_type TEXT NOT NULL,
            start_at TEXT NOT NULL,
            end_at TEXT NOT NULL,
            UNIQUE(workout_type, start_at)
        );
        """
    )
    connection.commit()


class SQLiteBiometricHistory:
    """Reads biometric history imported into the local SQLite database."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self.connection = connection

    def _readings(self, kind: str, start: datetime, end: datetime) -> list[BiometricReading]:
        rows = self.connection.execute(
            """
            SELECT value, recorded_at
            FROM biometric_readings
            WHERE kind = ? AND recorded_at >= ? AND recorded_at <= ?
            ORDER BY recorded_at
            """,
            (kind, start.isoformat(), end.isoformat()),
        ).fetchall()
        return [
            BiometricReading(value=float(value), recorded_at=datetime.fromisoformat(recorded_at))
            for value, recorded_at in rows
        ]

    def heart_rate_history(self, start: datetime, end: datetime) -> list[BiometricReading]:
        return self._readings(HEART_RATE, start, end)

    def hrv_history(self, start: datetime, end: datetime) -> list[BiometricReading]:
        return self._readings(HRV, start, end)

    def sleep_sessions(self, start: datetime, end: datetime) -> list[SleepSample]:
        rows = self.connection.execute(
            """
            SELECT start_at, end_at, stage
            FROM sleep_samples
            WHERE end_at >= ? AND start_at <= ?
            ORDER BY start_at
            """,
            (start.isoformat(), end.isoformat()),
        ).fetchall()
        return [
            SleepSample(
                start=datetime.fromisoformat(start_at),
                end=datetime.fromisoformat(end_at),
                stage=stage,
            )
            for start_at, end_at, stage in rows
        ]

    def workout_sessions(self, start: datetime, end: datetime) -> list[WorkoutSession]:
        rows = self.connection.execute(
            """
            SELECT workout_type, start_at, end_at
            FROM workouts
            WHERE end_at >= ? AND start_at <= ?
            ORDER BY start_at
            """,
            (start.isoformat(), end.isoformat()),
        ).fetchall()
        return [
            WorkoutSession(
                workout_type=workout_type,
                start=datetime.fromisoformat(start_at),
                end=datetime.fromisoformat(end_at),
            )
            for workout_type, start_at, end_at in rows
        ]


def store_readings(connection: sqlite3.Connection, kind: str, readings: Iterable[BiometricReading]) -> int:
    if kind not in (HEART_RATE, HRV):
        raise ValueError(f"Unknown reading kind '{kind}'. Expected one of: {HEART_RATE}, {HRV}")
    rows = [(kind, reading.value, reading.recorded_at.isoformat()) for reading in readings]
    if not rows:
        return 0
    before = connection.total_changes
    connection.executemany(
        """
        INSERT OR IGNORE INTO biometric_readings (kind, value, recorded_at)
        VALUES (?, ?, ?)
        """,
        rows,
    )
    connection.commit()
    return connection.total_changes - before


def store_sleep_samples(connection: sqlite3.Connection, samples: Iterable[SleepSample]) -> int:
    rows = []
    for sample in samples:
        if sample.stage not in SLEEP_STAGES:
            raise ValueError(f"Unknown sleep stage '{sample.stage}'")
        rows.append((sample.start.isoformat(), sample.end.isoformat(), sample.stage))
    if not rows:
        return 0
    before = connection.total_changes
    connection.executemany(
        "INSERT OR IGNORE INTO sleep_samples (start_at, end_at, stage) VALUES (?, ?, ?)",
        rows,
    )
    connection.commit()
    return connection.total_changes - before


def store_workouts(connection: sqlite3.Connection, workouts: Iterable[WorkoutSession]) -> int:
    rows = [(w.workout_type, w.start.isoformat(), w.end.isoformat()) for w in workouts]
    if not rows:
        return 0
    before = connection.total_changes
    connection.executemany(
        "INSERT OR IGNORE INTO workouts (workout_type, start_at, end_at) VALUES (?, ?, ?)",
        rows,
    )
    connection.commit()
    return connection.total_changes - before
