"""Value objects shared by the estimator, the ranking engine and the learning pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum


class ActivityContext(str, Enum):
    """What the listener is doing."""

    WORKOUT = "workout"
    POST_WORKOUT = "postWorkout"
    WORK = "work"
    DEEP_WORK = "deepWork"
    COMMUTE = "commute"
    RELAXATION = "relaxation"
    PRE_SLEEP = "preSleep"
    MORNING = "morning"
    SOCIAL = "social"
    UNKNOWN = "unknown"


class MusicNeed(str, Enum):
    ENERGIZE = "energize"
    CALM = "calm"
    FOCUS = "focus"
    MAINTAIN = "maintain"
    TRANSITION = "transition"


class DataSource(str, Enum):
    HEART_RATE = "heartRate"
    HRV = "hrv"
    MOTION = "motion"
    MACOS_CONTEXT = "macOSContext"
    CALENDAR_CONTEXT = "calendarContext"
    TIME_OF_DAY = "timeOfDay"
    MANUAL_MOOD_INPUT = "manualMoodInput"
    HISTORICAL_PATTERN = "historicalPattern"


class TimeSlot(str, Enum):
    EARLY_MORNING = "early_morning"
    MORNING = "morning"
    MIDDAY = "midday"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    NIGHT = "night"


@dataclass(frozen=True)
class StateVector:
    """Normalized estimate of the listener's state at one tick."""

    arousal: float
    energy: float
    focus: float
    stress: float
    valence: float
    context: ActivityContext
    inferred_need: MusicNeed
    confidence: float
    data_sources: frozenset[DataSource]
    timestamp: datetime

    @classmethod
    def neutral(cls, timestamp: datetime) -> StateVector:
        return cls(
            arousal=0.5,
            energy=0.5,
            focus=0.5,
            stress=0.5,
            valence=0.5,
            context=ActivityContext.UNKNOWN,
            inferred_need=MusicNeed.MAINTAIN,
            confidence=0.0,
            data_sources=frozenset(),
            timestamp=timestamp,
        )

    @property
    def summary(self) -> str:
        percent = int(self.confidence * 100)
        return f"{self.context.value} - need: {self.inferred_need.value} ({percent}% confidence)"

    @property
    def dominant_characteristic(self) -> str:
        characteristics = (
            ("High Energy", self.energy),
            ("Stressed", self.stress),
            ("Focused", self.focus),
            ("Relaxed", 1.0 - self.stress),
            ("Alert", self.arousal),
        )
        return max(characteristics, key=lambda item: item[1])[0]


@dataclass(frozen=True)
class Song:
    song_id: str
    title: str
    artist: str
    genre: str | None = None
    bpm: float = 0.0
    energy: float = 0.5
    valence: float = 0.5
    instrumentalness: float = 0.5
    acoustic_density: float = 0.5
    duration_seconds: float = 0.0
    feature_confidence: float = 0.0
    total_play_count: int = 0
    total_skip_count: int = 0
    last_played_at: datetime | None = None
    effect_calm: float = 0.5
    effect_energy: float = 0.5
    effect_focus: float = 0.5
    effect_mood_lift: float = 0.5
    effect_confidence: float = 0.0
    familiarity: float = 0.0


@dataclass(frozen=True)
class PlaybackEvent:
    """One song play, immutable once finalized."""

    event_id: str
    song_id: str
    started_at: datetime | None
    ended_at: datetime | None = None
    song_duration: float | None = None
    listen_percentage: float = 0.0
    was_skipped: bool = False
    skip_reason: str | None = None
    hr_at_start: float | None = None
    hr_at_end: float | None = None
    hrv_at_start: float | None = None
    hrv_at_end: float | None = None
    hr_delta: float | None = None
    hrv_delta: float | None = None
    was_ai_selected: bool = False
    selection_score: float | None = None
    selection_reason: str | None = None
    playlist_id: str | None = None
    session_id: str | None = None

    @property
    def is_finalized(self) -> bool:
        return self.ended_at is not None

    @property
    def effective_end(self) -> datetime | None:
        """End time, or start plus song duration when playback end was not logged."""
        if self.ended_at is not None:
            return self.ended_at
        if self.started_at is None or self.song_duration is None:
            return None
        return self.started_at + timedelta(seconds=self.song_duration)


@dataclass(frozen=True)
class BiometricSummary:
    hr_start: float | None = None
    hr_end: float | None = None
    hr_avg: float | None = None
    hr_min: float | None = None
    hr_max: float | None = None
    hrv_start: float | None = None
    hrv_end: float | None = None
    hrv_avg: float | None = None
    hrv_min: float | None = None
    hrv_max: float | None = None

    @property
    def hr_delta(self) -> float | None:
        if self.hr_start is None or self.hr_end is None:
            return None
        return self.hr_end - self.hr_start

    @property
    def hrv_delta(self) -> float | None:
        if self.hrv_start is None or self.hrv_end is None:
            return None
        return self.hrv_end - self.hrv_start


@dataclass(frozen=True)
class SleepCorrelation:
    sleep_score: float | None = None
    duration_hours: float | None = None
    deep_sleep_fraction: float | None = None


@dataclass(frozen=True)
class HistoricalSession:
    session_id: str
    started_at: datetime
    ended_at: datetime
    event_ids: tuple[str, ...]
    context: ActivityContext
    time_slot: TimeSlot
    skip_rate: float
    avg_listen_percentage: float
    impact_score: float
    biometrics: BiometricSummary = field(default_factory=BiometricSummary)
    sleep: SleepCorrelation = field(default_factory=SleepCorrelation)
    playlist_id: str | None = None

    @property
    def song_count(self) -> int:
        return len(self.event_ids)

    @property
    def duration_minutes(self) -> float:
        return (self.ended_at - self.started_at).total_seconds() / 60.0


@dataclass(frozen=True)
class SongEffect:
    """Learned effect of one song within one activity context."""

    song_id: str
    context: ActivityContext
    calm: float = 0.5
    energy: float = 0.5
    focus: float = 0.5
    mood_lift: float = 0.5
    sample_count: int = 0
    confidence: float = 0.0
    first_updated_at: datetime | None = None
    last_updated_at: datetime | None = None


@dataclass(frozen=True)
class ContextAssociation:
    frequency: float
    session_count: int
    avg_calm: float | None = None
    avg_energy: float | None = None
    avg_focus: float | None = None


@dataclass(frozen=True)
class PlaylistAggregate:
    playlist_id: str
    avg_calm: float
    avg_focus: float
    avg_energy: float
    effect_confidence: float
    session_count: int
    context_associations: dict[ActivityContext, ContextAssociation] = field(default_factory=dict)


@dataclass(frozen=True)
class SongAggregate:
    """Per-song rollup of its context effects, written back onto the song row."""

    song_id: str
    calm: float
    energy: float
    focus: float
    mood_lift: float
    confidence: float
    familiarity: float
