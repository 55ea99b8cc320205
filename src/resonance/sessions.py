"""Rebuild listening sessions from the raw playback event log."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from hashlib import sha256
import logging
from statistics import fmean
from typing import Callable, Iterable, Sequence

from resonance.biometrics import ASLEEP_STAGES, SLEEP_DEEP, BiometricHistory, BiometricReading
from resonance.cancellation import CancellationToken
from resonance.config import SessionConfig
from resonance.diurnal import get_default_context, get_time_slot
from resonance.models import (
    ActivityContext,
    BiometricSummary,
    HistoricalSession,
    PlaybackEvent,
    SleepCorrelation,
)
from resonance.storage import SQLiteStore

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventCluster:
    events: tuple[PlaybackEvent, ...]
    started_at: datetime
    ended_at: datetime

    @property
    def duration_minutes(self) -> float:
        return (self.ended_at - self.started_at).total_seconds() / 60.0


@dataclass
class ReconstructionResult:
    events_seen: int = 0
    malformed_events: int = 0
    sessions_created: int = 0
    sessions_extended: int = 0
    clusters_discarded: int = 0
    clusters_open: int = 0
    batches_committed: int = 0
    watermark: datetime | None = None


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def is_well_formed(event: PlaybackEvent) -> bool:
    return event.started_at is not None and event.effective_end is not None


def cluster_events(
    events: Iterable[PlaybackEvent],
    config: SessionConfig = SessionConfig(),
) -> list[EventCluster]:
    """Group events into clusters separated by silences longer than the session gap.

    The gap is measured from the latest end seen so far in the open cluster, so
    a long song overlapping a short one does not split the session. Malformed
    events are skipped with a warning. Short clusters are returned as well;
    callers decide what to discard.
    """
    usable = []
    for event in events:
        if not is_well_formed(event):
            LOGGER.warning("Skipping malformed playback event %s", event.event_id)
            continue
        usable.append(event)
    usable.sort(key=lambda event: event.started_at)

    gap = timedelta(minutes=config.gap_minutes)
    clusters: list[EventCluster] = []
    current: list[PlaybackEvent] = []
    current_end: datetime | None = None
    for event in usable:
        if current and event.started_at - current_end > gap:
            clusters.append(EventCluster(tuple(current), current[0].started_at, current_end))
            current = []
            current_end = None
        current.append(event)
        end = event.effective_end
        current_end = end if current_end is None else max(current_end, end)
    if current:
        clusters.append(EventCluster(tuple(current), current[0].started_at, current_end))
    return clusters


def session_id_for(events: Sequence[PlaybackEvent]) -> str:
    payload = f"{events[0].event_id}|{events[-1].event_id}"
    return sha256(payload.encode("utf-8")).hexdigest()


def summarize_biometrics(
    heart_rates: Sequence[BiometricReading],
    hrv_samples: Sequence[BiometricReading],
) -> BiometricSummary:
    hr_values = [reading.value for reading in heart_rates]
    hrv_values = [reading.value for reading in hrv_samples]
    return BiometricSummary(
        hr_start=hr_values[0] if hr_values else None,
        hr_end=hr_values[-1] if hr_values else None,
        hr_avg=fmean(hr_values) if hr_values else None,
        hr_min=min(hr_values) if hr_values else None,
        hr_max=max(hr_values) if hr_values else None,
        hrv_start=hrv_values[0] if hrv_values else None,
        hrv_end=hrv_values[-1] if hrv_values else None,
        hrv_avg=fmean(hrv_values) if hrv_values else None,
        hrv_min=min(hrv_values) if hrv_values else None,
        hrv_max=max(hrv_values) if hrv_values else None,
    )


def normalized_deep_sleep(deep_fraction: float, config: SessionConfig = SessionConfig()) -> float:
    return _clamp(deep_fraction / config.deep_sleep_target_fraction)


def sleep_score(hours: float, deep_fraction: float, config: SessionConfig = SessionConfig()) -> float:
    duration_score = min(1.0, hours / config.target_sleep_hours)
    return duration_score * 0.6 + normalized_deep_sleep(deep_fraction, config) * 0.4


def session_impact(
    skip_rate: float,
    avg_listen_percentage: float,
    hrv_delta: float | None,
    sleep: float | None,
) -> float:
    hrv_component = _clamp(0.5 + (hrv_delta or 0.0) / 20.0)
    return _clamp(
        0.25 * (1.0 - skip_rate)
        + 0.30 * hrv_component
        + 0.25 * avg_listen_percentage
        + 0.20 * (0.5 if sleep is None else sleep)
    )


def _most_frequent_playlist(events: Sequence[PlaybackEvent]) -> str | None:
    counts = Counter(event.playlist_id for event in events if event.playlist_id is not None)
    if not counts:
        return None
    return counts.most_common(1)[0][0]


class SessionReconstructor:
    def __init__(
        self,
        store: SQLiteStore,
        biometrics: BiometricHistory,
        config: SessionConfig = SessionConfig(),
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.biometrics = biometrics
        self.config = config
        self.clock = clock

    def detect_context(self, start: datetime, end: datetime) -> ActivityContext:
        window = timedelta(minutes=self.config.post_workout_minutes)
        workouts = self.biometrics.workout_sessions(start - window, end)
        if any(workout.start <= end and workout.end >= start for workout in workouts):
            return ActivityContext.WORKOUT
        if any(workout.end < start and start - workout.end <= window for workout in workouts):
            return ActivityContext.POST_WORKOUT
        return get_default_context(start)

    def correlate_sleep(self, session_end: datetime) -> SleepCorrelation:
        """Score the first night-length sleep period within the window after a session."""
        window_end = session_end + timedelta(hours=self.config.sleep_window_hours)
        samples = sorted(
            (
                sample
                for sample in self.biometrics.sleep_sessions(session_end, window_end)
                if sample.stage in ASLEEP_STAGES and sample.start >= session_end
            ),
            key=lambda sample: sample.start,
        )
        split_gap = timedelta(minutes=self.config.sleep_period_gap_minutes)
        periods: list[list] = []
        period_end: datetime | None = None
        for sample in samples:
            if not periods or sample.start - period_end > split_gap:
                periods.append([])
                period_end = sample.end
            periods[-1].append(sample)
            period_end = max(period_end, sample.end)

        for period in periods:
            hours = sum(sample.hours for sample in period)
            if hours < self.config.minimum_night_sleep_hours:
                continue
            deep_hours = sum(sample.hours for sample in period if sample.stage == SLEEP_DEEP)
            deep_fraction = deep_hours / hours
            return SleepCorrelation(
                sleep_score=sleep_score(hours, deep_fraction, self.config),
                duration_hours=hours,
                deep_sleep_fraction=deep_fraction,
            )
        return SleepCorrelation()

    def build_session(self, cluster: EventCluster) -> HistoricalSession:
        events = cluster.events
        padding = timedelta(minutes=self.config.biometric_padding_minutes)
        biometrics = summarize_biometrics(
            self.biometrics.heart_rate_history(cluster.started_at - padding, cluster.ended_at + padding),
            self.biometrics.hrv_history(cluster.started_at - padding, cluster.ended_at + padding),
        )
        sleep = self.correlate_sleep(cluster.ended_at)
        skip_rate = sum(1 for event in events if event.was_skipped) / len(events)
        avg_listen = fmean(event.listen_percentage for event in events)
        return HistoricalSession(
            session_id=session_id_for(events),
            started_at=cluster.started_at,
            ended_at=cluster.ended_at,
            event_ids=tuple(event.event_id for event in events),
            context=self.detect_context(cluster.started_at, cluster.ended_at),
            time_slot=get_time_slot(cluster.started_at),
            skip_rate=skip_rate,
            avg_listen_percentage=avg_listen,
            impact_score=session_impact(skip_rate, avg_listen, biometrics.hrv_delta, sleep.sleep_score),
            biometrics=biometrics,
            sleep=sleep,
            playlist_id=_most_frequent_playlist(events),
        )

    def _tail_to_extend(
        self, events: Sequence[PlaybackEvent]
    ) -> tuple[HistoricalSession | None, list[PlaybackEvent]]:
        """Return the newest stored session and its events when new events continue it."""
        starts = [event.started_at for event in events if is_well_formed(event)]
        if not starts:
            return None, []
        tail = self.store.latest_session()
        if tail is None or min(starts) - tail.ended_at > timedelta(minutes=self.config.gap_minutes):
            return None, []
        LOGGER.info("New events continue session %s, rebuilding it", tail.session_id)
        return tail, self.store.fetch_events_for_session(tail.session_id)

    def run(
        self,
        since: datetime | None,
        token: CancellationToken | None = None,
        on_batch: Callable[[ReconstructionResult], None] | None = None,
    ) -> ReconstructionResult:
        token = token or CancellationToken()
        result = ReconstructionResult(watermark=since)
        events = self.store.fetch_unprocessed_events(since)
        result.events_seen = len(events)
        tail, carried = self._tail_to_extend(events)
        clusters = cluster_events([*carried, *events], self.config)
        result.malformed_events = len(events) + len(carried) - sum(len(cluster.events) for cluster in clusters)

        gap = timedelta(minutes=self.config.gap_minutes)
        now = self.clock()
        pending: list[HistoricalSession] = []
        superseded: list[str] = []
        covered: datetime | None = None

        def commit() -> None:
            self.store.save_sessions(pending, covered, superseded)
            result.sessions_created += len(pending) - len(superseded)
            result.sessions_extended += len(superseded)
            result.batches_committed += 1
            result.watermark = covered
            LOGGER.info("Committed %d sessions up to %s", len(pending), covered.isoformat())
            pending.clear()
            superseded.clear()
            if on_batch is not None:
                on_batch(result)

        for index, cluster in enumerate(clusters):
            token.raise_if_cancelled()
            is_last = index == len(clusters) - 1
            # The newest cluster may still grow, so it stays above the watermark.
            if is_last and now - cluster.ended_at <= gap:
                result.clusters_open += 1
                LOGGER.info(
                    "Leaving session starting %s open until %s",
                    cluster.started_at.isoformat(),
                    (cluster.ended_at + gap).isoformat(),
                )
                continue
            if cluster.duration_minutes < self.config.minimum_session_minutes:
                result.clusters_discarded += 1
                if not is_last:
                    covered = cluster.events[-1].started_at
                continue
            if tail is not None and index == 0:
                superseded.append(tail.session_id)
            pending.append(self.build_session(cluster))
            covered = cluster.events[-1].started_at
            if len(pending) >= self.config.batch_size:
                commit()

        if covered is not None and covered != result.watermark:
            commit()
        return result
