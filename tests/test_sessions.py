from __future__ import annotations

from datetime import datetime, timedelta
import sqlite3

import pytest

from resonance.biometrics import BiometricReading, SleepSample, WorkoutSession
from resonance.cancellation import CancellationToken, OperationCancelled
from resonance.config import SessionConfig
from resonance.models import ActivityContext, PlaybackEvent, TimeSlot
from resonance.sessions import (
    SessionReconstructor,
    cluster_events,
    normalized_deep_sleep,
    session_id_for,
    session_impact,
    sleep_score,
)
from resonance.storage import SESSION_RECONSTRUCTION, SQLiteStore, init_db

# 2024-03-05 is a Tuesday.
EVENING = datetime(2024, 3, 5, 19, 0)


class FakeBiometrics:
    def __init__(self, heart_rates=(), hrv=(), sleep=(), workouts=()) -> None:
        self.heart_rates = list(heart_rates)
        self.hrv = list(hrv)
        self.sleep = list(sleep)
        self.workouts = list(workouts)

    def heart_rate_history(self, start, end):
        return [r for r in self.heart_rates if start <= r.recorded_at <= end]

    def hrv_history(self, start, end):
        return [r for r in self.hrv if start <= r.recorded_at <= end]

    def sleep_sessions(self, start, end):
        return [s for s in self.sleep if s.end >= start and s.start <= end]

    def workout_sessions(self, start, end):
        return [w for w in self.workouts if w.end >= start and w.start <= end]


def _event(event_id: str, start: datetime, minutes: float = 4.0, **overrides) -> PlaybackEvent:
    values = dict(
        event_id=event_id,
        song_id=f"song-{event_id}",
        started_at=start,
        ended_at=start + timedelta(minutes=minutes),
        song_duration=minutes * 60,
        listen_percentage=1.0,
    )
    values.update(overrides)
    return PlaybackEvent(**values)


def _store() -> SQLiteStore:
    connection = sqlite3.connect(":memory:")
    init_db(connection)
    return SQLiteStore(connection)


def test_gap_of_29_minutes_stays_in_session() -> None:
    first = _event("a", EVENING, minutes=3)
    second = _event("b", EVENING + timedelta(minutes=32))

    clusters = cluster_events([first, second])

    assert len(clusters) == 1
    assert [event.event_id for event in clusters[0].events] == ["a", "b"]


def test_gap_of_31_minutes_starts_new_session() -> None:
    first = _event("a", EVENING, minutes=3)
    second = _event("b", EVENING + timedelta(minutes=34))

    clusters = cluster_events([first, second])

    assert len(clusters) == 2


def test_gap_is_measured_from_latest_end_in_cluster() -> None:
    long_play = _event("long", EVENING, minutes=40)
    short_play = _event("short", EVENING + timedelta(minutes=5), minutes=3)
    later = _event("later", EVENING + timedelta(minutes=65))

    clusters = cluster_events([long_play, short_play, later])

    assert len(clusters) == 1
    assert clusters[0].ended_at == later.ended_at


def test_missing_end_time_falls_back_to_song_duration() -> None:
    open_event = _event("a", EVENING, ended_at=None, song_duration=600.0)
    next_event = _event("b", EVENING + timedelta(minutes=39))

    clusters = cluster_events([open_event, next_event])

    assert len(clusters) == 1


def test_malformed_events_are_skipped(caplog) -> None:
    events = [
        _event("no-start", EVENING, started_at=None),
        _event("no-end", EVENING, ended_at=None, song_duration=None),
        _event("ok", EVENING),
    ]

    clusters = cluster_events(events)

    assert [event.event_id for cluster in clusters for event in cluster.events] == ["ok"]
    assert "no-start" in caplog.text


def test_clustering_is_idempotent_and_order_independent() -> None:
    events = [
        _event("a", EVENING),
        _event("b", EVENING + timedelta(minutes=5)),
        _event("c", EVENING + timedelta(hours=2)),
    ]

    first = cluster_events(events)
    second = cluster_events(list(reversed(events)))

    assert first == second
    assert cluster_events(events) == first


def test_sleep_normalization() -> None:
    assert normalized_deep_sleep(0.25) == 1.0
    assert normalized_deep_sleep(0.5) == 1.0
    assert sleep_score(6.0, 0.0) == pytest.approx(0.45)
    assert sleep_score(8.0, 0.25) == pytest.approx(1.0)


def test_session_impact_uses_neutral_defaults() -> None:
    assert session_impact(0.0, 1.0, None, None) == pytest.approx(0.75)
    assert session_impact(1.0, 0.0, -20.0, 0.0) == pytest.approx(0.0)


def test_sleep_correlation_ignores_naps() -> None:
    session_end = datetime(2024, 3, 5, 22, 0)
    biometrics = FakeBiometrics(
        sleep=[
            SleepSample(datetime(2024, 3, 5, 22, 30), datetime(2024, 3, 5, 23, 0), "core"),
            SleepSample(datetime(2024, 3, 6, 0, 30), datetime(2024, 3, 6, 2, 30), "deep"),
            SleepSample(datetime(2024, 3, 6, 2, 30), datetime(2024, 3, 6, 6, 30), "core"),
            SleepSample(datetime(2024, 3, 6, 6, 30), datetime(2024, 3, 6, 7, 0), "awake"),
        ]
    )

    sleep = SessionReconstructor(_store(), biometrics).correlate_sleep(session_end)

    assert sleep.duration_hours == pytest.approx(6.0)
    assert sleep.deep_sleep_fraction == pytest.approx(1 / 3)
    assert sleep.sleep_score == pytest.approx(0.75 * 0.6 + 0.4)


def test_no_night_sleep_leaves_correlation_empty() -> None:
    biometrics = FakeBiometrics(
        sleep=[SleepSample(datetime(2024, 3, 5, 23, 0), datetime(2024, 3, 6, 1, 0), "core")]
    )

    sleep = SessionReconstructor(_store(), biometrics).correlate_sleep(datetime(2024, 3, 5, 22, 0))

    assert sleep.sleep_score is None
    assert sleep.duration_hours is None


def test_context_detection_prefers_workouts() -> None:
    during = FakeBiometrics(workouts=[WorkoutSession("running", EVENING - timedelta(minutes=5), EVENING + timedelta(minutes=20))])
    after = FakeBiometrics(workouts=[WorkoutSession("running", EVENING - timedelta(minutes=50), EVENING - timedelta(minutes=10))])
    long_ago = FakeBiometrics(workouts=[WorkoutSession("running", EVENING - timedelta(hours=3), EVENING - timedelta(hours=2))])
    end = EVENING + timedelta(minutes=15)

    assert SessionReconstructor(_store(), during).detect_context(EVENING, end) is ActivityContext.WORKOUT
    assert SessionReconstructor(_store(), after).detect_context(EVENING, end) is ActivityContext.POST_WORKOUT
    assert SessionReconstructor(_store(), long_ago).detect_context(EVENING, end) is ActivityContext.RELAXATION


def test_run_builds_sessions_and_keeps_trailing_short_cluster_unlinked() -> None:
    store = _store()
    store.insert_events(
        [
            _event("a", EVENING, playlist_id="p1", hr_delta=2.0),
            _event("b", EVENING + timedelta(minutes=4), playlist_id="p2", was_skipped=True, listen_percentage=0.1),
            _event("c", EVENING + timedelta(minutes=8), playlist_id="p1", listen_percentage=0.7),
            _event("late", EVENING + timedelta(hours=2), minutes=3),
        ]
    )
    biometrics = FakeBiometrics(
        heart_rates=[
            BiometricReading(70.0, EVENING - timedelta(minutes=2)),
            BiometricReading(80.0, EVENING + timedelta(minutes=5)),
            BiometricReading(90.0, EVENING + timedelta(minutes=14)),
        ],
        hrv=[
            BiometricReading(40.0, EVENING - timedelta(minutes=1)),
            BiometricReading(50.0, EVENING + timedelta(minutes=13)),
        ],
    )

    result = SessionReconstructor(store, biometrics).run(None)

    assert result.events_seen == 4
    assert result.sessions_created == 1
    assert result.clusters_discarded == 1
    assert result.watermark == EVENING + timedelta(minutes=8)
    assert store.get_watermark(SESSION_RECONSTRUCTION) == EVENING + timedelta(minutes=8)

    [session] = store.list_sessions()
    assert session.event_ids == ("a", "b", "c")
    assert session.session_id == session_id_for([_event("a", EVENING), _event("c", EVENING)])
    assert session.context is ActivityContext.RELAXATION
    assert session.time_slot is TimeSlot.EVENING
    assert session.playlist_id == "p1"
    assert session.skip_rate == pytest.approx(1 / 3)
    assert session.avg_listen_percentage == pytest.approx(0.6)
    assert session.biometrics.hr_start == 70.0
    assert session.biometrics.hr_end == 90.0
    assert session.biometrics.hr_avg == pytest.approx(80.0)
    assert session.biometrics.hrv_delta == pytest.approx(10.0)
    expected_impact = 0.25 * (2 / 3) + 0.30 * 1.0 + 0.25 * 0.6 + 0.20 * 0.5
    assert session.impact_score == pytest.approx(expected_impact)

    assert store.get_event("a").session_id == session.session_id
    assert store.get_event("late").session_id is None
    pending = store.fetch_unprocessed_events(result.watermark)
    assert [event.event_id for event in pending] == ["late"]


def test_rerun_does_not_duplicate_sessions() -> None:
    store = _store()
    store.insert_events([_event("a", EVENING), _event("b", EVENING + timedelta(minutes=4))])
    reconstructor = SessionReconstructor(store, FakeBiometrics())

    first = reconstructor.run(None)
    second = reconstructor.run(first.watermark)

    assert first.sessions_created == 1
    assert second.sessions_created == 0
    assert len(store.list_sessions()) == 1


def test_sessions_commit_in_batches() -> None:
    store = _store()
    store.insert_events(
        [
            _event("a", EVENING),
            _event("b", EVENING + timedelta(minutes=4)),
            _event("c", EVENING + timedelta(hours=1)),
            _event("d", EVENING + timedelta(hours=1, minutes=4)),
        ]
    )
    batches = []

    result = SessionReconstructor(store, FakeBiometrics(), SessionConfig(batch_size=1)).run(
        None, on_batch=lambda progress: batches.append(progress.sessions_created)
    )

    assert result.batches_committed == 2
    assert batches == [1, 2]


def test_cancelled_run_commits_nothing() -> None:
    store = _store()
    store.insert_events([_event("a", EVENING), _event("b", EVENING + timedelta(minutes=4))])
    token = CancellationToken()
    token.cancel()

    with pytest.raises(OperationCancelled, match="cancelled"):
        SessionReconstructor(store, FakeBiometrics()).run(None, token)

    assert store.list_sessions() == []
    assert store.get_watermark(SESSION_RECONSTRUCTION) is None


def test_newest_cluster_stays_open_until_the_gap_has_passed() -> None:
    store = _store()
    store.insert_events([_event("a", EVENING), _event("b", EVENING + timedelta(minutes=4))])
    now = [EVENING + timedelta(minutes=20)]
    reconstructor = SessionReconstructor(store, FakeBiometrics(), clock=lambda: now[0])

    waiting = reconstructor.run(None)

    assert waiting.clusters_open == 1
    assert waiting.sessions_created == 0
    assert store.list_sessions() == []
    assert store.get_event("a").session_id is None
    assert store.get_watermark(SESSION_RECONSTRUCTION) is None

    now[0] = EVENING + timedelta(minutes=39)
    closed = reconstructor.run(waiting.watermark)

    assert closed.clusters_open == 0
    assert closed.sessions_created == 1
    assert store.get_event("a").session_id is not None


def test_events_arriving_between_runs_join_the_open_session() -> None:
    store = _store()
    store.insert_events([_event("e1", EVENING), _event("e2", EVENING + timedelta(minutes=4))])
    now = [EVENING + timedelta(minutes=9)]
    reconstructor = SessionReconstructor(store, FakeBiometrics(), clock=lambda: now[0])
    watermark = reconstructor.run(None).watermark

    for event_id, minute in (("e3", 10), ("e4", 14)):
        store.insert_events([_event(event_id, EVENING + timedelta(minutes=minute))])
        now[0] = EVENING + timedelta(minutes=minute + 5)
        watermark = reconstructor.run(watermark).watermark
    now[0] = EVENING + timedelta(hours=1)
    reconstructor.run(watermark)

    [session] = store.list_sessions()
    assert session.event_ids == ("e1", "e2", "e3", "e4")
    assert (session.started_at, session.ended_at) == (EVENING, EVENING + timedelta(minutes=18))


def test_late_events_extend_the_newest_committed_session() -> None:
    store = _store()
    store.insert_events([_event("e1", EVENING), _event("e2", EVENING + timedelta(minutes=4))])
    reconstructor = SessionReconstructor(store, FakeBiometrics())
    first = reconstructor.run(None)
    [original] = store.list_sessions()

    store.insert_events([_event("e3", EVENING + timedelta(minutes=10))])
    second = reconstructor.run(first.watermark)
    store.insert_events([_event("e4", EVENING + timedelta(minutes=14))])
    third = reconstructor.run(second.watermark)

    assert (second.sessions_created, second.sessions_extended) == (0, 1)
    assert (third.sessions_created, third.sessions_extended) == (0, 1)
    assert third.watermark == EVENING + timedelta(minutes=14)
    [session] = store.list_sessions()
    assert session.event_ids == ("e1", "e2", "e3", "e4")
    assert session.ended_at == EVENING + timedelta(minutes=18)
    assert store.get_session(original.session_id) is None
    assert {store.get_event(event_id).session_id for event_id in session.event_ids} == {session.session_id}

    full_store = _store()
    full_store.insert_events(
        [_event(f"e{index + 1}", EVENING + timedelta(minutes=minute)) for index, minute in enumerate((0, 4, 10, 14))]
    )
    SessionReconstructor(full_store, FakeBiometrics()).run(None)
    assert full_store.list_sessions() == store.list_sessions()
