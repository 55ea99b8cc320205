from __future__ import annotations

from datetime import datetime, timedelta
import sqlite3

from resonance.backfill import BackfillMode, BackfillOrchestrator, BackfillState
from resonance.biometrics import SQLiteBiometricHistory, init_biometric_tables
from resonance.models import ActivityContext, PlaybackEvent, Song
from resonance.storage import LAST_FULL_BACKFILL, SESSION_RECONSTRUCTION, SONG_IMPACT, SQLiteStore, init_db

NOW = datetime(2024, 3, 10, 12, 0)
DAY_ONE = datetime(2024, 3, 5, 19, 0)
DAY_TWO = datetime(2024, 3, 6, 19, 0)


def _play(event_id: str, start: datetime, song_id: str) -> PlaybackEvent:
    return PlaybackEvent(
        event_id=event_id,
        song_id=song_id,
        playlist_id="p1",
        started_at=start,
        ended_at=start + timedelta(minutes=4),
        song_duration=240.0,
        listen_percentage=1.0,
    )


def _connection() -> sqlite3.Connection:
    connection = sqlite3.connect(":memory:")
    init_db(connection)
    init_biometric_tables(connection)
    return connection


def _seed(store: SQLiteStore) -> None:
    store.upsert_songs(
        [
            Song(song_id="s1", title="One", artist="A", bpm=70.0),
            Song(song_id="s2", title="Two", artist="B", bpm=90.0),
        ]
    )
    store.upsert_playlist("p1", "Evening", ["s1", "s2"])
    store.insert_events(
        [
            _play("e1", DAY_ONE, "s1"),
            _play("e2", DAY_ONE + timedelta(minutes=4), "s2"),
        ]
    )


def _orchestrator(store: SQLiteStore | None = None) -> BackfillOrchestrator:
    if store is None:
        store = SQLiteStore(_connection())
        _seed(store)
    return BackfillOrchestrator(store, SQLiteBiometricHistory(store.connection), clock=lambda: NOW)


class FailingStore(SQLiteStore):
    def commit_learning_batch(self, effects, aggregates, watermark):
        raise sqlite3.OperationalError("database is locked")


def test_full_backfill_runs_every_stage_in_order() -> None:
    orchestrator = _orchestrator()
    states = []
    orchestrator.subscribe(
        lambda progress: states.append(progress.state)
        if not states or states[-1] is not progress.state
        else None
    )

    report = orchestrator.run_full_backfill()

    assert report.succeeded
    assert report.mode is BackfillMode.FULL
    assert states == [
        BackfillState.IDLE,
        BackfillState.RECONSTRUCTING_SESSIONS,
        BackfillState.CALCULATING_SONG_IMPACTS,
        BackfillState.CALCULATING_PLAYLIST_IMPACTS,
        BackfillState.COMPLETED,
    ]
    assert report.sessions.sessions_created == 1
    assert report.learning.events_applied == 2
    assert report.playlists.playlists_updated == 1
    assert orchestrator.progress.state is BackfillState.COMPLETED
    assert orchestrator.progress.playlists_updated == 1
    assert not orchestrator.is_running


def test_full_backfill_records_stage_watermarks() -> None:
    orchestrator = _orchestrator()

    orchestrator.run_full_backfill()

    store = orchestrator.store
    assert store.get_watermark(SESSION_RECONSTRUCTION) == DAY_ONE + timedelta(minutes=4)
    assert store.get_watermark(SONG_IMPACT) == DAY_ONE + timedelta(minutes=4)
    assert store.get_watermark(LAST_FULL_BACKFILL) == NOW
    assert store.get_playlist_aggregate("p1").session_count == 1


def test_incremental_backfill_only_processes_new_events() -> None:
    orchestrator = _orchestrator()
    orchestrator.run_full_backfill()
    store = orchestrator.store
    store.insert_events(
        [
            _play("e3", DAY_TWO, "s1"),
            _play("e4", DAY_TWO + timedelta(minutes=4), "s1"),
        ]
    )

    report = orchestrator.run_incremental_backfill()

    assert report.succeeded
    assert report.sessions.sessions_created == 1
    assert report.learning.events_applied == 2
    assert len(store.list_sessions()) == 2
    effect = store.get_song_effect("s1", ActivityContext.RELAXATION)
    assert effect.sample_count == 3
    assert store.get_watermark(SONG_IMPACT) == DAY_TWO + timedelta(minutes=4)
    assert store.get_watermark(LAST_FULL_BACKFILL) == NOW


def test_incremental_backfill_without_new_events_is_a_no_op() -> None:
    orchestrator = _orchestrator()
    orchestrator.run_full_backfill()

    report = orchestrator.run_incremental_backfill()

    assert report.succeeded
    assert report.sessions.sessions_created == 0
    assert report.learning.events_seen == 0
    assert orchestrator.store.get_song_effect("s2", ActivityContext.RELAXATION).sample_count == 1


def test_full_backfill_rerun_is_idempotent() -> None:
    orchestrator = _orchestrator()
    orchestrator.run_full_backfill()
    sessions_before = orchestrator.store.list_sessions()
    effect_before = orchestrator.store.get_song_effect("s1", ActivityContext.RELAXATION)

    orchestrator.run_full_backfill()

    assert orchestrator.store.list_sessions() == sessions_before
    assert orchestrator.store.get_song_effect("s1", ActivityContext.RELAXATION) == effect_before


def test_trigger_while_running_is_ignored() -> None:
    orchestrator = _orchestrator()
    nested = []

    def trigger_again(progress):
        if progress.state is BackfillState.RECONSTRUCTING_SESSIONS and not nested:
            nested.append((orchestrator.is_running, orchestrator.run_incremental_backfill()))

    orchestrator.subscribe(trigger_again)

    report = orchestrator.run_full_backfill()

    assert report.succeeded
    assert nested == [(True, None)]


def test_cancel_during_learning_keeps_committed_sessions() -> None:
    orchestrator = _orchestrator()

    def cancel_on_learning(progress):
        if progress.state is BackfillState.CALCULATING_SONG_IMPACTS:
            orchestrator.cancel()

    orchestrator.subscribe(cancel_on_learning)

    report = orchestrator.run_full_backfill()

    assert report.state is BackfillState.FAILED
    assert report.cancelled
    assert report.error == "cancelled"
    assert orchestrator.progress.cancelled
    store = orchestrator.store
    assert len(store.list_sessions()) == 1
    assert store.get_watermark(SESSION_RECONSTRUCTION) is not None
    assert store.get_watermark(SONG_IMPACT) is None
    assert store.get_watermark(LAST_FULL_BACKFILL) is None


def test_cancel_without_running_backfill_does_nothing() -> None:
    orchestrator = _orchestrator()

    orchestrator.cancel()

    assert orchestrator.run_incremental_backfill().succeeded


def test_storage_error_fails_backfill(caplog) -> None:
    store = FailingStore(_connection())
    _seed(store)
    orchestrator = _orchestrator(store)

    report = orchestrator.run_incremental_backfill()

    assert report.state is BackfillState.FAILED
    assert report.error == "database is locked"
    assert not report.cancelled
    assert report.sessions.sessions_created == 1
    assert report.learning is None
    assert orchestrator.progress.state is BackfillState.FAILED
    assert "Backfill failed during calculatingSongImpacts" in caplog.text
    assert not orchestrator.is_running


def test_unsubscribe_stops_updates() -> None:
    orchestrator = _orchestrator()
    seen = []
    unsubscribe = orchestrator.subscribe(seen.append)
    unsubscribe()

    orchestrator.run_full_backfill()

    assert seen == []


def test_each_run_starts_by_publishing_idle_with_its_mode() -> None:
    orchestrator = _orchestrator()
    orchestrator.run_full_backfill()
    seen = []
    orchestrator.subscribe(seen.append)

    orchestrator.run_incremental_backfill()

    first = seen[0]
    assert first.state is BackfillState.IDLE
    assert first.mode is BackfillMode.INCREMENTAL
    assert first.message == "Starting incremental backfill"
    assert (first.sessions_created, first.events_processed, first.playlists_updated) == (0, 0, 0)
    assert seen[-1].state is BackfillState.COMPLETED
    assert seen[-1].mode is BackfillMode.INCREMENTAL


def _grow_and_backfill(run_times: list[datetime]) -> SQLiteStore:
    """Insert one more play before each incremental run, then run once more at NOW."""
    store = SQLiteStore(_connection())
    _seed(store)
    clock = [run_times[0]]
    orchestrator = BackfillOrchestrator(store, SQLiteBiometricHistory(store.connection), clock=lambda: clock[0])
    orchestrator.run_incremental_backfill()
    for event_id, song_id, minute, run_at in zip(("e3", "e4"), ("s1", "s2"), (10, 14), run_times[1:]):
        store.insert_events([_play(event_id, DAY_ONE + timedelta(minutes=minute), song_id)])
        clock[0] = run_at
        assert orchestrator.run_incremental_backfill().succeeded
    clock[0] = NOW
    assert orchestrator.run_incremental_backfill().succeeded
    return store


def _full_backfill_of_same_plays() -> SQLiteStore:
    store = SQLiteStore(_connection())
    _seed(store)
    store.insert_events(
        [
            _play("e3", DAY_ONE + timedelta(minutes=10), "s1"),
            _play("e4", DAY_ONE + timedelta(minutes=14), "s2"),
        ]
    )
    assert _orchestrator(store).run_full_backfill().succeeded
    return store


def _assert_same_derived_state(incremental: SQLiteStore, full: SQLiteStore) -> None:
    [session] = full.list_sessions()
    assert session.event_ids == ("e1", "e2", "e3", "e4")
    assert incremental.list_sessions() == full.list_sessions()
    for song_id in ("s1", "s2"):
        assert incremental.fetch_song_effects(song_id) == full.fetch_song_effects(song_id)
    assert incremental.get_playlist_aggregate("p1").session_count == 1


def test_incremental_runs_while_listening_match_full_backfill() -> None:
    minutes = (9, 15, 19)
    incremental = _grow_and_backfill([DAY_ONE + timedelta(minutes=minute) for minute in minutes])

    _assert_same_derived_state(incremental, _full_backfill_of_same_plays())


def test_incremental_runs_after_listening_match_full_backfill() -> None:
    incremental = _grow_and_backfill([NOW, NOW, NOW])

    _assert_same_derived_state(incremental, _full_backfill_of_same_plays())
