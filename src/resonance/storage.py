"""SQLite persistence for songs, playback events and everything the learning pipeline derives."""

from __future__ import annotations

from datetime import datetime
import json
import sqlite3
from typing import Iterable, Protocol, Sequence

from resonance.models import (
    ActivityContext,
    BiometricSummary,
    ContextAssociation,
    HistoricalSession,
    PlaybackEvent,
    PlaylistAggregate,
    SleepCorrelation,
    Song,
    SongAggregate,
    SongEffect,
    TimeSlot,
)

SESSION_RECONSTRUCTION = "session_reconstruction"
SONG_IMPACT = "song_impact"
LAST_FULL_BACKFILL = "last_full_backfill"
WATERMARK_KEYS = (SESSION_RECONSTRUCTION, SONG_IMPACT, LAST_FULL_BACKFILL)


class EventSource(Protocol):
    def fetch_unprocessed_events(self, since: datetime | None) -> list[PlaybackEvent]:
        """Events with no session link that started after ``since``, ascending."""

    def fetch_events(self, song_id: str) -> list[PlaybackEvent]:
        """Every logged event for one song."""

    def fetch_session_events(self, since: datetime | None) -> list[PlaybackEvent]:
        """Session-linked events that started after ``since``, ascending."""


class WatermarkStore(Protocol):
    def get_watermark(self, key: str) -> datetime | None:
        ...

    def set_watermark(self, key: str, value: datetime) -> None:
        ...


def init_db(connection: sqlite3.Connection) -> None:
    connection.executescript(
        """
        CREATE TABLE IF NOT EXISTS songs (
            song_id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            artist TEXT NOT NULL,
            genre TEXT,
            bpm REAL NOT NULL DEFAULT 0,
            energy REAL NOT NULL DEFAULT 0.5,
            valence REAL NOT NULL DEFAULT 0.5,
            instrumentalness REAL NOT NULL DEFAULT 0.5,
            acoustic_density REAL NOT NULL DEFAULT 0.5,
            duration_seconds REAL NOT NULL DEFAULT 0,
            feature_confidence REAL NOT NULL DEFAULT 0,
            total_play_count INTEGER NOT NULL DEFAULT 0,
            total_skip_count INTEGER NOT NULL DEFAULT 0,
            last_played_at TEXT,
            effect_calm REAL NOT NULL DEFAULT 0.5,
            effect_energy REAL NOT NULL DEFAULT 0.5,
            effect_focus REAL NOT NULL DEFAULT 0.5,
            effect_mood_lift REAL NOT NULL DEFAULT 0.5,
            effect_confidence REAL NOT NULL DEFAULT 0,
            familiarity REAL NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS playlists (
            playlist_id TEXT PRIMARY KEY,
            name TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS playlist_songs (
            playlist_id TEXT NOT NULL,
            song_id TEXT NOT NULL,
            position INTEGER NOT NULL,
            PRIMARY KEY (playlist_id, song_id)
        );

        CREATE TABLE IF NOT EXISTS playback_events (
            event_id TEXT PRIMARY KEY,
            song_id TEXT NOT NULL,
            playlist_id TEXT,
            started_at TEXT,
            ended_at TEXT,
            song_duration REAL,
            listen_percentage REAL NOT NULL DEFAULT 0,
            was_skipped INTEGER NOT NULL DEFAULT 0,
            skip_reason TEXT,
            hr_at_start REAL,
            hr_at_end REAL,
            hrv_at_start REAL,
            hrv_at_end REAL,
            hr_delta REAL,
            hrv_delta REAL,
            was_ai_selected INTEGER NOT NULL DEFAULT 0,
            selection_score REAL,
            selection_reason TEXT,
            session_id TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_playback_events_started_at
            ON playback_events (started_at);
        CREATE INDEX IF NOT EXISTS idx_playback_events_song
            ON playback_events (song_id);

        CREATE TABLE IF NOT EXISTS historical_sessions (
            session_id TEXT PRIMARY KEY,
            started_at TEXT NOT NULL,
            ended_at TEXT NOT NULL,
            event_ids TEXT NOT NULL,
            context TEXT NOT NULL,
            time_slot TEXT NOT NULL,
            playlist_id TEXT,
            skip_rate REAL NOT NULL,
            avg_listen_percentage REAL NOT NULL,
            impact_score REAL NOT NULL,
            hr_start REAL,
            hr_end REAL,
            hr_avg REAL,
            hr_min REAL,
            hr_max REAL,
            hrv_start REAL,
            hrv_end REAL,
            hrv_avg REAL,
            hrv_min REAL,
            hrv_max REAL,
            sleep_score REAL,
            sleep_duration_hours REAL,
            deep_sleep_fraction REAL
        );

        CREATE TABLE IF NOT EXISTS song_effects (
            song_id TEXT NOT NULL,
            context TEXT NOT NULL,
            calm REAL NOT NULL,
            energy REAL NOT NULL,
            focus REAL NOT NULL,
            mood_lift REAL NOT NULL,
            sample_count INTEGER NOT NULL,
            confidence REAL NOT NULL,
            first_updated_at TEXT,
            last_updated_at TEXT,
            PRIMARY KEY (song_id, context)
        );

        CREATE TABLE IF NOT EXISTS playlist_aggregates (
            playlist_id TEXT PRIMARY KEY,
            avg_calm REAL NOT NULL,
            avg_focus REAL NOT NULL,
            avg_energy REAL NOT NULL,
            effect_confidence REAL NOT NULL,
            session_count INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS playlist_context_associations (
            playlist_id TEXT NOT NULL,
            context TEXT NOT NULL,
            frequency REAL NOT NULL,
            session_count INTEGER NOT NULL,
            avg_calm REAL,
            avg_energy REAL,
            avg_focus REAL,
            PRIMARY KEY (playlist_id, context)
        );

        CREATE TABLE IF NOT EXISTS watermarks (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );
        """
    )
    connection.commit()


def _format(value: datetime | None) -> str | None:
    return None if value is None else value.isoformat()


def _parse(value: str | None) -> datetime | None:
    return None if value is None else datetime.fromisoformat(value)


_SONG_COLUMNS = (
    "song_id, title, artist, genre, bpm, energy, valence, instrumentalness, acoustic_density, "
    "duration_seconds, feature_confidence, total_play_count, total_skip_count, last_played_at, "
    "effect_calm, effect_energy, effect_focus, effect_mood_lift, effect_confidence, familiarity"
)

_EVENT_COLUMNS = (
    "event_id, song_id, playlist_id, started_at, ended_at, song_duration, listen_percentage, "
    "was_skipped, skip_reason, hr_at_start, hr_at_end, hrv_at_start, hrv_at_end, hr_delta, "
    "hrv_delta, was_ai_selected, selection_score, selection_reason, session_id"
)

_SESSION_COLUMNS = (
    "session_id, started_at, ended_at, event_ids, context, time_slot, playlist_id, skip_rate, "
    "avg_listen_percentage, impact_score, hr_start, hr_end, hr_avg, hr_min, hr_max, hrv_start, "
    "hrv_end, hrv_avg, hrv_min, hrv_max, sleep_score, sleep_duration_hours, deep_sleep_fraction"
)

_EFFECT_COLUMNS = (
    "song_id, context, calm, energy, focus, mood_lift, sample_count, confidence, "
    "first_updated_at, last_updated_at"
)


def _song_from_row(row: Sequence) -> Song:
    return Song(
        song_id=row[0],
        title=row[1],
        artist=row[2],
        genre=row[3],
        bpm=row[4],
        energy=row[5],
        valence=row[6],
        instrumentalness=row[7],
        acoustic_density=row[8],
        duration_seconds=row[9],
        feature_confidence=row[10],
        total_play_count=row[11],
        total_skip_count=row[12],
        last_played_at=_parse(row[13]),
        effect_calm=row[14],
        effect_energy=row[15],
        effect_focus=row[16],
        effect_mood_lift=row[17],
        effect_confidence=row[18],
        familiarity=row[19],
    )


def _event_from_row(row: Sequence) -> PlaybackEvent:
    return PlaybackEvent(
        event_id=row[0],
        song_id=row[1],
        playlist_id=row[2],
        started_at=_parse(row[3]),
        ended_at=_parse(row[4]),
        song_duration=row[5],
        listen_percentage=row[6],
        was_skipped=bool(row[7]),
        skip_reason=row[8],
        hr_at_start=row[9],
        hr_at_end=row[10],
        hrv_at_start=row[11],
        hrv_at_end=row[12],
        hr_delta=row[13],
        hrv_delta=row[14],
        was_ai_selected=bool(row[15]),
        selection_score=row[16],
        selection_reason=row[17],
        session_id=row[18],
    )


def _event_values(event: PlaybackEvent) -> tuple:
    return (
        event.event_id,
        event.song_id,
        event.playlist_id,
        _format(event.started_at),
        _format(event.ended_at),
        event.song_duration,
        event.listen_percentage,
        int(event.was_skipped),
        event.skip_reason,
        event.hr_at_start,
        event.hr_at_end,
        event.hrv_at_start,
        event.hrv_at_end,
        event.hr_delta,
        event.hrv_delta,
        int(event.was_ai_selected),
        event.selection_score,
        event.selection_reason,
        event.session_id,
    )


def _session_from_row(row: Sequence) -> HistoricalSession:
    return HistoricalSession(
        session_id=row[0],
        started_at=datetime.fromisoformat(row[1]),
        ended_at=datetime.fromisoformat(row[2]),
        event_ids=tuple(json.loads(row[3])),
        context=ActivityContext(row[4]),
        time_slot=TimeSlot(row[5]),
        playlist_id=row[6],
        skip_rate=row[7],
        avg_listen_percentage=row[8],
        impact_score=row[9],
        biometrics=BiometricSummary(*row[10:20]),
        sleep=SleepCorrelation(
            sleep_score=row[20],
            duration_hours=row[21],
            deep_sleep_fraction=row[22],
        ),
    )


def _session_values(session: HistoricalSession) -> tuple:
    bio = session.biometrics
    return (
        session.session_id,
        session.started_at.isoformat(),
        session.ended_at.isoformat(),
        json.dumps(list(session.event_ids)),
        session.context.value,
        session.time_slot.value,
        session.playlist_id,
        session.skip_rate,
        session.avg_listen_percentage,
        session.impact_score,
        bio.hr_start,
        bio.hr_end,
        bio.hr_avg,
        bio.hr_min,
        bio.hr_max,
        bio.hrv_start,
        bio.hrv_end,
        bio.hrv_avg,
        bio.hrv_min,
        bio.hrv_max,
        session.sleep.sleep_score,
        session.sleep.duration_hours,
        session.sleep.deep_sleep_fraction,
    )


def _effect_from_row(row: Sequence) -> SongEffect:
    return SongEffect(
        song_id=row[0],
        context=ActivityContext(row[1]),
        calm=row[2],
        energy=row[3],
        focus=row[4],
        mood_lift=row[5],
        sample_count=row[6],
        confidence=row[7],
        first_updated_at=_parse(row[8]),
        last_updated_at=_parse(row[9]),
    )


def _check_watermark_key(key: str) -> None:
    if key not in WATERMARK_KEYS:
        valid = ", ".join(WATERMARK_KEYS)
        raise ValueError(f"Unknown watermark '{key}'. Expected one of: {valid}")


class SQLiteStore:
    """Event source, watermark store and derived-state storage over one connection.

    Every multi-row write runs inside ``with self.connection:`` so a batch is
    either fully committed or rolled back.
    """

    def __init__(self, connection: sqlite3.Connection) -> None:
        self.connection = connection

    # Library

    def upsert_song(self, song: Song) -> None:
        self.upsert_songs([song])

    def upsert_songs(self, songs: Iterable[Song]) -> int:
        rows = [
            (
                song.song_id,
                song.title,
                song.artist,
                song.genre,
                song.bpm,
                song.energy,
                song.valence,
                song.instrumentalness,
                song.acoustic_density,
                song.duration_seconds,
                song.feature_confidence,
            )
            for song in songs
        ]
        with self.connection:
            self.connection.executemany(
                """
                INSERT INTO songs (
                    song_id, title, artist, genre, bpm, energy, valence,
                    instrumentalness, acoustic_density, duration_seconds, feature_confidence
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(song_id) DO UPDATE SET
                    title = excluded.title,
                    artist = excluded.artist,
                    genre = excluded.genre,
                    bpm = excluded.bpm,
                    energy = excluded.energy,
                    valence = excluded.valence,
                    instrumentalness = excluded.instrumentalness,
                    acoustic_density = excluded.acoustic_density,
                    duration_seconds = excluded.duration_seconds,
                    feature_confidence = excluded.feature_confidence
                """,
                rows,
            )
        return len(rows)

    def get_song(self, song_id: str) -> Song | None:
        row = self.connection.execute(
            f"SELECT {_SONG_COLUMNS} FROM songs WHERE song_id = ?", (song_id,)
        ).fetchone()
        return None if row is None else _song_from_row(row)

    def list_songs(self) -> list[Song]:
        rows = self.connection.execute(
            f"SELECT {_SONG_COLUMNS} FROM songs ORDER BY artist, title"
        ).fetchall()
        return [_song_from_row(row) for row in rows]

    def record_play(self, song_id: str, skipped: bool, played_at: datetime) -> None:
        with self.connection:
            self.connection.execute(
                """
                UPDATE songs
                SET total_play_count = total_play_count + 1,
                    total_skip_count = total_skip_count + ?,
                    last_played_at = ?
                WHERE song_id = ?
                """,
                (int(skipped), played_at.isoformat(), song_id),
            )

    def upsert_playlist(self, playlist_id: str, name: str, song_ids: Sequence[str]) -> None:
        with self.connection:
            self.connection.execute(
                """
                INSERT INTO playlists (playlist_id, name) VALUES (?, ?)
                ON CONFLICT(playlist_id) DO UPDATE SET name = excluded.name
                """,
                (playlist_id, name),
            )
            self.connection.execute(
                "DELETE FROM playlist_songs WHERE playlist_id = ?", (playlist_id,)
            )
            self.connection.executemany(
                """
                INSERT OR IGNORE INTO playlist_songs (playlist_id, song_id, position)
                VALUES (?, ?, ?)
                """,
                [(playlist_id, song_id, position) for position, song_id in enumerate(song_ids)],
            )

    def playlist_song_ids(self, playlist_id: str) -> list[str]:
        """Songs listed on the playlist, or the songs played from it when it was never imported."""
        rows = self.connection.execute(
            "SELECT song_id FROM playlist_songs WHERE playlist_id = ? ORDER BY position",
            (playlist_id,),
        ).fetchall()
        if rows:
            return [row[0] for row in rows]
        rows = self.connection.execute(
            """
            SELECT song_id, MIN(started_at) AS first_played
            FROM playback_events
            WHERE playlist_id = ?
            GROUP BY song_id
            ORDER BY first_played, song_id
            """,
            (playlist_id,),
        ).fetchall()
        return [row[0] for row in rows]

    # Playback events

    def insert_event(self, event: PlaybackEvent) -> None:
        self.insert_events([event])

    def insert_events(self, events: Iterable[PlaybackEvent]) -> int:
        rows = [_event_values(event) for event in events]
        before = self.connection.total_changes
        with self.connection:
            self.connection.executemany(
                f"INSERT OR IGNORE INTO playback_events ({_EVENT_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                rows,
            )
        return self.connection.total_changes - before

    def update_event(self, event: PlaybackEvent) -> None:
        values = _event_values(event)
        with self.connection:
            cursor = self.connection.execute(
                """
                UPDATE playback_events
                SET song_id = ?, playlist_id = ?, started_at = ?, ended_at = ?,
                    song_duration = ?, listen_percentage = ?, was_skipped = ?,
                    skip_reason = ?, hr_at_start = ?, hr_at_end = ?, hrv_at_start = ?,
                    hrv_at_end = ?, hr_delta = ?, hrv_delta = ?, was_ai_selected = ?,
                    selection_score = ?, selection_reason = ?, session_id = ?
                WHERE event_id = ?
                """,
                (*values[1:], values[0]),
            )
        if cursor.rowcount == 0:
            raise ValueError(f"Unknown playback event '{event.event_id}'")

    def get_event(self, event_id: str) -> PlaybackEvent | None:
        row = self.connection.execute(
            f"SELECT {_EVENT_COLUMNS} FROM playback_events WHERE event_id = ?", (event_id,)
        ).fetchone()
        return None if row is None else _event_from_row(row)

    def fetch_unprocessed_events(self, since: datetime | None) -> list[PlaybackEvent]:
        # Rows without a start time are returned too so the reconstructor can report them.
        rows = self.connection.execute(
            f"""
            SELECT {_EVENT_COLUMNS}
            FROM playback_events
            WHERE session_id IS NULL
              AND (started_at IS NULL OR ? IS NULL OR started_at > ?)
            ORDER BY started_at, event_id
            """,
            (_format(since), _format(since)),
        ).fetchall()
        return [_event_from_row(row) for row in rows]

    def fetch_events(self, song_id: str) -> list[PlaybackEvent]:
        rows = self.connection.execute(
            f"SELECT {_EVENT_COLUMNS} FROM playback_events WHERE song_id = ? ORDER BY started_at",
            (song_id,),
        ).fetchall()
        return [_event_from_row(row) for row in rows]

    def fetch_session_events(self, since: datetime | None) -> list[PlaybackEvent]:
        rows = self.connection.execute(
            f"""
            SELECT {_EVENT_COLUMNS}
            FROM playback_events
            WHERE session_id IS NOT NULL
              AND (? IS NULL OR started_at > ?)
            ORDER BY started_at, event_id
            """,
            (_format(since), _format(since)),
        ).fetchall()
        return [_event_from_row(row) for row in rows]

    def count_events(self) -> int:
        return self.connection.execute("SELECT COUNT(*) FROM playback_events").fetchone()[0]

    # Sessions

    def fetch_events_for_session(self, session_id: str) -> list[PlaybackEvent]:
        rows = self.connection.execute(
            f"""
            SELECT {_EVENT_COLUMNS}
            FROM playback_events
            WHERE session_id = ?
            ORDER BY started_at, event_id
            """,
            (session_id,),
        ).fetchall()
        return [_event_from_row(row) for row in rows]

    def save_sessions(
        self,
        sessions: Sequence[HistoricalSession],
        watermark: datetime,
        superseded: Sequence[str] = (),
    ) -> None:
        """Store a batch of sessions, link their events and advance the watermark atomically.

        Sessions listed in ``superseded`` were grown into one of the new sessions
        and are deleted in the same transaction.
        """
        with self.connection:
            self.connection.executemany(
                "DELETE FROM historical_sessions WHERE session_id = ?",
                [(session_id,) for session_id in superseded],
            )
            self.connection.executemany(
                f"INSERT OR REPLACE INTO historical_sessions ({_SESSION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [_session_values(session) for session in sessions],
            )
            self.connection.executemany(
                "UPDATE playback_events SET session_id = ? WHERE event_id = ?",
                [
                    (session.session_id, event_id)
                    for session in sessions
                    for event_id in session.event_ids
                ],
            )
            self._write_watermark(SESSION_RECONSTRUCTION, watermark)

    def get_session(self, session_id: str) -> HistoricalSession | None:
        row = self.connection.execute(
            f"SELECT {_SESSION_COLUMNS} FROM historical_sessions WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        return None if row is None else _session_from_row(row)

    def latest_session(self) -> HistoricalSession | None:
        row = self.connection.execute(
            f"SELECT {_SESSION_COLUMNS} FROM historical_sessions ORDER BY ended_at DESC LIMIT 1"
        ).fetchone()
        return None if row is None else _session_from_row(row)

    def list_sessions(self) -> list[HistoricalSession]:
        rows = self.connection.execute(
            f"SELECT {_SESSION_COLUMNS} FROM historical_sessions ORDER BY started_at"
        ).fetchall()
        return [_session_from_row(row) for row in rows]

    def sessions_for_playlist(self, playlist_id: str) -> list[HistoricalSession]:
        rows = self.connection.execute(
            f"""
            SELECT {_SESSION_COLUMNS}
            FROM historical_sessions
            WHERE playlist_id = ?
            ORDER BY started_at
            """,
            (playlist_id,),
        ).fetchall()
        return [_session_from_row(row) for row in rows]

    def playlists_with_sessions(self) -> list[str]:
        rows = self.connection.execute(
            """
            SELECT DISTINCT playlist_id
            FROM historical_sessions
            WHERE playlist_id IS NOT NULL
            ORDER BY playlist_id
            """
        ).fetchall()
        return [row[0] for row in rows]

    # Learned effects

    def get_song_effect(self, song_id: str, context: ActivityContext) -> SongEffect | None:
        row = self.connection.execute(
            f"SELECT {_EFFECT_COLUMNS} FROM song_effects WHERE song_id = ? AND context = ?",
            (song_id, ActivityContext(context).value),
        ).fetchone()
        return None if row is None else _effect_from_row(row)

    def fetch_song_effects(self, song_id: str) -> list[SongEffect]:
        rows = self.connection.execute(
            f"SELECT {_EFFECT_COLUMNS} FROM song_effects WHERE song_id = ? ORDER BY context",
            (song_id,),
        ).fetchall()
        return [_effect_from_row(row) for row in rows]

    def commit_learning_batch(
        self,
        effects: Sequence[SongEffect],
        aggregates: Sequence[SongAggregate],
        watermark: datetime,
    ) -> None:
        with self.connection:
            self.connection.executemany(
                f"INSERT OR REPLACE INTO song_effects ({_EFFECT_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        effect.song_id,
                        effect.context.value,
                        effect.calm,
                        effect.energy,
                        effect.focus,
                        effect.mood_lift,
                        effect.sample_count,
                        effect.confidence,
                        _format(effect.first_updated_at),
                        _format(effect.last_updated_at),
                    )
                    for effect in effects
                ],
            )
            self.connection.executemany(
                """
                UPDATE songs
                SET effect_calm = ?, effect_energy = ?, effect_focus = ?,
                    effect_mood_lift = ?, effect_confidence = ?, familiarity = ?
                WHERE song_id = ?
                """,
                [
                    (
                        aggregate.calm,
                        aggregate.energy,
                        aggregate.focus,
                        aggregate.mood_lift,
                        aggregate.confidence,
                        aggregate.familiarity,
                        aggregate.song_id,
                    )
                    for aggregate in aggregates
                ],
            )
            self._write_watermark(SONG_IMPACT, watermark)

    def save_playlist_aggregate(self, aggregate: PlaylistAggregate) -> None:
        with self.connection:
            self.connection.execute(
                """
                INSERT OR REPLACE INTO playlist_aggregates (
                    playlist_id, avg_calm, avg_focus, avg_energy, effect_confidence, session_count
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    aggregate.playlist_id,
                    aggregate.avg_calm,
                    aggregate.avg_focus,
                    aggregate.avg_energy,
                    aggregate.effect_confidence,
                    aggregate.session_count,
                ),
            )
            self.connection.execute(
                "DELETE FROM playlist_context_associations WHERE playlist_id = ?",
                (aggregate.playlist_id,),
            )
            self.connection.executemany(
                """
                INSERT INTO playlist_context_associations (
                    playlist_id, context, frequency, session_count, avg_calm, avg_energy, avg_focus
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        aggregate.playlist_id,
                        context.value,
                        association.frequency,
                        association.session_count,
                        association.avg_calm,
                        association.avg_energy,
                        association.avg_focus,
                    )
                    for context, association in aggregate.context_associations.items()
                ],
            )

    def get_playlist_aggregate(self, playlist_id: str) -> PlaylistAggregate | None:
        row = self.connection.execute(
            """
            SELECT playlist_id, avg_calm, avg_focus, avg_energy, effect_confidence, session_count
            FROM playlist_aggregates
            WHERE playlist_id = ?
            """,
            (playlist_id,),
        ).fetchone()
        if row is None:
            return None
        association_rows = self.connection.execute(
            """
            SELECT context, frequency, session_count, avg_calm, avg_energy, avg_focus
            FROM playlist_context_associations
            WHERE playlist_id = ?
            ORDER BY context
            """,
            (playlist_id,),
        ).fetchall()
        return PlaylistAggregate(
            playlist_id=row[0],
            avg_calm=row[1],
            avg_focus=row[2],
            avg_energy=row[3],
            effect_confidence=row[4],
            session_count=row[5],
            context_associations={
                ActivityContext(context): ContextAssociation(
                    frequency=frequency,
                    session_count=session_count,
                    avg_calm=avg_calm,
                    avg_energy=avg_energy,
                    avg_focus=avg_focus,
                )
                for context, frequency, session_count, avg_calm, avg_energy, avg_focus in association_rows
            },
        )

    # Watermarks

    def _write_watermark(self, key: str, value: datetime) -> None:
        _check_watermark_key(key)
        self.connection.execute(
            """
            INSERT INTO watermarks (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value.isoformat()),
        )

    def get_watermark(self, key: str) -> datetime | None:
        _check_watermark_key(key)
        row = self.connection.execute(
            "SELECT value FROM watermarks WHERE key = ?", (key,)
        ).fetchone()
        return None if row is None else datetime.fromisoformat(row[0])

    def set_watermark(self, key: str, value: datetime) -> None:
        with self.connection:
            self._write_watermark(key, value)

    def reset_derived_state(self) -> None:
        """Drop sessions, links, effects, aggregates and stage watermarks in one transaction."""
        with self.connection:
            self.connection.execute("DELETE FROM historical_sessions")
            self.connection.execute("UPDATE playback_events SET session_id = NULL")
            self.connection.execute("DELETE FROM song_effects")
            self.connection.execute(
                """
                UPDATE songs
                SET effect_calm = 0.5, effect_energy = 0.5, effect_focus = 0.5,
                    effect_mood_lift = 0.5, effect_confidence = 0, familiarity = 0
                """
            )
            self.connection.execute("DELETE FROM playlist_aggregates")
            self.connection.execute("DELETE FROM playlist_context_associations")
            self.connection.execute(
                "DELETE FROM watermarks WHERE key IN (?, ?)",
                (SESSION_RECONSTRUCTION, SONG_IMPACT),
            )
