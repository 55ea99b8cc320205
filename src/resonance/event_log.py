"""Playback event lifecycle: open an event when a song starts, finalize it once."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
import logging
from uuid import uuid4

from resonance.models import PlaybackEvent
from resonance.storage import SQLiteStore

LOGGER = logging.getLogger(__name__)

SKIP_LISTEN_THRESHOLD = 0.3


def _delta(start: float | None, end: float | None) -> float | None:
    if start is None or end is None or start <= 0:
        return None
    return end - start


def start_playback(
    store: SQLiteStore,
    song_id: str,
    started_at: datetime,
    *,
    playlist_id: str | None = None,
    heart_rate: float | None = None,
    hrv: float | None = None,
    selection_score: float | None = None,
    selection_reason: str | None = None,
    event_id: str | None = None,
) -> PlaybackEvent:
    song = store.get_song(song_id)
    duration = song.duration_seconds if song is not None and song.duration_seconds > 0 else None
    event = PlaybackEvent(
        event_id=event_id or uuid4().hex,
        song_id=song_id,
        started_at=started_at,
        song_duration=duration,
        hr_at_start=heart_rate,
        hrv_at_start=hrv,
        was_ai_selected=selection_score is not None,
        selection_score=selection_score,
        selection_reason=selection_reason,
        playlist_id=playlist_id,
    )
    store.insert_event(event)
    return event


def finish_playback(
    store: SQLiteStore,
    event_id: str,
    ended_at: datetime,
    *,
    skipped: bool = False,
    skip_reason: str | None = None,
    heart_rate: float | None = None,
    hrv: float | None = None,
) -> PlaybackEvent:
    """Finalize an open event and update the song's play statistics."""
    event = store.get_event(event_id)
    if event is None:
        raise ValueError(f"Unknown playback event '{event_id}'")
    if event.is_finalized:
        raise ValueError(f"Playback event '{event_id}' is already finalized")

    listen_percentage = 0.0
    if event.started_at is not None and event.song_duration:
        listened = (ended_at - event.started_at).total_seconds()
        listen_percentage = max(0.0, min(1.0, listened / event.song_duration))
    was_skipped = skipped or listen_percentage < SKIP_LISTEN_THRESHOLD

    finished = replace(
        event,
        ended_at=ended_at,
        listen_percentage=listen_percentage,
        was_skipped=was_skipped,
        skip_reason=skip_reason if was_skipped else None,
        hr_at_end=heart_rate,
        hrv_at_end=hrv,
        hr_delta=_delta(event.hr_at_start, heart_rate),
        hrv_delta=_delta(event.hrv_at_start, hrv),
    )
    store.update_event(finished)
    store.record_play(event.song_id, was_skipped, event.started_at or ended_at)
    LOGGER.debug("Finished playback %s at %.0f%%", event_id, listen_percentage * 100)
    return finished
