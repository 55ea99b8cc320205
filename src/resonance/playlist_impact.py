"""Roll learned song effects up to playlist level."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
import logging
from statistics import fmean
from typing import Sequence

from resonance.cancellation import CancellationToken
from resonance.models import ActivityContext, ContextAssociation, PlaylistAggregate, SongEffect
from resonance.storage import SQLiteStore

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SongContribution:
    """One song's confidence-weighted effect average and its mean confidence."""

    song_id: str
    calm: float
    energy: float
    focus: float
    confidence: float


@dataclass
class PlaylistImpactResult:
    playlists_updated: int = 0


def song_contribution(song_id: str, effects: Sequence[SongEffect]) -> SongContribution | None:
    if not effects:
        return None
    total_weight = sum(effect.confidence for effect in effects)
    if total_weight > 0:
        calm = sum(effect.calm * effect.confidence for effect in effects) / total_weight
        energy = sum(effect.energy * effect.confidence for effect in effects) / total_weight
        focus = sum(effect.focus * effect.confidence for effect in effects) / total_weight
    else:
        calm = fmean(effect.calm for effect in effects)
        energy = fmean(effect.energy for effect in effects)
        focus = fmean(effect.focus for effect in effects)
    return SongContribution(
        song_id=song_id,
        calm=calm,
        energy=energy,
        focus=focus,
        confidence=fmean(effect.confidence for effect in effects),
    )


def combine_contributions(contributions: Sequence[SongContribution]) -> tuple[float, float, float, float]:
    """Return (calm, focus, energy, confidence) weighted by each song's confidence."""
    if not contributions:
        return 0.5, 0.5, 0.5, 0.0
    total_weight = sum(item.confidence for item in contributions)
    confidence = fmean(item.confidence for item in contributions)
    if total_weight <= 0:
        return (
            fmean(item.calm for item in contributions),
            fmean(item.focus for item in contributions),
            fmean(item.energy for item in contributions),
            confidence,
        )
    return (
        sum(item.calm * item.confidence for item in contributions) / total_weight,
        sum(item.focus * item.confidence for item in contributions) / total_weight,
        sum(item.energy * item.confidence for item in contributions) / total_weight,
        confidence,
    )


def context_associations(
    session_contexts: Sequence[ActivityContext],
    effects_by_song: dict[str, list[SongEffect]],
) -> dict[ActivityContext, ContextAssociation]:
    counts = Counter(session_contexts)
    total = len(session_contexts)
    associations: dict[ActivityContext, ContextAssociation] = {}
    for context, count in counts.items():
        rows = [
            effect
            for effects in effects_by_song.values()
            for effect in effects
            if effect.context == context
        ]
        associations[context] = ContextAssociation(
            frequency=count / total,
            session_count=count,
            avg_calm=fmean(effect.calm for effect in rows) if rows else None,
            avg_energy=fmean(effect.energy for effect in rows) if rows else None,
            avg_focus=fmean(effect.focus for effect in rows) if rows else None,
        )
    return associations


class PlaylistImpactAggregator:
    def __init__(self, store: SQLiteStore) -> None:
        self.store = store

    def aggregate(self, playlist_id: str) -> PlaylistAggregate:
        sessions = self.store.sessions_for_playlist(playlist_id)
        effects_by_song = {
            song_id: self.store.fetch_song_effects(song_id)
            for song_id in self.store.playlist_song_ids(playlist_id)
        }
        contributions = [
            contribution
            for song_id, effects in effects_by_song.items()
            if (contribution := song_contribution(song_id, effects)) is not None
        ]
        calm, focus, energy, confidence = combine_contributions(contributions)
        return PlaylistAggregate(
            playlist_id=playlist_id,
            avg_calm=calm,
            avg_focus=focus,
            avg_energy=energy,
            effect_confidence=confidence,
            session_count=len(sessions),
            context_associations=context_associations(
                [session.context for session in sessions], effects_by_song
            ),
        )

    def run(self, token: CancellationToken | None = None) -> PlaylistImpactResult:
        token = token or CancellationToken()
        result = PlaylistImpactResult()
        for playlist_id in self.store.playlists_with_sessions():
            token.raise_if_cancelled()
            self.store.save_playlist_aggregate(self.aggregate(playlist_id))
            result.playlists_updated += 1
        LOGGER.info("Aggregated %d playlists", result.playlists_updated)
        return result
