"""Incremental per-song, per-context effect learning."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
import logging
from statistics import fmean
from typing import Callable, Iterable

from resonance.cancellation import CancellationToken
from resonance.config import LearningConfig
from resonance.impact import ImpactScore, compute_impact
from resonance.models import ActivityContext, PlaybackEvent, SongAggregate, SongEffect
from resonance.storage import SQLiteStore

LOGGER = logging.getLogger(__name__)


@dataclass
class LearningResult:
    events_seen: int = 0
    events_applied: int = 0
    events_skipped: int = 0
    effects_updated: int = 0
    songs_updated: int = 0
    batches_committed: int = 0
    watermark: datetime | None = None


def ema_alpha(sample_count: int, config: LearningConfig = LearningConfig()) -> float:
    """Faster learning rate while an effect is still cold."""
    if sample_count < config.cold_start_samples:
        return config.cold_start_alpha
    return config.steady_state_alpha


def apply_impact(
    effect: SongEffect,
    impact: ImpactScore,
    now: datetime,
    config: LearningConfig = LearningConfig(),
) -> SongEffect:
    alpha = ema_alpha(effect.sample_count, config)

    def blend(current: float, observed: float) -> float:
        return (1.0 - alpha) * current + alpha * observed

    sample_count = effect.sample_count + 1
    raw_confidence = min(1.0, sample_count / config.full_confidence_samples)
    if not impact.has_biometric_data:
        raw_confidence = min(raw_confidence, config.behavioral_confidence_cap)
    return replace(
        effect,
        calm=blend(effect.calm, impact.calm),
        energy=blend(effect.energy, impact.energy),
        focus=blend(effect.focus, impact.focus),
        mood_lift=blend(effect.mood_lift, impact.mood_lift),
        sample_count=sample_count,
        confidence=max(effect.confidence, raw_confidence),
        first_updated_at=effect.first_updated_at or now,
        last_updated_at=now,
    )


def familiarity(events: Iterable[PlaybackEvent], config: LearningConfig = LearningConfig()) -> float:
    """Share of the full-familiarity play count reached by completed plays."""
    plays = sum(1 for event in events if event.is_finalized and not event.was_skipped)
    return min(1.0, plays / config.familiarity_full_plays)


def aggregate_song(song_id: str, effects: list[SongEffect], familiarity_score: float) -> SongAggregate:
    """Confidence-weighted mean of a song's context effects."""
    if not effects:
        return SongAggregate(
            song_id=song_id,
            calm=0.5,
            energy=0.5,
            focus=0.5,
            mood_lift=0.5,
            confidence=0.0,
            familiarity=familiarity_score,
        )
    total_weight = sum(effect.confidence for effect in effects)

    def average(attribute: str) -> float:
        if total_weight <= 0:
            return fmean(getattr(effect, attribute) for effect in effects)
        return sum(getattr(effect, attribute) * effect.confidence for effect in effects) / total_weight

    return SongAggregate(
        song_id=song_id,
        calm=average("calm"),
        energy=average("energy"),
        focus=average("focus"),
        mood_lift=average("mood_lift"),
        confidence=fmean(effect.confidence for effect in effects),
        familiarity=familiarity_score,
    )


class SongImpactLearner:
    def __init__(
        self,
        store: SQLiteStore,
        config: LearningConfig = LearningConfig(),
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.config = config
        self.clock = clock

    def _effects_for(self, song_id: str, working: dict[tuple[str, ActivityContext], SongEffect]) -> list[SongEffect]:
        merged = {effect.context: effect for effect in self.store.fetch_song_effects(song_id)}
        for (effect_song_id, context), effect in working.items():
            if effect_song_id == song_id:
                merged[context] = effect
        return list(merged.values())

    def run(
        self,
        since: datetime | None,
        token: CancellationToken | None = None,
        on_batch: Callable[[LearningResult], None] | None = None,
    ) -> LearningResult:
        token = token or CancellationToken()
        result = LearningResult(watermark=since)
        events = self.store.fetch_session_events(since)
        result.events_seen = len(events)

        contexts: dict[str, ActivityContext | None] = {}
        working: dict[tuple[str, ActivityContext], SongEffect] = {}
        dirty: dict[tuple[str, ActivityContext], SongEffect] = {}
        in_batch = 0
        covered: datetime | None = None

        def commit() -> None:
            nonlocal in_batch
            song_ids = sorted({song_id for song_id, _ in dirty})
            aggregates = [
                aggregate_song(
                    song_id,
                    self._effects_for(song_id, working),
                    familiarity(self.store.fetch_events(song_id), self.config),
                )
                for song_id in song_ids
            ]
            self.store.commit_learning_batch(list(dirty.values()), aggregates, covered)
            result.effects_updated += len(dirty)
            result.songs_updated += len(aggregates)
            result.batches_committed += 1
            result.watermark = covered
            LOGGER.info("Committed %d effect updates up to %s", len(dirty), covered.isoformat())
            dirty.clear()
            in_batch = 0
            if on_batch is not None:
                on_batch(result)

        for event in events:
            token.raise_if_cancelled()
            covered = event.started_at
            in_batch += 1
            if event.session_id not in contexts:
                session = self.store.get_session(event.session_id)
                contexts[event.session_id] = None if session is None else session.context
            context = contexts[event.session_id]
            if context is None or not event.is_finalized:
                LOGGER.warning("Skipping playback event %s without a finished session play", event.event_id)
                result.events_skipped += 1
            else:
                key = (event.song_id, context)
                effect = (
                    working.get(key)
                    or self.store.get_song_effect(event.song_id, context)
                    or SongEffect(song_id=event.song_id, context=context)
                )
                updated = apply_impact(effect, compute_impact(event, self.config), self.clock(), self.config)
                working[key] = updated
                dirty[key] = updated
                result.events_applied += 1
            if in_batch >= self.config.batch_size:
                commit()

        if in_batch:
            commit()
        return result
