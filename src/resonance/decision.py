"""Song scoring, guard filters and smooth-transition ranking."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Protocol

from resonance.config import UserPreferences
from resonance.diurnal import get_time_slot, suggested_max_bpm
from resonance.features import feature_profile
from resonance.models import ActivityContext, MusicNeed, Song, SongEffect, StateVector

LOGGER = logging.getLogger(__name__)

# (low bpm, high bpm, target energy); None means "keep the current energy".
_NEED_BANDS: dict[MusicNeed, tuple[float, float, float | None]] = {
    MusicNeed.ENERGIZE: (120.0, 160.0, 0.8),
    MusicNeed.CALM: (60.0, 90.0, 0.25),
    MusicNeed.FOCUS: (80.0, 110.0, 0.45),
    MusicNeed.MAINTAIN: (90.0, 130.0, None),
    MusicNeed.TRANSITION: (100.0, 120.0, 0.5),
}

_NEED_VERBS = {
    MusicNeed.ENERGIZE: "energize",
    MusicNeed.CALM: "calm down",
    MusicNeed.FOCUS: "focus",
    MusicNeed.MAINTAIN: "keep your mood",
    MusicNeed.TRANSITION: "wind down",
}

BPM_MATCH_SCALE = 50.0
UNKNOWN_BPM_PROFILE = 120.0
STRESSED_THRESHOLD = 0.6
STRESS_FAMILIARITY_BOOST = 1.5
TRANSITION_BPM_SCALE = 30.0
TRANSITION_ENERGY_SCALE = 0.4
NIGHT_END_HOUR = 5


class SongCatalog(Protocol):
    def get_song(self, song_id: str) -> Song | None:
        ...

    def get_song_effect(self, song_id: str, context: ActivityContext) -> SongEffect | None:
        ...


@dataclass(frozen=True)
class NeedTarget:
    bpm_low: float
    bpm_high: float
    bpm: float
    energy: float


@dataclass(frozen=True)
class DecisionContext:
    """Snapshot of everything a single selection looks at."""

    state: StateVector
    candidate_song_ids: tuple[str, ...]
    recently_played: dict[str, datetime] = field(default_factory=dict)
    session_history: tuple[str, ...] = ()
    preferences: UserPreferences = UserPreferences()
    now: datetime | None = None

    @property
    def current_time(self) -> datetime:
        return self.now or self.state.timestamp

    @property
    def is_session_start(self) -> bool:
        return not self.session_history

    def minutes_since_played(self, song_id: str) -> float | None:
        last_played = self.recently_played.get(song_id)
        if last_played is None:
            return None
        return (self.current_time - last_played).total_seconds() / 60.0


@dataclass(frozen=True)
class ExplanationComponent:
    factor: str
    contribution: float
    description: str


@dataclass(frozen=True)
class SongScore:
    song_id: str
    title: str
    artist: str
    bpm: float
    bpm_match: float
    energy_match: float
    familiarity: float
    historical_effect: float
    context_alignment: float
    recency_penalty: float
    time_of_day: float
    final_score: float
    confidence: float
    explanation: tuple[ExplanationComponent, ...] = ()

    def __lt__(self, other: SongScore) -> bool:
        return self.final_score < other.final_score

    @property
    def short_explanation(self) -> str:
        if not self.explanation:
            return "Selected for you"
        return max(self.explanation, key=lambda component: component.contribution).description

    @property
    def full_explanation(self) -> str:
        ranked = sorted(self.explanation, key=lambda component: component.contribution, reverse=True)
        lines = "\n".join(f"- {component.description}" for component in ranked[:3])
        return f"Why this song?\n\n{lines}"


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def target_for_need(need: MusicNeed, energy: float) -> NeedTarget:
    """BPM band for a need, interpolated inside the band by the listener's energy."""
    low, high, target_energy = _NEED_BANDS[MusicNeed(need)]
    energy = _clamp(energy)
    return NeedTarget(
        bpm_low=low,
        bpm_high=high,
        bpm=low + (high - low) * energy,
        energy=energy if target_energy is None else target_energy,
    )


def bpm_match(bpm: float, target_bpm: float) -> float:
    if bpm <= 0:
        return 0.5
    return _clamp(1.0 - abs(bpm - target_bpm) / BPM_MATCH_SCALE)


def _need_effect_value(need: MusicNeed, calm: float, energy: float, focus: float, mood_lift: float) -> float:
    if need is MusicNeed.ENERGIZE:
        return energy
    if need is MusicNeed.CALM:
        return calm
    if need is MusicNeed.FOCUS:
        return focus
    if need is MusicNeed.TRANSITION:
        return (calm + energy) / 2.0
    return mood_lift


def historical_effect(song: Song, effect: SongEffect | None, need: MusicNeed) -> tuple[float, float]:
    """Need-specific learned effect shrunk toward 0.5 by its confidence, plus that confidence."""
    if effect is not None and effect.sample_count > 0:
        value = _need_effect_value(need, effect.calm, effect.energy, effect.focus, effect.mood_lift)
        confidence = effect.confidence
    else:
        value = _need_effect_value(
            need, song.effect_calm, song.effect_energy, song.effect_focus, song.effect_mood_lift
        )
        confidence = song.effect_confidence
    return 0.5 + (value - 0.5) * confidence, confidence


def context_alignment(song: Song, state: StateVector) -> float:
    profile = feature_profile(
        song.bpm if song.bpm > 0 else UNKNOWN_BPM_PROFILE,
        song.energy,
        song.valence,
        song.instrumentalness,
        song.acoustic_density,
    )
    need = state.inferred_need
    if need is MusicNeed.ENERGIZE:
        return profile.activation
    if need is MusicNeed.CALM:
        return profile.calm
    if need is MusicNeed.FOCUS:
        return profile.focus
    if need is MusicNeed.TRANSITION:
        return _clamp(1.0 - abs(profile.activation - 0.5))
    return _clamp(1.0 - abs(profile.activation - state.energy))


def recency_penalty(minutes_since: float | None, avoid_recent_minutes: int) -> float:
    """1.0 for a song that just played, fading to 0 over three avoidance windows."""
    if minutes_since is None or avoid_recent_minutes <= 0:
        return 0.0
    return _clamp(1.0 - minutes_since / (3.0 * avoid_recent_minutes))


def time_of_day_score(bpm: float, moment: datetime) -> float:
    if bpm <= 0:
        return 0.75
    limit = suggested_max_bpm(get_time_slot(moment))
    if bpm <= limit:
        return 1.0
    return _clamp(1.0 - (bpm - limit) / 40.0)


def transition_smoothness(previous: Song, candidate: Song) -> float:
    if previous.bpm > 0 and candidate.bpm > 0:
        bpm_closeness = _clamp(1.0 - abs(previous.bpm - candidate.bpm) / TRANSITION_BPM_SCALE)
    else:
        bpm_closeness = 0.5
    energy_closeness = _clamp(1.0 - abs(previous.energy - candidate.energy) / TRANSITION_ENERGY_SCALE)
    shared_genre = (
        previous.genre is not None
        and candidate.genre is not None
        and previous.genre.lower() == candidate.genre.lower()
    )
    return 0.45 * bpm_closeness + 0.45 * energy_closeness + 0.1 * float(shared_genre)


def _trailing_artist_run(songs: list[Song]) -> tuple[str | None, int]:
    if not songs:
        return None, 0
    artist = songs[-1].artist
    run = 0
    for song in reversed(songs):
        if song.artist != artist:
            break
        run += 1
    return artist, run


def _bpm_cap(moment: datetime, preferences: UserPreferences) -> float | None:
    hour = moment.hour
    if hour >= preferences.night_start_hour or hour < NIGHT_END_HOUR:
        return preferences.night_max_bpm
    if hour < preferences.morning_end_hour:
        return preferences.morning_max_bpm
    return None


class DecisionEngine:
    def __init__(self, catalog: SongCatalog) -> None:
        self.catalog = catalog

    def _resolve(self, song_ids, unique: bool = True) -> list[Song]:
        songs: list[Song] = []
        seen: set[str] = set()
        for song_id in song_ids:
            if unique and song_id in seen:
                continue
            seen.add(song_id)
            song = self.catalog.get_song(song_id)
            if song is None:
                LOGGER.warning("Skipping unknown song %s", song_id)
                continue
            songs.append(song)
        return songs

    def guard(self, songs: list[Song], context: DecisionContext, history: list[Song]) -> list[Song]:
        """Drop recently played songs, artist repeats and tracks over the clock's BPM cap."""
        preferences = context.preferences
        artist, run = _trailing_artist_run(history)
        cap = _bpm_cap(context.current_time, preferences)
        allowed = []
        for song in songs:
            minutes = context.minutes_since_played(song.song_id)
            if minutes is not None and minutes < preferences.avoid_recent_minutes:
                continue
            if artist is not None and song.artist == artist and run >= preferences.max_same_artist_in_row:
                continue
            if cap is not None and song.bpm > cap:
                continue
            allowed.append(song)
        return allowed

    def score(self, song: Song, context: DecisionContext, previous: Song | None = None) -> SongScore:
        state = context.state
        preferences = context.preferences
        need = state.inferred_need
        target = target_for_need(need, state.energy)

        effect = self.catalog.get_song_effect(song.song_id, state.context)
        history_score, effect_confidence = historical_effect(song, effect, need)
        components = {
            "bpm": bpm_match(song.bpm, target.bpm),
            "energy": _clamp(1.0 - abs(song.energy - target.energy)),
            "familiarity": _clamp(song.familiarity),
            "historical": history_score,
            "context": context_alignment(song, state),
        }
        familiarity_weight = preferences.familiarity_weight
        if preferences.prefer_familiar_in_stress and state.stress > STRESSED_THRESHOLD:
            familiarity_weight *= STRESS_FAMILIARITY_BOOST
        weights = {
            "bpm": preferences.bpm_weight,
            "energy": preferences.energy_weight,
            "familiarity": familiarity_weight,
            "historical": preferences.historical_weight,
            "context": preferences.context_weight,
        }
        weight_sum = sum(weights.values())
        contributions = {
            name: (weights[name] * value / weight_sum if weight_sum > 0 else 0.0)
            for name, value in components.items()
        }
        weighted = sum(contributions.values()) if weight_sum > 0 else 0.5

        recency = recency_penalty(context.minutes_since_played(song.song_id), preferences.avoid_recent_minutes)
        tod = time_of_day_score(song.bpm, context.current_time)
        final = max(0.0, weighted - preferences.recency_weight * recency) * (0.5 + 0.5 * tod)

        slot = get_time_slot(context.current_time)
        explanation = [
            ExplanationComponent(
                "bpm",
                contributions["bpm"],
                f"{song.bpm:.0f} BPM fits the {need.value} target of {target.bpm:.0f}"
                if song.bpm > 0
                else "Tempo unknown, treated as neutral",
            ),
            ExplanationComponent("energy", contributions["energy"], "Energy level matches what you need"),
            ExplanationComponent("familiarity", contributions["familiarity"], "A song you know well"),
            ExplanationComponent(
                "historical", contributions["historical"], f"Has helped you {_NEED_VERBS[need]} before"
            ),
            ExplanationComponent("context", contributions["context"], f"Suits {state.context.value}"),
            ExplanationComponent("time_of_day", 0.1 * tod, f"Right tempo for the {slot.value.replace('_', ' ')}"),
        ]
        if recency > 0:
            explanation.append(
                ExplanationComponent("recency", -preferences.recency_weight * recency, "Played recently")
            )

        if previous is not None and preferences.enable_smooth_transitions:
            smoothness = transition_smoothness(previous, song)
            final *= 0.7 + 0.3 * smoothness
            explanation.append(
                ExplanationComponent("transition", 0.1 * smoothness, f"Flows smoothly from {previous.title}")
            )

        confidence = _clamp(0.4 * state.confidence + 0.3 * song.feature_confidence + 0.3 * effect_confidence)
        return SongScore(
            song_id=song.song_id,
            title=song.title,
            artist=song.artist,
            bpm=song.bpm,
            bpm_match=components["bpm"],
            energy_match=components["energy"],
            familiarity=components["familiarity"],
            historical_effect=history_score,
            context_alignment=components["context"],
            recency_penalty=recency,
            time_of_day=tod,
            final_score=_clamp(final),
            confidence=confidence,
            explanation=tuple(explanation),
        )

    def rank_candidates(self, context: DecisionContext) -> list[SongScore]:
        songs = self._resolve(context.candidate_song_ids)
        if not songs:
            return []
        history = self._resolve(context.session_history, unique=False)
        allowed = self.guard(songs, context, history)
        if not allowed:
            LOGGER.info("Every candidate was filtered out, scoring the full playlist instead")
            allowed = songs
        previous = None if context.is_session_start else self.catalog.get_song(context.session_history[-1])
        scores = [self.score(song, context, previous) for song in allowed]
        return sorted(scores, key=lambda score: (-score.final_score, -score.confidence))

    def select_song(self, context: DecisionContext) -> SongScore | None:
        ranked = self.rank_candidates(context)
        return ranked[0] if ranked else None
