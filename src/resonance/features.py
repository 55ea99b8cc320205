"""Genre-derived song feature estimates.

The media library does not expose tempo, energy or valence, so songs without
analyzed features get estimates from genre lookup tables. Estimated features
carry a fixed low confidence.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

ESTIMATED_FEATURE_CONFIDENCE = 0.4

GENRE_CATEGORIES: dict[str, tuple[str, ...]] = {
    "electronic": ("electronic", "edm", "house", "techno", "trance", "dubstep", "drum and bass"),
    "rock": ("rock", "alternative", "indie", "punk", "grunge"),
    "metal": ("metal", "metalcore", "death metal", "black metal", "heavy metal", "thrash", "doom"),
    "pop": ("pop", "dance pop", "synth pop", "electropop"),
    "hip-hop": ("hip-hop", "rap", "trap", "r&b"),
    "classical": ("classical", "orchestra", "symphony", "piano"),
    "jazz": ("jazz", "blues", "soul", "funk"),
    "ambient": ("ambient", "new age", "meditation", "chill"),
}

_GENRE_BPM = {
    "ambient": 70.0, "classical": 80.0, "jazz": 100.0, "pop": 120.0,
    "rock": 130.0, "electronic": 128.0, "hip-hop": 90.0, "metal": 140.0,
}
_GENRE_ENERGY = {
    "ambient": 0.15, "classical": 0.25, "jazz": 0.35, "pop": 0.55,
    "rock": 0.70, "electronic": 0.65, "hip-hop": 0.50, "metal": 0.85,
}
_GENRE_VALENCE = {
    "ambient": 0.40, "classical": 0.50, "jazz": 0.55, "pop": 0.70,
    "rock": 0.50, "electronic": 0.55, "hip-hop": 0.45, "metal": 0.30,
}
_GENRE_INSTRUMENTALNESS = {
    "ambient": 0.85, "classical": 0.90, "jazz": 0.40, "pop": 0.05,
    "rock": 0.15, "electronic": 0.60, "hip-hop": 0.05, "metal": 0.20,
}


@dataclass(frozen=True)
class SongFeatures:
    bpm: float
    energy: float
    valence: float
    instrumentalness: float
    acoustic_density: float
    confidence: float
    genre_category: str | None = None


@dataclass(frozen=True)
class FeatureProfile:
    """How strongly a song's features lean towards each listening need."""

    calm: float
    focus: float
    activation: float


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def normalize(value: float, low: float, high: float) -> float:
    if high <= low:
        return 0.0
    return _clamp((value - low) / (high - low))


def normalize_bpm(bpm: float, library_min: float = 60.0, library_max: float = 180.0) -> float:
    return normalize(bpm, library_min, library_max)


def match_genre_category(genres: Iterable[str]) -> str | None:
    """Return the first broad category whose keywords appear in any genre tag."""
    for genre in genres:
        lowered = genre.lower()
        for category, keywords in GENRE_CATEGORIES.items():
            if any(keyword in lowered for keyword in keywords):
                return category
    return None


def estimate_features(genres: Iterable[str]) -> SongFeatures:
    category = match_genre_category(genres)
    if category is None:
        return SongFeatures(
            bpm=100.0,
            energy=0.5,
            valence=0.5,
            instrumentalness=0.3,
            acoustic_density=0.5,
            confidence=ESTIMATED_FEATURE_CONFIDENCE,
        )
    energy = _GENRE_ENERGY[category]
    return SongFeatures(
        bpm=_GENRE_BPM[category],
        energy=energy,
        valence=_GENRE_VALENCE[category],
        instrumentalness=_GENRE_INSTRUMENTALNESS[category],
        # Density tracks energy for most genres.
        acoustic_density=_clamp(energy * 0.8 + 0.1),
        confidence=ESTIMATED_FEATURE_CONFIDENCE,
        genre_category=category,
    )


def feature_profile(
    bpm: float,
    energy: float,
    valence: float,
    instrumentalness: float,
    acoustic_density: float,
) -> FeatureProfile:
    bpm_normalized = normalize_bpm(bpm)
    return FeatureProfile(
        calm=_clamp((1.0 - energy) * 0.5 + (1.0 - bpm_normalized) * 0.3 + instrumentalness * 0.2),
        focus=_clamp(instrumentalness * 0.4 + (1.0 - energy) * 0.3 + acoustic_density * 0.3),
        activation=_clamp(energy * 0.5 + bpm_normalized * 0.3 + valence * 0.2),
    )
