"""
Harmonic analyzer for the SoundMatch engine.

Estimates the key and summarises chroma and tonal-centroid content.
"""

from dataclasses import dataclass
from typing import List, Tuple

import numpy as np

from soundmatch.core.analyzer_base import BaseAnalyzer
from soundmatch.core.models import FrameFeatures, HarmonicDescriptors, KeyEstimate


# Key profiles (Krumhansl-Schmuckler), index 0 = tonic
MAJOR_PROFILE = np.array([6.35, 2.23, 3.48, 2.33, 4.38, 4.09, 2.52, 5.19, 2.39, 3.66, 2.29, 2.88])
MINOR_PROFILE = np.array([6.33, 2.68, 3.52, 5.38, 2.60, 3.53, 2.54, 4.75, 3.98, 2.69, 3.34, 3.17])

# Tie-break order: major before minor
MODE_RANK = {"major": 0, "minor": 1}

# Correlations equal to this many decimals count as a tie
TIE_DECIMALS = 12


def key_templates() -> List[Tuple[int, str, np.ndarray]]:
    """
    All 24 key templates as (pitch_class, mode, profile).

    Profiles are rotated so that index ``pitch_class`` holds the tonic weight.
    """
    templates = []
    for mode, profile in (("major", MAJOR_PROFILE), ("minor", MINOR_PROFILE)):
        for pitch_class in range(12):
            templates.append((pitch_class, mode, np.roll(profile, pitch_class)))
    return templates


def _pearson(x: np.ndarray, y: np.ndarray) -> float:
    """Pearson correlation, defined as 0 when either input is constant."""
    if np.std(x) == 0 or np.std(y) == 0:
        return 0.0
    return float(np.corrcoef(x, y)[0, 1])


def detect_key(chroma_mean: np.ndarray) -> KeyEstimate:
    """
    Pick the best-correlating key template.

    Ties go to major over minor, then to the lower pitch class.
    """
    chroma = np.asarray(chroma_mean, dtype=np.float64)
    if chroma.shape != (12,):
        raise ValueError(f"Expected 12 chroma bins, got shape {chroma.shape}")

    candidates = [
        (_pearson(chroma, template), mode, pitch_class)
        for pitch_class, mode, template in key_templates()
    ]
    correlation, mode, pitch_class = min(
        candidates,
        key=lambda c: (-round(c[0], TIE_DECIMALS), MODE_RANK[c[1]], c[2])
    )
    return KeyEstimate(pitch_class=pitch_class, mode=mode, correlation=correlation)


@dataclass(frozen=True)
class MusicalAnalysis:
    """Key estimate plus harmonic descriptors."""

    key: KeyEstimate
    harmonic: HarmonicDescriptors


class LibrosaMusicalAnalyzer(BaseAnalyzer[MusicalAnalysis]):
    """
    Chroma-based harmonic analysis.

    Analyzes:
    - Key estimation using template correlation
    - Key strength (best correlation clipped to [0, 1])
    - Tonal centroid (mean tonnetz vector)
    """

    def __init__(self):
        super().__init__("librosa_musical", "1.0.0")

    def _analyze_impl(self, frames: FrameFeatures) -> MusicalAnalysis:
        chroma_mean = frames.chroma_mean
        key = detect_key(chroma_mean)

        if frames.tonnetz.size:
            tonal_centroid = np.mean(frames.tonnetz, axis=1)
        else:
            tonal_centroid = np.zeros(6)

        harmonic = HarmonicDescriptors(
            chroma=tuple(float(v) for v in chroma_mean),
            key_strength=float(np.clip(key.correlation, 0.0, 1.0)),
            tonal_centroid=tuple(float(v) for v in tonal_centroid),
        )
        return MusicalAnalysis(key=key, harmonic=harmonic)
