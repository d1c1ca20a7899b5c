"""
Spectral analyzer for the SoundMatch engine.

Reduces frame-level timbre features to per-clip summaries.
"""

import numpy as np

from soundmatch.core.analyzer_base import BaseAnalyzer
from soundmatch.core.models import FrameFeatures, SpectralDescriptors


class LibrosaSpectralAnalyzer(BaseAnalyzer[SpectralDescriptors]):
    """Mean MFCCs, centroid, rolloff and zero-crossing rate over all frames."""

    def __init__(self):
        super().__init__("librosa_spectral", "1.0.0")

    def _analyze_impl(self, frames: FrameFeatures) -> SpectralDescriptors:
        return SpectralDescriptors(
            mfcc=tuple(float(v) for v in np.mean(frames.mfcc, axis=1)),
            spectral_centroid=float(np.mean(frames.spectral_centroid)),
            spectral_rolloff=float(np.mean(frames.spectral_rolloff)),
            zero_crossing_rate=float(np.mean(frames.zero_crossing_rate)),
        )
