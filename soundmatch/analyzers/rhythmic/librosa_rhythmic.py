"""
Librosa rhythmic analyzer for the SoundMatch engine.

Analyzes tempo, tempo stability, beat strength, onset density and meter.
"""

from dataclasses import dataclass
from typing import Tuple

import librosa
import numpy as np

from soundmatch.core.analyzer_base import BaseAnalyzer
from soundmatch.core.models import FrameFeatures, RhythmicDescriptors


# Beats needed before the meter estimate is trusted
MIN_BEATS_FOR_METER = 8

# Lag-3 accent periodicity must beat lag 4 by this factor to call 3/4
TRIPLE_METER_MARGIN = 1.1


@dataclass(frozen=True)
class RhythmAnalysis:
    tempo: float  # BPM
    tempo_variance: float  # variance of local tempo estimates (BPM^2)
    time_signature: str
    beat_regularity: float  # [0.0, 1.0]
    rhythmic: RhythmicDescriptors


class LibrosaRhythmicAnalyzer(BaseAnalyzer[RhythmAnalysis]):
    """
    Librosa-based rhythmic analysis.

    Analyzes:
    - Global tempo via beat tracking, folded into ``tempo_range``
    - Local tempo over 8 s autocorrelation windows (stability)
    - Beat strength and onset density
    - Duple vs triple meter
    """

    def __init__(self, tempo_range: Tuple[float, float] = (60.0, 200.0)):
        """
        Initialize rhythmic analyzer.

        Args:
            tempo_range: Expected tempo range (min_bpm, max_bpm); must span
                at least one octave so folding always terminates inside it
        """
        super().__init__("librosa_rhythmic", "1.0.0")
        low, high = float(tempo_range[0]), float(tempo_range[1])
        if low <= 0 or high < 2 * low:
            raise ValueError(f"tempo_range must span an octave, got {tempo_range}")
        self.tempo_range = (low, high)

    def _analyze_impl(self, frames: FrameFeatures) -> RhythmAnalysis:
        sr = frames.sample_rate
        hop = frames.hop_length
        onset_env = frames.onset_envelope

        tempo, beats = librosa.beat.beat_track(
            onset_envelope=onset_env,
            sr=sr,
            hop_length=hop
        )
        tempo = float(np.atleast_1d(tempo)[0]) if np.size(tempo) else 0.0

        local = librosa.feature.tempo(
            onset_envelope=onset_env,
            sr=sr,
            hop_length=hop,
            aggregate=None
        )
        local = np.array([self._fold(t) for t in np.atleast_1d(local) if t > 0])

        if tempo <= 0:
            # No beats tracked; fall back to the local tempo consensus
            tempo = float(np.median(local)) if local.size else self.tempo_range[0]
        tempo = self._fold(tempo)

        tempo_variance, tempo_stability = self._tempo_stability(local)

        beat_times = librosa.frames_to_time(beats, sr=sr, hop_length=hop)
        beat_regularity = self._calculate_rhythm_confidence(beat_times, tempo)

        peak = float(np.max(onset_env)) if onset_env.size else 0.0
        if len(beats) and peak > 0:
            beat_strength = float(np.mean(onset_env[beats]) / peak)
        else:
            beat_strength = 0.0

        onset_density = (
            len(frames.onset_frames) / frames.duration if frames.duration > 0 else 0.0
        )

        return RhythmAnalysis(
            tempo=tempo,
            tempo_variance=tempo_variance,
            time_signature=self._estimate_meter(onset_env, beats),
            beat_regularity=beat_regularity,
            rhythmic=RhythmicDescriptors(
                beat_strength=float(np.clip(beat_strength, 0.0, 1.0)),
                onset_density=float(onset_density),
                tempo_stability=tempo_stability,
            ),
        )

    def _fold(self, tempo: float) -> float:
        """Double or halve until the tempo lies inside tempo_range."""
        low, high = self.tempo_range
        while tempo < low:
            tempo *= 2
        while tempo > high:
            tempo /= 2
        return float(tempo)

    @staticmethod
    def _tempo_stability(local: np.ndarray) -> Tuple[float, float]:
        """
        Variance of local tempo and stability = 1 - coefficient of variation.
        """
        if local.size < 2:
            return 0.0, 1.0 if local.size else 0.0
        mean = float(np.mean(local))
        std = float(np.std(local))
        stability = 1.0 - std / mean if mean > 0 else 0.0
        return float(np.var(local)), float(np.clip(stability, 0.0, 1.0))

    @staticmethod
    def _calculate_rhythm_confidence(beat_times: np.ndarray, tempo: float) -> float:
        """
        Confidence that the beat grid is real: evenly spaced beats whose
        spacing matches the tempo period.
        """
        if len(beat_times) < 2 or tempo <= 0:
            return 0.0

        intervals = np.diff(beat_times)
        interval_mean = float(np.mean(intervals))
        if interval_mean <= 0:
            return 0.0

        cv = float(np.std(intervals)) / interval_mean
        expected_interval = 60.0 / tempo
        # Octave-folded tempo may be double/half the tracked beat period
        ratio = interval_mean / expected_interval
        deviation = min(abs(ratio - r) / r for r in (0.5, 1.0, 2.0))

        consistency_score = max(0.0, 1.0 - cv)
        accuracy_score = max(0.0, 1.0 - deviation)

        confidence = 0.6 * consistency_score + 0.4 * accuracy_score
        return float(min(1.0, max(0.0, confidence)))

    @staticmethod
    def _estimate_meter(onset_env: np.ndarray, beats: np.ndarray) -> str:
        """
        "3/4" when beat accents repeat every 3 beats more strongly than every
        4, otherwise "4/4".
        """
        if len(beats) < MIN_BEATS_FOR_METER:
            return "4/4"

        accents = onset_env[beats].astype(np.float64)
        accents = accents - np.mean(accents)
        energy = float(np.dot(accents, accents))
        if energy == 0:
            return "4/4"

        def autocorr(lag: int) -> float:
            return float(np.dot(accents[:-lag], accents[lag:])) / energy

        if autocorr(3) > TRIPLE_METER_MARGIN * max(autocorr(4), 0.0) and autocorr(3) > 0:
            return "3/4"
        return "4/4"
