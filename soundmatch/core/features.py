"""
Feature extractor for the SoundMatch engine.

Decodes an asset, computes the shared frame features once with librosa,
runs the descriptor analyzers over them and derives the custom metrics.

Frame grid: Hann window of ``n_fft`` samples (2048 = 93 ms at 22050 Hz),
hop of ``hop_length`` samples (512 = 23 ms), centered frames.
"""

import hashlib
import json
import logging
from typing import Any, Dict, Optional, Tuple

import librosa
import numpy as np

from soundmatch.analyzers.musical.librosa_musical import LibrosaMusicalAnalyzer
from soundmatch.analyzers.rhythmic.librosa_rhythmic import LibrosaRhythmicAnalyzer
from soundmatch.analyzers.spectral.librosa_spectral import LibrosaSpectralAnalyzer
from soundmatch.core.cancellation import CancellationToken, checkpoint
from soundmatch.core.loader import AudioLoader, DecodedAudio, create_audio_loader
from soundmatch.core.metrics import CustomMetricCalculator
from soundmatch.core.models import (
    AnalysisRecord,
    AudioAsset,
    BasicDescriptors,
    FrameFeatures,
    RawDescriptors,
)

EXTRACTOR_VERSION = "1.0.0"

N_FFT = 2048
HOP_LENGTH = 512
N_MFCC = 13
ROLL_PERCENT = 0.85
BASIC_ANALYSIS_THRESHOLD = 600.0  # seconds

# Confidence multiplier for records computed on an excerpt
BASIC_DEPTH_CONFIDENCE = 0.85

CONFIDENCE_WEIGHTS = {
    'key_strength': 0.4,
    'beat_regularity': 0.4,
    'active_fraction': 0.2,
}


class FeatureExtractor:
    """
    Runs the extraction pipeline for one asset at a time.

    Stateless apart from configuration - safe to share between threads.
    """

    def __init__(
        self,
        loader: Optional[AudioLoader] = None,
        n_fft: int = N_FFT,
        hop_length: int = HOP_LENGTH,
        n_mfcc: int = N_MFCC,
        basic_analysis_threshold: float = BASIC_ANALYSIS_THRESHOLD,
        musical_analyzer: Optional[LibrosaMusicalAnalyzer] = None,
        rhythmic_analyzer: Optional[LibrosaRhythmicAnalyzer] = None,
        spectral_analyzer: Optional[LibrosaSpectralAnalyzer] = None,
        metric_calculator: Optional[CustomMetricCalculator] = None,
    ):
        """
        Args:
            loader: AudioLoader used for decoding (default settings if None)
            n_fft: Analysis window length in samples
            hop_length: Frame hop in samples
            n_mfcc: Number of MFCC coefficients kept
            basic_analysis_threshold: Clips longer than this (seconds) are
                analysed on a centred excerpt of this length
        """
        self.loader = loader or AudioLoader()
        self.n_fft = n_fft
        self.hop_length = hop_length
        self.n_mfcc = n_mfcc
        self.basic_analysis_threshold = basic_analysis_threshold
        self.musical = musical_analyzer or LibrosaMusicalAnalyzer()
        self.rhythmic = rhythmic_analyzer or LibrosaRhythmicAnalyzer()
        self.spectral = spectral_analyzer or LibrosaSpectralAnalyzer()
        self.metrics = metric_calculator or CustomMetricCalculator()
        self.logger = logging.getLogger("extractor")
        self._model_version = self._build_model_version()

    @property
    def model_version(self) -> str:
        """Identity of every parameter that affects the numbers produced."""
        return self._model_version

    def _build_model_version(self) -> str:
        params: Dict[str, Any] = {
            'sample_rate': self.loader.target_sr,
            'n_fft': self.n_fft,
            'hop_length': self.hop_length,
            'n_mfcc': self.n_mfcc,
            'roll_percent': ROLL_PERCENT,
            'basic_threshold': self.basic_analysis_threshold,
            'silence_rms': self.loader.silence_rms_threshold,
            'tempo_range': list(self.rhythmic.tempo_range),
            'analyzers': {
                a.name: a.version for a in (self.musical, self.rhythmic, self.spectral)
            },
        }
        digest = hashlib.sha256(
            json.dumps(params, sort_keys=True).encode('utf-8')
        ).hexdigest()[:8]
        return f"extractor-{EXTRACTOR_VERSION}+metrics-{self.metrics.version}+cfg-{digest}"

    def extract(
        self,
        asset: AudioAsset,
        token: Optional[CancellationToken] = None
    ) -> RawDescriptors:
        """
        Compute raw descriptors for an asset.

        Raises:
            UnsupportedFormatError, DurationOutOfRangeError,
            UnanalyzableAudioError: Terminal input problems
            PipelineTransientError: Decoder/resource failures
            AnalysisCancelledError: Token cancelled at a checkpoint
        """
        decoded = self.loader.decode(asset, token)
        try:
            samples, depth = self._select_excerpt(decoded)
            frames = self.compute_frames(samples, decoded.sample_rate, token)
            del samples

            musical = self.musical.analyze(frames)
            checkpoint(token, "harmonic analysis")
            rhythm = self.rhythmic.analyze(frames)
            checkpoint(token, "rhythmic analysis")
            spectral = self.spectral.analyze(frames)

            active_fraction = float(
                np.mean(frames.rms > self.loader.silence_rms_threshold)
            ) if frames.n_frames else 0.0
            confidence = (
                CONFIDENCE_WEIGHTS['key_strength'] * musical.harmonic.key_strength
                + CONFIDENCE_WEIGHTS['beat_regularity'] * rhythm.beat_regularity
                + CONFIDENCE_WEIGHTS['active_fraction'] * active_fraction
            )
            if depth == "basic":
                confidence *= BASIC_DEPTH_CONFIDENCE

            return RawDescriptors(
                basic=BasicDescriptors(
                    tempo=rhythm.tempo,
                    key=musical.key,
                    time_signature=rhythm.time_signature,
                    duration=decoded.duration,
                ),
                spectral=spectral,
                harmonic=musical.harmonic,
                rhythmic=rhythm.rhythmic,
                tempo_variance=rhythm.tempo_variance,
                confidence=float(np.clip(confidence, 0.0, 1.0)),
                analysis_depth=depth,
                frames=frames,
            )
        finally:
            decoded.release()

    def analyze(
        self,
        asset: AudioAsset,
        token: Optional[CancellationToken] = None
    ) -> AnalysisRecord:
        """Full pipeline: raw descriptors plus custom metrics as a record."""
        raw = self.extract(asset, token)
        checkpoint(token, "custom metrics")
        custom_metrics = self.metrics.calculate(raw.frames)

        record = AnalysisRecord(
            fingerprint=asset.fingerprint,
            model_version=self.model_version,
            basic=raw.basic,
            spectral=raw.spectral,
            harmonic=raw.harmonic,
            rhythmic=raw.rhythmic,
            custom_metrics=custom_metrics,
            confidence=raw.confidence,
            analysis_depth=raw.analysis_depth,
        )
        self.logger.info(
            f"Extracted {asset.fingerprint[:8]}...: {record.get_summary()}"
        )
        return record

    def _select_excerpt(self, decoded: DecodedAudio) -> Tuple[np.ndarray, str]:
        """Whole clip for full analysis, centred excerpt for basic analysis."""
        if decoded.duration <= self.basic_analysis_threshold:
            return decoded.samples, "full"

        length = int(round(self.basic_analysis_threshold * decoded.sample_rate))
        start = max(0, (len(decoded.samples) - length) // 2)
        self.logger.info(
            f"Clip is {decoded.duration:.0f}s, analysing "
            f"{self.basic_analysis_threshold:.0f}s excerpt"
        )
        return decoded.samples[start:start + length], "basic"

    def compute_frames(
        self,
        y: np.ndarray,
        sr: int,
        token: Optional[CancellationToken] = None
    ) -> FrameFeatures:
        """
        Compute all frame-level features from one STFT.

        Time: ~1-3s per minute of audio
        """
        n_fft, hop = self.n_fft, self.hop_length

        magnitude = np.abs(librosa.stft(y, n_fft=n_fft, hop_length=hop, window='hann'))
        power = magnitude ** 2
        checkpoint(token, "stft")

        log_mel = librosa.power_to_db(
            librosa.feature.melspectrogram(S=power, sr=sr)
        )
        mfcc = librosa.feature.mfcc(S=log_mel, n_mfcc=self.n_mfcc)

        rms = librosa.feature.rms(S=magnitude, frame_length=n_fft, hop_length=hop)[0]
        centroid = librosa.feature.spectral_centroid(S=magnitude, sr=sr)[0]
        rolloff = librosa.feature.spectral_rolloff(
            S=magnitude, sr=sr, roll_percent=ROLL_PERCENT
        )[0]
        bandwidth = librosa.feature.spectral_bandwidth(S=magnitude, sr=sr)[0]
        flatness = librosa.feature.spectral_flatness(S=magnitude)[0]
        zcr = librosa.feature.zero_crossing_rate(
            y, frame_length=n_fft, hop_length=hop
        )[0]
        checkpoint(token, "spectral features")

        chroma = librosa.feature.chroma_stft(S=power, sr=sr)
        tonnetz = librosa.feature.tonnetz(chroma=chroma, sr=sr)
        checkpoint(token, "chroma")

        onset_env = librosa.onset.onset_strength(S=log_mel, sr=sr, hop_length=hop)
        onset_frames = librosa.onset.onset_detect(
            onset_envelope=onset_env,
            sr=sr,
            hop_length=hop
        )
        checkpoint(token, "onsets")

        return FrameFeatures(
            rms=rms,
            mfcc=mfcc,
            spectral_centroid=centroid,
            spectral_rolloff=rolloff,
            spectral_bandwidth=bandwidth,
            spectral_flatness=flatness,
            zero_crossing_rate=zcr,
            chroma=chroma,
            tonnetz=tonnetz,
            onset_envelope=onset_env,
            onset_frames=onset_frames,
            sample_rate=sr,
            hop_length=hop,
            duration=len(y) / sr,
        )


def create_feature_extractor(config: Optional[Dict[str, Any]] = None) -> FeatureExtractor:
    """
    Factory function to create a FeatureExtractor from a full config dict.
    """
    if config is None:
        config = {}

    audio_config = config.get('audio', {})
    extraction_config = config.get('extraction', {})

    return FeatureExtractor(
        loader=create_audio_loader(audio_config),
        n_fft=extraction_config.get('n_fft', N_FFT),
        hop_length=extraction_config.get('hop_length', HOP_LENGTH),
        n_mfcc=extraction_config.get('n_mfcc', N_MFCC),
        basic_analysis_threshold=audio_config.get(
            'max_file_duration_for_basic_vs_full_analysis', BASIC_ANALYSIS_THRESHOLD
        ),
        rhythmic_analyzer=LibrosaRhythmicAnalyzer(
            tempo_range=tuple(extraction_config.get('tempo_range', (60.0, 200.0)))
        ),
    )
