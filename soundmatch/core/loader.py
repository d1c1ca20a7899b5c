"""
Audio decoding for the SoundMatch engine.

Validates submitted assets, decodes them to mono float32 PCM at the target
sample rate and rejects clips that cannot be analysed.
"""

import io
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

import librosa
import numpy as np
import soundfile as sf
from audioread.exceptions import NoBackendError

from soundmatch.core.cancellation import CancellationToken, checkpoint
from soundmatch.core.models import AudioAsset
from soundmatch.utils.errors import (
    DurationOutOfRangeError,
    PipelineTransientError,
    UnanalyzableAudioError,
    UnsupportedFormatError,
)


# Constants
SUPPORTED_FORMATS: Dict[str, str] = {
    'wav': 'soundfile',
    'flac': 'soundfile',
    'ogg': 'soundfile',
    'aiff': 'soundfile',
    'aif': 'soundfile',
    'mp3': 'audioread',
}

TARGET_SAMPLE_RATE: int = 22050  # Hz
MIN_DURATION: float = 5.0  # seconds
MAX_DURATION: float = 1800.0  # seconds
SILENCE_RMS_THRESHOLD: float = 1e-4

logger = logging.getLogger("loader")


@dataclass
class DecodedAudio:
    """Mono PCM ready for feature extraction."""

    samples: np.ndarray  # Shape: (n_samples,), float32
    sample_rate: int
    duration: float  # seconds, measured at the native rate
    original_sample_rate: int
    channels: int

    def release(self) -> None:
        """Drop the sample buffer."""
        self.samples = np.zeros(0, dtype=np.float32)


class AudioLoader:
    """
    Decodes AudioAssets into DecodedAudio.

    Thread-safe and stateless - can be used concurrently.
    """

    def __init__(
        self,
        supported_formats: Optional[Iterable[str]] = None,
        target_sr: int = TARGET_SAMPLE_RATE,
        min_duration: float = MIN_DURATION,
        max_duration: float = MAX_DURATION,
        silence_rms_threshold: float = SILENCE_RMS_THRESHOLD,
    ):
        """
        Initialize loader with configuration.

        Args:
            supported_formats: Allowed container extensions
            target_sr: Sample rate all audio is resampled to
            min_duration: Shortest accepted clip in seconds (inclusive)
            max_duration: Longest accepted clip in seconds (inclusive)
            silence_rms_threshold: Clips with overall RMS below this are rejected
        """
        formats = supported_formats if supported_formats is not None else SUPPORTED_FORMATS
        self.supported_formats = {f.lower().lstrip('.') for f in formats}
        unknown = self.supported_formats - set(SUPPORTED_FORMATS)
        if unknown:
            raise UnsupportedFormatError(
                f"No decoder for configured formats: {', '.join(sorted(unknown))}",
                format=sorted(unknown)[0]
            )
        self.target_sr = target_sr
        self.min_duration = min_duration
        self.max_duration = max_duration
        self.silence_rms_threshold = silence_rms_threshold

    def validate_asset(self, asset: AudioAsset) -> None:
        """
        Cheap checks that need no decoding: format and declared duration.

        Raises:
            UnsupportedFormatError: Format not in the supported set
            DurationOutOfRangeError: Declared duration out of bounds
        """
        if asset.format not in self.supported_formats:
            raise UnsupportedFormatError(
                f"Format '{asset.format}' not supported. "
                f"Supported formats: {', '.join(sorted(self.supported_formats))}",
                format=asset.format
            )
        if asset.duration is not None:
            self.check_duration(asset.duration)

    def check_duration(self, duration: float) -> None:
        """Raise DurationOutOfRangeError unless min <= duration <= max."""
        if not (self.min_duration <= duration <= self.max_duration):
            raise DurationOutOfRangeError(
                f"Duration {duration:.3f}s outside "
                f"[{self.min_duration}, {self.max_duration}]s",
                duration=duration,
                min_duration=self.min_duration,
                max_duration=self.max_duration
            )

    def decode(
        self,
        asset: AudioAsset,
        token: Optional[CancellationToken] = None
    ) -> DecodedAudio:
        """
        Decode, validate and resample an asset.

        Raises:
            UnsupportedFormatError: Format not supported
            DurationOutOfRangeError: Decoded duration out of bounds
            UnanalyzableAudioError: Corrupt data or silence
            PipelineTransientError: Decoder or resource unavailable
            AnalysisCancelledError: Token cancelled between steps
        """
        self.validate_asset(asset)

        pcm, native_sr = self._read_pcm(asset)
        checkpoint(token, "decode")

        if pcm.size == 0 or native_sr <= 0:
            raise UnanalyzableAudioError(
                "Audio contains no samples", reason="empty"
            )

        channels = pcm.shape[1]
        duration = pcm.shape[0] / native_sr
        self.check_duration(duration)

        mono = np.mean(pcm, axis=1, dtype=np.float64).astype(np.float32)
        del pcm

        if native_sr != self.target_sr:
            mono = librosa.resample(mono, orig_sr=native_sr, target_sr=self.target_sr)
        checkpoint(token, "resample")

        mono = self._validate_signal(mono)

        logger.debug(
            f"Decoded {asset.fingerprint[:8]}...: {native_sr} Hz, "
            f"{channels} ch, {duration:.2f}s"
        )

        return DecodedAudio(
            samples=mono,
            sample_rate=self.target_sr,
            duration=duration,
            original_sample_rate=native_sr,
            channels=channels,
        )

    def _validate_signal(self, mono: np.ndarray) -> np.ndarray:
        """Reject non-finite or silent audio, normalize clipping."""
        if not np.all(np.isfinite(mono)):
            raise UnanalyzableAudioError(
                "Audio contains non-finite samples", reason="corrupt"
            )

        rms = float(np.sqrt(np.mean(np.square(mono, dtype=np.float64))))
        if rms < self.silence_rms_threshold:
            raise UnanalyzableAudioError(
                f"Audio is silent (RMS {rms:.2e} below {self.silence_rms_threshold:.0e})",
                reason="silence"
            )

        max_abs = float(np.max(np.abs(mono)))
        if max_abs > 1.0:
            logger.warning(f"Audio contains clipping (max: {max_abs:.2f}), normalizing")
            mono = mono / max_abs

        return mono

    def _read_pcm(self, asset: AudioAsset) -> Tuple[np.ndarray, int]:
        """Return (frames x channels float32, native sample rate)."""
        try:
            with sf.SoundFile(io.BytesIO(asset.data)) as f:
                data = f.read(dtype='float32', always_2d=True)
                return data, f.samplerate
        except MemoryError as e:
            raise PipelineTransientError(
                "Out of memory while decoding", stage="decode", original_error=e
            ) from e
        except (RuntimeError, sf.SoundFileError) as e:
            if SUPPORTED_FORMATS[asset.format] != 'audioread':
                raise UnanalyzableAudioError(
                    f"Could not decode {asset.format} data: {e}",
                    reason="corrupt",
                    original_error=e
                ) from e
            logger.debug(f"soundfile cannot read {asset.format}, falling back to audioread")

        return self._read_via_tempfile(asset)

    def _read_via_tempfile(self, asset: AudioAsset) -> Tuple[np.ndarray, int]:
        """Decode through audioread, which needs a real file on disk."""
        handle = None
        try:
            handle = tempfile.NamedTemporaryFile(suffix=f".{asset.format}", delete=False)
            with handle:
                handle.write(asset.data)
        except OSError as e:
            if handle is not None:
                Path(handle.name).unlink(missing_ok=True)
            raise PipelineTransientError(
                f"Could not stage audio for decoding: {e}",
                stage="decode",
                original_error=e
            ) from e

        try:
            y, sr = librosa.load(handle.name, sr=None, mono=False, dtype=np.float32)
        except NoBackendError as e:
            raise PipelineTransientError(
                f"No decoder backend available for {asset.format}",
                stage="decode",
                original_error=e
            ) from e
        except Exception as e:
            raise UnanalyzableAudioError(
                f"Could not decode {asset.format} data: {e}",
                reason="corrupt",
                original_error=e
            ) from e
        finally:
            os.unlink(handle.name)

        data = y[:, np.newaxis] if y.ndim == 1 else y.T
        return np.ascontiguousarray(data), int(sr)


def create_audio_loader(config: Optional[Dict[str, Any]] = None) -> AudioLoader:
    """
    Factory function to create AudioLoader from the ``audio`` config section.
    """
    if config is None:
        config = {}

    return AudioLoader(
        supported_formats=config.get('supported_formats'),
        target_sr=config.get('target_sample_rate', TARGET_SAMPLE_RATE),
        min_duration=config.get('min_duration', MIN_DURATION),
        max_duration=config.get('max_duration', MAX_DURATION),
        silence_rms_threshold=config.get('silence_rms_threshold', SILENCE_RMS_THRESHOLD),
    )
