"""
Core data models for the SoundMatch engine.

Immutable domain models for audio assets, analysis records and
compatibility scores.
"""

from __future__ import annotations

import hashlib
import json
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

import numpy as np

# Shared across all AudioAsset instances
_fingerprint_lock = threading.Lock()

NOTE_NAMES = ['C', 'C#', 'D', 'D#', 'E', 'F', 'F#', 'G', 'G#', 'A', 'A#', 'B']
MODES = ("major", "minor")


@dataclass(frozen=True)
class AudioAsset:
    """
    Immutable audio submission: encoded bytes plus declared metadata.

    The fingerprint is the SHA-256 of the raw bytes, so re-submitting
    identical content always maps to the same key.
    """

    data: bytes = field(repr=False)
    format: str  # container extension, e.g. "wav", "mp3"

    # Declared metadata (optional, verified after decoding)
    duration: Optional[float] = None
    sample_rate: Optional[int] = None
    channels: Optional[int] = None
    asset_id: Optional[str] = None

    _fingerprint: Optional[str] = field(
        default=None, repr=False, compare=False, hash=False
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, 'format', self.format.lower().lstrip('.'))

    @classmethod
    def from_file(cls, file_path: Path, **metadata: Any) -> "AudioAsset":
        """Read an audio file; the format is taken from its suffix."""
        file_path = Path(file_path)
        return cls(
            data=file_path.read_bytes(),
            format=file_path.suffix,
            asset_id=metadata.pop('asset_id', file_path.name),
            **metadata
        )

    @property
    def fingerprint(self) -> str:
        """Lazy-computed content fingerprint (thread-safe)."""
        if self._fingerprint is None:
            with _fingerprint_lock:
                if self._fingerprint is None:
                    digest = hashlib.sha256(self.data).hexdigest()
                    object.__setattr__(self, '_fingerprint', digest)
        return self._fingerprint

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class FrameFeatures:
    """
    Frame-level features shared by the analyzers and the metric calculator.

    All series use the same frame grid (n_fft window, hop_length hop).
    """

    rms: np.ndarray  # Shape: (n_frames,)
    mfcc: np.ndarray  # Shape: (n_mfcc, n_frames)
    spectral_centroid: np.ndarray  # Shape: (n_frames,)
    spectral_rolloff: np.ndarray  # Shape: (n_frames,)
    spectral_bandwidth: np.ndarray  # Shape: (n_frames,)
    spectral_flatness: np.ndarray  # Shape: (n_frames,)
    zero_crossing_rate: np.ndarray  # Shape: (n_frames,)
    chroma: np.ndarray  # Shape: (12, n_frames)
    tonnetz: np.ndarray  # Shape: (6, n_frames)
    onset_envelope: np.ndarray  # Shape: (n_frames,)
    onset_frames: np.ndarray  # Shape: (n_onsets,)
    sample_rate: int
    hop_length: int
    duration: float  # seconds of audio the frames cover

    @property
    def n_frames(self) -> int:
        return int(self.rms.shape[0])

    @property
    def chroma_mean(self) -> np.ndarray:
        return np.mean(self.chroma, axis=1)


@dataclass(frozen=True)
class KeyEstimate:
    """Detected key: pitch class 0-11 (C=0) and mode."""

    pitch_class: int
    mode: str
    correlation: float = 0.0

    def __post_init__(self) -> None:
        if not 0 <= self.pitch_class <= 11:
            raise ValueError(f"Pitch class must be in [0, 11], got {self.pitch_class}")
        if self.mode not in MODES:
            raise ValueError(f"Mode must be one of {MODES}, got {self.mode!r}")

    @property
    def name(self) -> str:
        return f"{NOTE_NAMES[self.pitch_class]} {self.mode}"

    @property
    def relative_major(self) -> int:
        """Tonic of the major key sharing this key's pitch set."""
        if self.mode == "major":
            return self.pitch_class
        return (self.pitch_class + 3) % 12

    def to_dict(self) -> Dict[str, Any]:
        return {
            'pitch_class': self.pitch_class,
            'mode': self.mode,
            'name': self.name,
            'correlation': self.correlation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KeyEstimate":
        return cls(
            pitch_class=int(data['pitch_class']),
            mode=data['mode'],
            correlation=float(data.get('correlation', 0.0)),
        )


@dataclass(frozen=True)
class BasicDescriptors:
    tempo: float  # BPM
    key: KeyEstimate
    time_signature: str  # "4/4" or "3/4"
    duration: float  # seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tempo': self.tempo,
            'key': self.key.to_dict(),
            'time_signature': self.time_signature,
            'duration': self.duration,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BasicDescriptors":
        return cls(
            tempo=float(data['tempo']),
            key=KeyEstimate.from_dict(data['key']),
            time_signature=data['time_signature'],
            duration=float(data['duration']),
        )


@dataclass(frozen=True)
class SpectralDescriptors:
    mfcc: Tuple[float, ...]  # mean of first n_mfcc coefficients
    spectral_centroid: float  # Hz
    spectral_rolloff: float  # Hz
    zero_crossing_rate: float  # crossings per sample

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mfcc': list(self.mfcc),
            'spectral_centroid': self.spectral_centroid,
            'spectral_rolloff': self.spectral_rolloff,
            'zero_crossing_rate': self.zero_crossing_rate,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpectralDescriptors":
        return cls(
            mfcc=tuple(float(v) for v in data['mfcc']),
            spectral_centroid=float(data['spectral_centroid']),
            spectral_rolloff=float(data['spectral_rolloff']),
            zero_crossing_rate=float(data['zero_crossing_rate']),
        )


@dataclass(frozen=True)
class HarmonicDescriptors:
    chroma: Tuple[float, ...]  # 12 pitch-class energies, C first
    key_strength: float  # [0.0, 1.0]
    tonal_centroid: Tuple[float, ...]  # 6-dim tonnetz mean

    def __post_init__(self) -> None:
        if len(self.chroma) != 12:
            raise ValueError(f"Chroma must have 12 bins, got {len(self.chroma)}")
        validate_confidence(self.key_strength)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'chroma': list(self.chroma),
            'key_strength': self.key_strength,
            'tonal_centroid': list(self.tonal_centroid),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HarmonicDescriptors":
        return cls(
            chroma=tuple(float(v) for v in data['chroma']),
            key_strength=float(data['key_strength']),
            tonal_centroid=tuple(float(v) for v in data['tonal_centroid']),
        )


@dataclass(frozen=True)
class RhythmicDescriptors:
    beat_strength: float  # [0.0, 1.0]
    onset_density: float  # onsets per second
    tempo_stability: float  # [0.0, 1.0]

    def __post_init__(self) -> None:
        validate_confidence(self.beat_strength)
        validate_confidence(self.tempo_stability)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'beat_strength': self.beat_strength,
            'onset_density': self.onset_density,
            'tempo_stability': self.tempo_stability,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RhythmicDescriptors":
        return cls(
            beat_strength=float(data['beat_strength']),
            onset_density=float(data['onset_density']),
            tempo_stability=float(data['tempo_stability']),
        )


@dataclass(frozen=True)
class CustomMetric:
    """A derived metric value with the tag of the formula that produced it."""

    value: float
    methodology: str

    def to_dict(self) -> Dict[str, Any]:
        return {'value': self.value, 'methodology': self.methodology}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CustomMetric":
        return cls(value=float(data['value']), methodology=data['methodology'])


@dataclass(frozen=True)
class CustomMetrics:
    dynamics_quotient: CustomMetric
    mad_divergence: CustomMetric
    texture_complexity: CustomMetric

    def to_dict(self) -> Dict[str, Any]:
        return {
            'dynamics_quotient': self.dynamics_quotient.to_dict(),
            'mad_divergence': self.mad_divergence.to_dict(),
            'texture_complexity': self.texture_complexity.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CustomMetrics":
        return cls(
            dynamics_quotient=CustomMetric.from_dict(data['dynamics_quotient']),
            mad_divergence=CustomMetric.from_dict(data['mad_divergence']),
            texture_complexity=CustomMetric.from_dict(data['texture_complexity']),
        )


@dataclass(frozen=True)
class RawDescriptors:
    """Feature Extractor output, before custom metrics are derived."""

    basic: BasicDescriptors
    spectral: SpectralDescriptors
    harmonic: HarmonicDescriptors
    rhythmic: RhythmicDescriptors
    tempo_variance: float
    confidence: float  # [0.0, 1.0]
    analysis_depth: str  # "full" or "basic"
    frames: FrameFeatures = field(repr=False, compare=False)

    def __post_init__(self) -> None:
        validate_confidence(self.confidence)
        if self.analysis_depth not in ("full", "basic"):
            raise ValueError(f"Invalid analysis depth: {self.analysis_depth!r}")


@dataclass(frozen=True)
class AnalysisRecord:
    """
    Result of one pipeline run on one asset under one model version.

    Records are never mutated; a new model version yields a new record.
    """

    fingerprint: str
    model_version: str
    basic: BasicDescriptors
    spectral: SpectralDescriptors
    harmonic: HarmonicDescriptors
    rhythmic: RhythmicDescriptors
    custom_metrics: CustomMetrics
    confidence: float  # [0.0, 1.0]
    analysis_depth: str = "full"
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def __post_init__(self) -> None:
        validate_confidence(self.confidence)

    @property
    def key(self) -> Tuple[str, str]:
        """Store key for this record."""
        return (self.fingerprint, self.model_version)

    def descriptor_dict(self) -> Dict[str, Any]:
        """Descriptor values only (no identity or timestamp)."""
        return {
            'basic': self.basic.to_dict(),
            'spectral': self.spectral.to_dict(),
            'harmonic': self.harmonic.to_dict(),
            'rhythmic': self.rhythmic.to_dict(),
            'custom_metrics': self.custom_metrics.to_dict(),
            'confidence': self.confidence,
            'analysis_depth': self.analysis_depth,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = {
            'fingerprint': self.fingerprint,
            'model_version': self.model_version,
        }
        data.update(self.descriptor_dict())
        data['created_at'] = self.created_at.isoformat()
        return data

    def to_json(self, indent: Optional[int] = 2) -> str:
        """Export as JSON string."""
        return json.dumps(self.to_dict(), indent=indent, default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisRecord":
        return cls(
            fingerprint=data['fingerprint'],
            model_version=data['model_version'],
            basic=BasicDescriptors.from_dict(data['basic']),
            spectral=SpectralDescriptors.from_dict(data['spectral']),
            harmonic=HarmonicDescriptors.from_dict(data['harmonic']),
            rhythmic=RhythmicDescriptors.from_dict(data['rhythmic']),
            custom_metrics=CustomMetrics.from_dict(data['custom_metrics']),
            confidence=float(data['confidence']),
            analysis_depth=data.get('analysis_depth', 'full'),
            created_at=datetime.fromisoformat(data['created_at']),
        )

    def get_summary(self) -> str:
        """Get human-readable summary."""
        metrics = self.custom_metrics
        return " | ".join([
            f"Key: {self.basic.key.name}",
            f"Tempo: {self.basic.tempo:.1f} BPM ({self.basic.time_signature})",
            f"DQ: {metrics.dynamics_quotient.value:.2f}",
            f"MAD: {metrics.mad_divergence.value:.2f}",
            f"Texture: {metrics.texture_complexity.value:.2f}",
            f"Confidence: {self.confidence:.0%}",
        ])


def _normalize_labels(values: Optional[Iterable[str]]) -> FrozenSet[str]:
    if not values:
        return frozenset()
    if isinstance(values, str):
        values = [values]
    return frozenset(v.strip().lower() for v in values if v and v.strip())


@dataclass(frozen=True)
class DeclaredAttributes:
    """Profile attributes an entity declared about itself."""

    genres: FrozenSet[str] = frozenset()
    tags: FrozenSet[str] = frozenset()

    def __post_init__(self) -> None:
        object.__setattr__(self, 'genres', _normalize_labels(self.genres))
        object.__setattr__(self, 'tags', _normalize_labels(self.tags))

    def is_empty(self) -> bool:
        return not self.genres and not self.tags

    def to_dict(self) -> Dict[str, Any]:
        return {'genres': sorted(self.genres), 'tags': sorted(self.tags)}


@dataclass(frozen=True)
class CompatibilityScore:
    """Pairwise compatibility result. Computed on demand, never stored here."""

    overall: float  # [0.0, 1.0]
    sub_scores: Dict[str, float]
    reasons: List[str]
    low_confidence: bool
    weights: Dict[str, float]
    algorithm_version: str

    def __post_init__(self) -> None:
        validate_confidence(self.overall)
        for value in self.sub_scores.values():
            validate_confidence(value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'overall': self.overall,
            'sub_scores': dict(self.sub_scores),
            'reasons': list(self.reasons),
            'low_confidence': self.low_confidence,
            'weights': dict(self.weights),
            'algorithm_version': self.algorithm_version,
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


# Validation helpers

def validate_confidence(confidence: float) -> None:
    """Validate a score or confidence is in [0.0, 1.0]."""
    if not (0.0 <= confidence <= 1.0):
        raise ValueError(f"Confidence must be in [0.0, 1.0], got {confidence}")
