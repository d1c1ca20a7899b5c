"""Shared fixtures: synthesised audio and ready-made analysis records."""

from datetime import datetime, timezone

import numpy as np
import pytest

from soundmatch.core.models import (
    AnalysisRecord,
    AudioAsset,
    BasicDescriptors,
    CustomMetric,
    CustomMetrics,
    HarmonicDescriptors,
    KeyEstimate,
    RhythmicDescriptors,
    SpectralDescriptors,
)

from synth import SR, synth_click_track, to_wav_bytes


# ---------------------------------------------------------------------------
# Audio
# ---------------------------------------------------------------------------


@pytest.fixture
def click_track_wav():
    """10 s, 120 BPM click track over a C major triad, as WAV bytes."""
    return to_wav_bytes(synth_click_track())


@pytest.fixture
def click_track_asset(click_track_wav):
    return AudioAsset(data=click_track_wav, format="wav", asset_id="click-120")


@pytest.fixture
def silent_asset():
    return AudioAsset(data=to_wav_bytes(np.zeros(6 * SR, dtype=np.float32)), format="wav")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


def build_record(
    fingerprint: str = "a" * 64,
    model_version: str = "test-model",
    tempo: float = 120.0,
    key: str = "C major",
    mfcc=None,
    spectral_centroid: float = 2000.0,
    beat_strength: float = 0.7,
    tempo_stability: float = 0.9,
    confidence: float = 0.8,
) -> AnalysisRecord:
    """Build a valid AnalysisRecord; key is given as e.g. "C# minor"."""
    note, mode = key.split()
    pitch_class = ['C', 'C#', 'D', 'D#', 'E', 'F', 'F#', 'G', 'G#', 'A', 'A#', 'B'].index(note)
    if mfcc is None:
        mfcc = (-200.0, 80.0, 10.0, 20.0, 5.0, 0.0, -5.0, 3.0, 1.0, -2.0, 0.5, 1.5, -1.0)

    return AnalysisRecord(
        fingerprint=fingerprint,
        model_version=model_version,
        basic=BasicDescriptors(
            tempo=tempo,
            key=KeyEstimate(pitch_class=pitch_class, mode=mode, correlation=0.8),
            time_signature="4/4",
            duration=30.0,
        ),
        spectral=SpectralDescriptors(
            mfcc=tuple(mfcc),
            spectral_centroid=spectral_centroid,
            spectral_rolloff=4000.0,
            zero_crossing_rate=0.05,
        ),
        harmonic=HarmonicDescriptors(
            chroma=tuple([1.0 / 12] * 12),
            key_strength=0.8,
            tonal_centroid=(0.0,) * 6,
        ),
        rhythmic=RhythmicDescriptors(
            beat_strength=beat_strength,
            onset_density=2.0,
            tempo_stability=tempo_stability,
        ),
        custom_metrics=CustomMetrics(
            dynamics_quotient=CustomMetric(0.4, "dq/rms-cv/v1"),
            mad_divergence=CustomMetric(0.2, "mad/chroma-ks-tv/v1"),
            texture_complexity=CustomMetric(0.5, "texture/weighted-var-sat/v1"),
        ),
        confidence=confidence,
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )


@pytest.fixture
def record_factory():
    """Callable building AnalysisRecords with overridable descriptors."""
    return build_record
