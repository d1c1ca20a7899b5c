"""
Custom metric calculator for the SoundMatch engine.

Pure functions deriving the three higher-order metrics from frame features.
Every constant below is part of the metric definition: changing one changes
the numbers, so it must come with a new methodology tag and METRICS_VERSION.

Dynamics Quotient (``dq/rms-cv/v1``)
    std(frame RMS) / mean(frame RMS). Not clamped. Defined as 0 when the
    mean RMS is below ``DQ_SILENCE_EPSILON``.
    Bands: < 0.3 static, 0.3-0.7 moderate, 0.7-1.2 high, >= 1.2 extreme.

MAD Divergence (``mad/chroma-ks-tv/v1``)
    Chroma mean and the 24 key templates are each normalised to sum 1. The
    mean absolute deviation from the nearest template, divided by the largest
    possible value (2/12), lands in [0, 1]; it equals the total variation
    distance. Lower means more scale-conforming. Empty chroma gives 1.

Texture Complexity (``texture/weighted-var-sat/v1``)
    Each spectral series is scaled by a fixed reference and clipped to [0, 1];
    the weighted sum of their variances is squashed with
    1 - exp(-raw / TEXTURE_REFERENCE_VARIANCE).
"""

from typing import Dict

import numpy as np

from soundmatch.analyzers.musical.librosa_musical import key_templates
from soundmatch.core.models import CustomMetric, CustomMetrics, FrameFeatures

METRICS_VERSION = "1.0.0"

DQ_METHOD = "dq/rms-cv/v1"
MAD_METHOD = "mad/chroma-ks-tv/v1"
TEXTURE_METHOD = "texture/weighted-var-sat/v1"

DQ_SILENCE_EPSILON = 1e-10

DYNAMICS_BANDS = (
    (0.3, "static"),
    (0.7, "moderate"),
    (1.2, "high"),
)

# Largest mean absolute deviation between two 12-bin distributions
MAD_MAX = 2.0 / 12.0

TEXTURE_WEIGHTS: Dict[str, float] = {
    'spectral_centroid': 0.30,
    'spectral_rolloff': 0.20,
    'spectral_bandwidth': 0.20,
    'spectral_flatness': 0.15,
    'zero_crossing_rate': 0.15,
}
TEXTURE_REFERENCE_VARIANCE = 0.01


def dynamics_quotient(rms: np.ndarray) -> CustomMetric:
    """Coefficient of variation of frame RMS energy."""
    rms = np.asarray(rms, dtype=np.float64)
    if rms.size == 0:
        return CustomMetric(0.0, DQ_METHOD)

    mean = float(np.mean(rms))
    if mean < DQ_SILENCE_EPSILON:
        return CustomMetric(0.0, DQ_METHOD)

    return CustomMetric(float(np.std(rms) / mean), DQ_METHOD)


def dynamics_band(value: float) -> str:
    """Interpretation band for a Dynamics Quotient value."""
    for upper, label in DYNAMICS_BANDS:
        if value < upper:
            return label
    return "extreme"


def mad_divergence(chroma_mean: np.ndarray) -> CustomMetric:
    """Normalised deviation of the chroma profile from the nearest key template."""
    chroma = np.asarray(chroma_mean, dtype=np.float64)
    total = float(np.sum(chroma))
    if total <= 0:
        return CustomMetric(1.0, MAD_METHOD)
    chroma = chroma / total

    nearest = min(
        float(np.mean(np.abs(chroma - template / np.sum(template))))
        for _, _, template in key_templates()
    )
    return CustomMetric(float(np.clip(nearest / MAD_MAX, 0.0, 1.0)), MAD_METHOD)


def texture_complexity(frames: FrameFeatures) -> CustomMetric:
    """Saturated weighted variance of the reference-scaled spectral series."""
    nyquist = frames.sample_rate / 2.0
    scaled = {
        'spectral_centroid': frames.spectral_centroid / nyquist,
        'spectral_rolloff': frames.spectral_rolloff / nyquist,
        'spectral_bandwidth': frames.spectral_bandwidth / (nyquist / 2.0),
        'spectral_flatness': frames.spectral_flatness,
        'zero_crossing_rate': frames.zero_crossing_rate,
    }

    raw = 0.0
    for name, weight in TEXTURE_WEIGHTS.items():
        series = np.clip(np.asarray(scaled[name], dtype=np.float64), 0.0, 1.0)
        if series.size:
            raw += weight * float(np.var(series))

    value = 1.0 - float(np.exp(-raw / TEXTURE_REFERENCE_VARIANCE))
    return CustomMetric(float(np.clip(value, 0.0, 1.0)), TEXTURE_METHOD)


class CustomMetricCalculator:
    """Computes all custom metrics for one set of frame features."""

    version = METRICS_VERSION

    def calculate(self, frames: FrameFeatures) -> CustomMetrics:
        return CustomMetrics(
            dynamics_quotient=dynamics_quotient(frames.rms),
            mad_divergence=mad_divergence(frames.chroma_mean),
            texture_complexity=texture_complexity(frames),
        )
