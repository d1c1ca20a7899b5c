"""
Core module containing data models, decoding, extraction, the result store
and the analysis orchestrator.

Uses lazy imports for modules with heavy dependencies (librosa, soundfile).
"""

# Models are lightweight - import directly
from soundmatch.core.models import (
    AudioAsset,
    FrameFeatures,
    KeyEstimate,
    BasicDescriptors,
    SpectralDescriptors,
    HarmonicDescriptors,
    RhythmicDescriptors,
    CustomMetric,
    CustomMetrics,
    RawDescriptors,
    AnalysisRecord,
    DeclaredAttributes,
    CompatibilityScore,
    validate_confidence,
)
from soundmatch.core.cancellation import CancellationToken

__all__ = [
    # Models (always available)
    "AudioAsset",
    "FrameFeatures",
    "KeyEstimate",
    "BasicDescriptors",
    "SpectralDescriptors",
    "HarmonicDescriptors",
    "RhythmicDescriptors",
    "CustomMetric",
    "CustomMetrics",
    "RawDescriptors",
    "AnalysisRecord",
    "DeclaredAttributes",
    "CompatibilityScore",
    "validate_confidence",
    "CancellationToken",
    # Heavy modules (lazy loaded)
    "AudioLoader",
    "create_audio_loader",
    "FeatureExtractor",
    "create_feature_extractor",
    "CustomMetricCalculator",
    "AnalysisResultStore",
    "create_store",
    "JSONRecordWriter",
    "AnalysisOrchestrator",
    "Submission",
    "create_orchestrator",
    "BatchProcessor",
    "BatchResult",
    "BatchItemResult",
]


def __getattr__(name: str):
    """Lazy load modules with heavy dependencies."""
    if name in ("AudioLoader", "create_audio_loader"):
        from soundmatch.core.loader import AudioLoader, create_audio_loader
        return AudioLoader if name == "AudioLoader" else create_audio_loader
    elif name in ("FeatureExtractor", "create_feature_extractor"):
        from soundmatch.core.features import FeatureExtractor, create_feature_extractor
        return FeatureExtractor if name == "FeatureExtractor" else create_feature_extractor
    elif name == "CustomMetricCalculator":
        from soundmatch.core.metrics import CustomMetricCalculator
        return CustomMetricCalculator
    elif name in ("AnalysisResultStore", "create_store"):
        from soundmatch.core.store import AnalysisResultStore, create_store
        return AnalysisResultStore if name == "AnalysisResultStore" else create_store
    elif name == "JSONRecordWriter":
        from soundmatch.core.record_writer import JSONRecordWriter
        return JSONRecordWriter
    elif name in ("AnalysisOrchestrator", "Submission", "create_orchestrator"):
        from soundmatch.core import engine
        return getattr(engine, name)
    elif name in ("BatchProcessor", "BatchResult", "BatchItemResult"):
        from soundmatch.core import batch_processor
        return getattr(batch_processor, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
