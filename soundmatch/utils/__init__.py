"""
Utility modules for configuration, logging, and error handling.
"""

from soundmatch.utils.errors import (
    SoundMatchError,
    UnsupportedFormatError,
    DurationOutOfRangeError,
    UnanalyzableAudioError,
    AnalysisTimeoutError,
    BackpressureRejectedError,
    PipelineTransientError,
    AnalysisCancelledError,
    ConfigurationError,
    StoreError,
)
from soundmatch.utils.logging import get_logger, setup_logging, create_logger_with_context
from soundmatch.utils.config import ConfigManager, load_config, get_default_config

__all__ = [
    "SoundMatchError",
    "UnsupportedFormatError",
    "DurationOutOfRangeError",
    "UnanalyzableAudioError",
    "AnalysisTimeoutError",
    "BackpressureRejectedError",
    "PipelineTransientError",
    "AnalysisCancelledError",
    "ConfigurationError",
    "StoreError",
    "get_logger",
    "setup_logging",
    "create_logger_with_context",
    "ConfigManager",
    "load_config",
    "get_default_config",
]
