"""
Custom exceptions for the SoundMatch analysis engine.

Every failure that leaves the core is one of these. The ``retryable`` flag
tells callers whether submitting the same asset again can succeed.
"""

from typing import Optional, Any


class SoundMatchError(Exception):
    """Base exception for all SoundMatch errors."""

    retryable: bool = False

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class UnsupportedFormatError(SoundMatchError):
    """Raised when the audio container/codec is not supported."""

    def __init__(self, message: str, format: Optional[str] = None):
        super().__init__(message, details={"format": format})
        self.format = format


class DurationOutOfRangeError(SoundMatchError):
    """Raised when audio duration falls outside [min_duration, max_duration]."""

    def __init__(
        self,
        message: str,
        duration: Optional[float] = None,
        min_duration: Optional[float] = None,
        max_duration: Optional[float] = None,
    ):
        super().__init__(message)
        self.duration = duration
        self.min_duration = min_duration
        self.max_duration = max_duration
        self.details = {
            "duration": duration,
            "min_duration": min_duration,
            "max_duration": max_duration,
        }


class UnanalyzableAudioError(SoundMatchError):
    """Raised for corrupt or silence-only audio."""

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.reason = reason
        self.original_error = original_error
        self.details = {
            "reason": reason,
            "original_error": str(original_error) if original_error else None,
        }


class AnalysisTimeoutError(SoundMatchError):
    """Raised when an extraction exceeds the per-item timeout."""

    retryable = True

    def __init__(self, message: str, timeout: Optional[float] = None):
        super().__init__(message, details={"timeout": timeout})
        self.timeout = timeout


class BackpressureRejectedError(SoundMatchError):
    """Raised when the orchestrator has no admission capacity left."""

    retryable = True

    def __init__(
        self,
        message: str,
        capacity: Optional[int] = None,
        in_use: Optional[int] = None,
    ):
        super().__init__(message, details={"capacity": capacity, "in_use": in_use})
        self.capacity = capacity
        self.in_use = in_use


class PipelineTransientError(SoundMatchError):
    """Raised for decoder/resource failures. Never cached as a result."""

    retryable = True

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.stage = stage
        self.original_error = original_error
        self.details = {
            "stage": stage,
            "original_error": str(original_error) if original_error else None,
        }


class AnalysisCancelledError(SoundMatchError):
    """Raised when a submission is cancelled before or during extraction."""

    retryable = True

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message, details={"reason": reason})
        self.reason = reason


class ConfigurationError(SoundMatchError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        super().__init__(message)
        self.config_key = config_key
        self.details = {"config_key": config_key}


class StoreError(SoundMatchError):
    """Raised when the record store or its durable backend fails."""

    retryable = True

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        key: Optional[str] = None,
    ):
        super().__init__(message)
        self.operation = operation
        self.key = key
        self.details = {"operation": operation, "key": key}


TERMINAL_ERRORS = (
    UnsupportedFormatError,
    DurationOutOfRangeError,
    UnanalyzableAudioError,
)
