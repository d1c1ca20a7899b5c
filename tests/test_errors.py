"""Tests for the error taxonomy."""

import pytest

from soundmatch.utils.errors import (
    TERMINAL_ERRORS,
    AnalysisCancelledError,
    AnalysisTimeoutError,
    BackpressureRejectedError,
    ConfigurationError,
    DurationOutOfRangeError,
    PipelineTransientError,
    SoundMatchError,
    StoreError,
    UnanalyzableAudioError,
    UnsupportedFormatError,
)


class TestRetryable:

    @pytest.mark.parametrize("error", [
        UnsupportedFormatError("bad", format="wma"),
        DurationOutOfRangeError("short", duration=1.0, min_duration=5.0, max_duration=1800.0),
        UnanalyzableAudioError("silent", reason="silence"),
        ConfigurationError("bad key", config_key="x"),
    ])
    def test_terminal(self, error):
        assert error.retryable is False

    @pytest.mark.parametrize("error", [
        AnalysisTimeoutError("slow", timeout=1.0),
        BackpressureRejectedError("full", capacity=4, in_use=4),
        PipelineTransientError("decoder crashed", stage="decode"),
        AnalysisCancelledError("stop", reason="user"),
        StoreError("disk full", operation="put", key="abc"),
    ])
    def test_transient(self, error):
        assert error.retryable is True

    def test_terminal_group(self):
        for cls in TERMINAL_ERRORS:
            assert issubclass(cls, SoundMatchError)
            assert cls.retryable is False


class TestDetails:

    def test_str_includes_details(self):
        error = BackpressureRejectedError("Capacity exhausted", capacity=4, in_use=4)
        assert str(error) == "Capacity exhausted (Details: {'capacity': 4, 'in_use': 4})"

    def test_str_without_details(self):
        assert str(SoundMatchError("plain")) == "plain"

    def test_original_error_recorded(self):
        cause = OSError("no backend")
        error = PipelineTransientError("decode failed", stage="decode", original_error=cause)
        assert error.original_error is cause
        assert error.details == {"stage": "decode", "original_error": "no backend"}

    def test_duration_fields(self):
        error = DurationOutOfRangeError("long", duration=2000.0, min_duration=5.0, max_duration=1800.0)
        assert error.details["duration"] == 2000.0
        assert error.max_duration == 1800.0
