"""Tests for the analysis orchestrator and batch processing.

The extractor is replaced by a controllable fake so that admission,
timeouts and cancellation can be exercised deterministically.
"""

import threading
import time

import pytest

from soundmatch.core.cancellation import checkpoint
from soundmatch.core.engine import AnalysisOrchestrator, create_orchestrator
from soundmatch.core.loader import AudioLoader
from soundmatch.core.models import AudioAsset
from soundmatch.utils.config import get_default_config
from soundmatch.utils.errors import (
    AnalysisCancelledError,
    AnalysisTimeoutError,
    BackpressureRejectedError,
    DurationOutOfRangeError,
    PipelineTransientError,
    UnanalyzableAudioError,
    UnsupportedFormatError,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeExtractor:
    """Stands in for FeatureExtractor: no decoding, scripted outcomes."""

    model_version = "fake-model"

    def __init__(self, record_factory, gate=None, failures=None):
        self.loader = AudioLoader()
        self.record_factory = record_factory
        self.gate = gate
        self.failures = failures or {}
        self.started = threading.Event()
        self.calls = 0
        self.seen_tokens = []
        self._lock = threading.Lock()

    def analyze(self, asset, token=None):
        with self._lock:
            self.calls += 1
            self.seen_tokens.append(token)
        self.started.set()

        if self.gate is not None:
            while not self.gate.wait(0.01):
                checkpoint(token, "fake extraction")

        failure = self.failures.get(asset.data)
        if failure is not None:
            raise failure
        return self.record_factory(
            fingerprint=asset.fingerprint, model_version=self.model_version
        )


def _asset(i):
    return AudioAsset(data=f"asset-{i}".encode(), format="wav", asset_id=f"item-{i}")


def _make_orchestrator(extractor, **overrides):
    settings = dict(concurrency_limit=2, queue_depth=2, per_item_timeout=5.0)
    settings.update(overrides)
    return AnalysisOrchestrator(extractor=extractor, **settings)


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestSubmit:

    def test_analyze_returns_record(self, record_factory):
        extractor = FakeExtractor(record_factory)
        with _make_orchestrator(extractor) as orchestrator:
            asset = _asset(1)
            record = orchestrator.analyze(asset)
        assert record.fingerprint == asset.fingerprint
        assert record.model_version == "fake-model"

    def test_submission_handle(self, record_factory):
        extractor = FakeExtractor(record_factory)
        with _make_orchestrator(extractor) as orchestrator:
            asset = _asset(1)
            submission = orchestrator.submit(asset)
            record = submission.result(timeout=5)
            assert submission.done()
            assert submission.fingerprint == asset.fingerprint
            assert submission.submission_id.startswith("sub-")
            assert record is submission.result()

    def test_unsupported_format_rejected_synchronously(self, record_factory):
        extractor = FakeExtractor(record_factory)
        with _make_orchestrator(extractor) as orchestrator:
            with pytest.raises(UnsupportedFormatError):
                orchestrator.submit(AudioAsset(data=b"x", format="wma"))
        assert extractor.calls == 0

    def test_declared_duration_checked_before_decoding(self, record_factory):
        extractor = FakeExtractor(record_factory)
        with _make_orchestrator(extractor) as orchestrator:
            with pytest.raises(DurationOutOfRangeError):
                orchestrator.submit(AudioAsset(data=b"x", format="wav", duration=2.0))
        assert extractor.calls == 0

    def test_identical_content_computed_once(self, record_factory):
        gate = threading.Event()
        extractor = FakeExtractor(record_factory, gate=gate)
        with _make_orchestrator(extractor, concurrency_limit=4, queue_depth=4) as orchestrator:
            submissions = [orchestrator.submit(_asset("same")) for _ in range(6)]
            assert extractor.started.wait(5)
            time.sleep(0.05)
            gate.set()
            records = [s.result(timeout=5) for s in submissions]

        assert extractor.calls == 1
        assert all(r is records[0] for r in records)


class TestBackpressure:

    def test_rejects_when_full(self, record_factory):
        gate = threading.Event()
        extractor = FakeExtractor(record_factory, gate=gate)
        with _make_orchestrator(extractor, concurrency_limit=1, queue_depth=1) as orchestrator:
            first = orchestrator.submit(_asset(1))
            second = orchestrator.submit(_asset(2))

            with pytest.raises(BackpressureRejectedError) as exc_info:
                orchestrator.submit(_asset(3))
            assert exc_info.value.retryable
            assert exc_info.value.capacity == 2

            gate.set()
            first.result(timeout=5)
            second.result(timeout=5)

            # Capacity is released after completion
            assert orchestrator.submit(_asset(3)).result(timeout=5) is not None
            assert orchestrator.get_stats()['admitted'] == 0


class TestTimeoutAndCancellation:

    def test_per_item_timeout(self, record_factory):
        gate = threading.Event()
        extractor = FakeExtractor(record_factory, gate=gate)
        with _make_orchestrator(extractor, per_item_timeout=0.1) as orchestrator:
            submission = orchestrator.submit(_asset(1))
            with pytest.raises(AnalysisTimeoutError) as exc_info:
                submission.result(timeout=5)
            assert exc_info.value.timeout == 0.1
            assert submission.token.cancelled
            # The worker has unwound by the time the timeout is visible
            assert orchestrator.get_stats()['admitted'] == 0

        # The worker stopped at a checkpoint and the failure was not cached
        assert not orchestrator.store.contains(_asset(1).fingerprint, "fake-model")

    def test_cancel_during_extraction(self, record_factory):
        gate = threading.Event()
        extractor = FakeExtractor(record_factory, gate=gate)
        with _make_orchestrator(extractor) as orchestrator:
            submission = orchestrator.submit(_asset(1))
            assert extractor.started.wait(5)

            assert submission.cancel() is True
            assert submission.cancel() is False
            with pytest.raises(AnalysisCancelledError):
                submission.result(timeout=5)
            assert extractor.seen_tokens[0].cancelled

    def test_cancel_before_start_never_runs(self, record_factory):
        gate = threading.Event()
        extractor = FakeExtractor(record_factory, gate=gate)
        with _make_orchestrator(extractor, concurrency_limit=1, queue_depth=2) as orchestrator:
            running = orchestrator.submit(_asset(1))
            queued = orchestrator.submit(_asset(2))
            assert extractor.started.wait(5)

            assert queued.cancel() is True
            gate.set()
            running.result(timeout=5)
            with pytest.raises(AnalysisCancelledError):
                queued.result(timeout=5)

        assert extractor.calls == 1

    def test_resubmit_right_after_cancel_is_admitted(self, record_factory):
        gate = threading.Event()
        extractor = FakeExtractor(record_factory, gate=gate)
        with _make_orchestrator(extractor, concurrency_limit=1, queue_depth=0) as orchestrator:
            submission = orchestrator.submit(_asset(1))
            assert extractor.started.wait(5)

            assert submission.cancel() is True
            with pytest.raises(AnalysisCancelledError):
                submission.result(timeout=5)

            # Only slot in the pool; must already be free
            retry = orchestrator.submit(_asset(1))
            gate.set()
            assert retry.result(timeout=5).fingerprint == _asset(1).fingerprint

    def test_cancel_queued_frees_slot_immediately(self, record_factory):
        gate = threading.Event()
        extractor = FakeExtractor(record_factory, gate=gate)
        with _make_orchestrator(extractor, concurrency_limit=1, queue_depth=1) as orchestrator:
            running = orchestrator.submit(_asset(1))
            queued = orchestrator.submit(_asset(2))
            assert extractor.started.wait(5)

            assert queued.cancel() is True
            with pytest.raises(AnalysisCancelledError):
                queued.result(timeout=0)
            assert orchestrator.get_stats()['admitted'] == 1

            replacement = orchestrator.submit(_asset(3))
            assert not running.done()
            gate.set()
            running.result(timeout=5)
            replacement.result(timeout=5)

        assert extractor.calls == 2

    def test_cancelled_joiner_frees_its_slot(self, record_factory):
        gate = threading.Event()
        extractor = FakeExtractor(record_factory, gate=gate)
        with _make_orchestrator(extractor, concurrency_limit=2, queue_depth=0) as orchestrator:
            leader = orchestrator.submit(_asset("shared"))
            assert extractor.started.wait(5)
            follower = orchestrator.submit(_asset("shared"))

            deadline = time.time() + 5
            while orchestrator.store.get_stats()['joined'] < 1 and time.time() < deadline:
                time.sleep(0.005)

            assert follower.cancel() is True
            with pytest.raises(AnalysisCancelledError):
                follower.result(timeout=5)
            assert orchestrator.get_stats()['admitted'] == 1

            other = orchestrator.submit(_asset(3))
            gate.set()
            assert leader.result(timeout=5) is not None
            assert other.result(timeout=5) is not None

        assert extractor.calls == 2

    def test_follower_of_cancelled_computation_gets_transient_error(self, record_factory):
        gate = threading.Event()
        extractor = FakeExtractor(record_factory, gate=gate)
        with _make_orchestrator(extractor) as orchestrator:
            leader = orchestrator.submit(_asset("shared"))
            assert extractor.started.wait(5)
            follower = orchestrator.submit(_asset("shared"))

            deadline = time.time() + 5
            while orchestrator.store.get_stats()['joined'] < 1 and time.time() < deadline:
                time.sleep(0.005)

            leader.cancel()
            with pytest.raises(PipelineTransientError, match="cancelled by another"):
                follower.result(timeout=5)
            gate.set()

        assert extractor.calls == 1

    def test_cancel_after_completion_is_noop(self, record_factory):
        extractor = FakeExtractor(record_factory)
        with _make_orchestrator(extractor) as orchestrator:
            submission = orchestrator.submit(_asset(1))
            submission.result(timeout=5)
            assert submission.cancel() is False

    def test_wait_timeout_does_not_cancel(self, record_factory):
        gate = threading.Event()
        extractor = FakeExtractor(record_factory, gate=gate)
        with _make_orchestrator(extractor) as orchestrator:
            submission = orchestrator.submit(_asset(1))
            with pytest.raises(AnalysisTimeoutError):
                submission.result(timeout=0.05)
            gate.set()
            assert submission.result(timeout=5) is not None


class TestErrorNormalisation:

    def test_unexpected_exception_becomes_transient(self, record_factory):
        extractor = FakeExtractor(record_factory, failures={b"asset-1": ValueError("bad state")})
        with _make_orchestrator(extractor) as orchestrator:
            with pytest.raises(PipelineTransientError) as exc_info:
                orchestrator.analyze(_asset(1))
        assert isinstance(exc_info.value.original_error, ValueError)
        assert exc_info.value.retryable

    def test_terminal_error_passes_through(self, record_factory):
        error = UnanalyzableAudioError("silent", reason="silence")
        extractor = FakeExtractor(record_factory, failures={b"asset-1": error})
        with _make_orchestrator(extractor) as orchestrator:
            with pytest.raises(UnanalyzableAudioError) as exc_info:
                orchestrator.analyze(_asset(1))
        assert exc_info.value.retryable is False

    def test_transient_failure_retried_on_resubmit(self, record_factory):
        failures = {b"asset-1": PipelineTransientError("busy", stage="decode")}
        extractor = FakeExtractor(record_factory, failures=failures)
        with _make_orchestrator(extractor) as orchestrator:
            with pytest.raises(PipelineTransientError):
                orchestrator.analyze(_asset(1))
            failures.clear()
            assert orchestrator.analyze(_asset(1)) is not None
        assert extractor.calls == 2


class TestBatch:

    def test_batch_isolates_failures_and_keeps_order(self, record_factory):
        failures = {b"asset-7": UnanalyzableAudioError("corrupt", reason="corrupt")}
        extractor = FakeExtractor(record_factory, failures=failures)
        assets = [_asset(i) for i in range(10)]

        with _make_orchestrator(extractor) as orchestrator:
            batch = orchestrator.analyze_batch(assets)

        assert batch.total_items == 10
        assert batch.success_count == 9
        assert batch.failure_count == 1
        assert [item.index for item in batch.items] == list(range(10))
        for asset, item in zip(assets, batch.items):
            assert item.fingerprint == asset.fingerprint
            assert item.asset_id == asset.asset_id
        assert isinstance(batch.items[7].error, UnanalyzableAudioError)
        assert batch.items[7].record is None
        assert all(batch.items[i].record.fingerprint == assets[i].fingerprint
                   for i in range(10) if i != 7)

    def test_batch_larger_than_pool_waits_for_admission(self, record_factory):
        extractor = FakeExtractor(record_factory)
        assets = [_asset(i) for i in range(12)]
        with _make_orchestrator(extractor, concurrency_limit=1, queue_depth=1) as orchestrator:
            batch = orchestrator.analyze_batch(assets)
        assert batch.success_count == 12

    def test_batch_reports_invalid_items_in_slot(self, record_factory):
        extractor = FakeExtractor(record_factory)
        assets = [_asset(0), AudioAsset(data=b"x", format="xyz"), _asset(2)]
        with _make_orchestrator(extractor) as orchestrator:
            batch = orchestrator.analyze_batch(assets)
        assert batch.items[0].ok and batch.items[2].ok
        assert isinstance(batch.items[1].error, UnsupportedFormatError)

    def test_oversized_batch_rejected(self, record_factory):
        extractor = FakeExtractor(record_factory)
        with _make_orchestrator(extractor, max_batch_size=3) as orchestrator:
            with pytest.raises(BackpressureRejectedError):
                orchestrator.analyze_batch([_asset(i) for i in range(4)])
        assert extractor.calls == 0

    def test_progress_callback(self, record_factory):
        extractor = FakeExtractor(record_factory)
        progress = []
        with _make_orchestrator(extractor) as orchestrator:
            orchestrator.analyze_batch(
                [_asset(i) for i in range(3)],
                progress_callback=lambda current, total, item: progress.append((current, total)),
            )
        assert progress == [(1, 3), (2, 3), (3, 3)]

    def test_batch_item_to_dict(self, record_factory):
        failures = {b"asset-1": UnanalyzableAudioError("corrupt", reason="corrupt")}
        extractor = FakeExtractor(record_factory, failures=failures)
        with _make_orchestrator(extractor) as orchestrator:
            batch = orchestrator.analyze_batch([_asset(0), _asset(1)])
        ok, failed = (item.to_dict() for item in batch.items)
        assert ok['ok'] and ok['error'] is None
        assert failed['error']['type'] == "UnanalyzableAudioError"
        assert failed['error']['retryable'] is False


class TestLifecycle:

    def test_submit_after_shutdown(self, record_factory):
        orchestrator = _make_orchestrator(FakeExtractor(record_factory))
        orchestrator.shutdown()
        with pytest.raises(PipelineTransientError, match="shut down"):
            orchestrator.submit(_asset(1))
        assert orchestrator.get_stats()['admitted'] == 0

    def test_invalid_limits(self, record_factory):
        with pytest.raises(ValueError):
            AnalysisOrchestrator(FakeExtractor(record_factory), concurrency_limit=0)

    def test_create_orchestrator_from_config(self):
        config = get_default_config()
        config['orchestrator']['concurrency_limit'] = 3
        config['orchestrator']['queue_depth'] = 5
        with create_orchestrator(config) as orchestrator:
            assert orchestrator.capacity == 8
            assert orchestrator.per_item_timeout == 120.0
            assert orchestrator.model_version.startswith("extractor-1.0.0+metrics-1.0.0+cfg-")
