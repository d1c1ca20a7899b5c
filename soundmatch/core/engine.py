"""
Analysis orchestrator for the SoundMatch engine.

Coordinates submissions: validation, fingerprinting, admission control,
the bounded worker pool, per-item timeouts, cancellation and error
normalisation. Extraction results go through the store, so identical
content is analysed once per model version.
"""

import itertools
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, Iterable, Optional

from soundmatch.core.batch_processor import BatchProcessor, BatchResult
from soundmatch.core.cancellation import CancellationToken
from soundmatch.core.features import FeatureExtractor, create_feature_extractor
from soundmatch.core.models import AnalysisRecord, AudioAsset
from soundmatch.core.store import AnalysisResultStore, create_store
from soundmatch.utils.errors import (
    AnalysisCancelledError,
    AnalysisTimeoutError,
    BackpressureRejectedError,
    PipelineTransientError,
    SoundMatchError,
)
from soundmatch.utils.logging import ContextAdapter, create_logger_with_context

TIMEOUT_REASON = "timeout"
CALLER_CANCEL_REASON = "cancelled by caller"


class Submission:
    """
    Handle for one submitted asset.

    Resolves exactly once, with a record or a taxonomy error. Cancelling or
    timing out a running submission only signals its token; the outcome is
    published once the worker has unwound and given back its slot. A
    submission still waiting for a worker is resolved and freed at once.
    """

    def __init__(
        self,
        asset: AudioAsset,
        submission_id: str,
        on_dequeue: Optional[Callable[["Submission"], None]] = None,
    ):
        self.asset = asset
        self.submission_id = submission_id
        self.fingerprint = asset.fingerprint
        self.token = CancellationToken()
        self.submitted_at = time.time()
        self.started_at: Optional[float] = None
        self._outcome: Future = Future()
        self._on_dequeue = on_dequeue
        self._holds_slot = True
        self._lock = threading.Lock()

    def _start(self) -> bool:
        """Mark the submission running. False if it was cancelled while queued."""
        with self._lock:
            if self.token.cancelled:
                return False
            self.started_at = time.time()
            return True

    def _take_slot(self) -> bool:
        """True exactly once: for whoever gives the admission slot back."""
        with self._lock:
            held, self._holds_slot = self._holds_slot, False
            return held

    def _resolve(
        self,
        record: Optional[AnalysisRecord] = None,
        error: Optional[SoundMatchError] = None,
    ) -> bool:
        """Set the outcome unless already set. Returns True if this call set it."""
        with self._lock:
            if self._outcome.done():
                return False
            if error is not None:
                self._outcome.set_exception(error)
            else:
                self._outcome.set_result(record)
            return True

    def cancel(self) -> bool:
        """
        Cancel before or during extraction.

        A running extraction stops at its next checkpoint and ``result``
        raises AnalysisCancelledError after that.

        Returns:
            True if the submission was still pending and is now cancelled
        """
        with self._lock:
            if self._outcome.done() or not self.token.cancel(CALLER_CANCEL_REASON):
                return False
            queued = self.started_at is None

        if queued:
            if self._on_dequeue is not None:
                self._on_dequeue(self)
            self._resolve(error=self.cancelled_error())
        return True

    def cancelled_error(self) -> AnalysisCancelledError:
        return AnalysisCancelledError(
            f"Submission {self.submission_id} cancelled",
            reason=self.token.reason
        )

    def done(self) -> bool:
        return self._outcome.done()

    @property
    def running(self) -> bool:
        return self.started_at is not None and not self.done()

    def result(self, timeout: Optional[float] = None) -> AnalysisRecord:
        """
        Wait for the record.

        ``timeout`` bounds only this wait; the submission keeps running.

        Raises:
            SoundMatchError: The submission's error
            AnalysisTimeoutError: Nothing arrived within ``timeout``
        """
        try:
            return self._outcome.result(timeout)
        except FutureTimeoutError:
            raise AnalysisTimeoutError(
                f"No result for submission {self.submission_id} within {timeout}s",
                timeout=timeout
            ) from None

    def exception(self, timeout: Optional[float] = None) -> Optional[SoundMatchError]:
        try:
            return self._outcome.exception(timeout)
        except FutureTimeoutError:
            return None


class AnalysisOrchestrator:
    """
    Main entry point of the core.

    Design:
    - Bounded pool of ``concurrency_limit`` workers
    - At most ``concurrency_limit + queue_depth`` admitted submissions;
      beyond that ``submit`` rejects synchronously
    - Per-item timeout measured from the moment a worker picks the job up
    - All failures leave as taxonomy errors
    """

    def __init__(
        self,
        extractor: FeatureExtractor,
        store: Optional[AnalysisResultStore] = None,
        concurrency_limit: int = 4,
        queue_depth: int = 16,
        per_item_timeout: Optional[float] = 120.0,
        max_batch_size: int = 64,
    ):
        """
        Args:
            extractor: Pipeline producing records (must expose ``loader``,
                ``model_version`` and ``analyze(asset, token)``)
            store: Result store (a fresh in-memory store if None)
            concurrency_limit: Simultaneous extraction pipelines
            queue_depth: Admitted submissions allowed to wait for a worker
            per_item_timeout: Seconds one extraction may run; None or 0 disables
            max_batch_size: Largest accepted batch
        """
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        if queue_depth < 0:
            raise ValueError("queue_depth must not be negative")

        self.extractor = extractor
        self.store = store if store is not None else AnalysisResultStore()
        self.concurrency_limit = concurrency_limit
        self.queue_depth = queue_depth
        self.capacity = concurrency_limit + queue_depth
        self.per_item_timeout = per_item_timeout or None
        self.max_batch_size = max_batch_size

        self.executor = ThreadPoolExecutor(
            max_workers=concurrency_limit,
            thread_name_prefix="soundmatch-worker"
        )
        self._slots = threading.BoundedSemaphore(self.capacity)
        self._admitted = 0
        self._counter_lock = threading.Lock()
        self._ids = itertools.count(1)
        self.logger = logging.getLogger('orchestrator')

    @property
    def model_version(self) -> str:
        return self.extractor.model_version

    def submit(
        self,
        asset: AudioAsset,
        block: bool = False,
        admission_timeout: Optional[float] = None,
    ) -> Submission:
        """
        Admit an asset for analysis.

        Args:
            asset: Asset to analyse
            block: Wait for admission capacity instead of rejecting
            admission_timeout: Longest wait when ``block`` is True

        Returns:
            Submission handle

        Raises:
            UnsupportedFormatError, DurationOutOfRangeError: Invalid asset
            BackpressureRejectedError: No capacity
        """
        self.extractor.loader.validate_asset(asset)

        if block:
            acquired = self._slots.acquire(timeout=admission_timeout)
        else:
            acquired = self._slots.acquire(blocking=False)
        if not acquired:
            with self._counter_lock:
                in_use = self._admitted
            self.logger.warning(
                f"Rejecting submission: {in_use}/{self.capacity} slots in use"
            )
            raise BackpressureRejectedError(
                f"Analysis capacity exhausted ({self.capacity} admitted); retry later",
                capacity=self.capacity,
                in_use=in_use
            )

        with self._counter_lock:
            self._admitted += 1
        submission = Submission(asset, f"sub-{next(self._ids)}", on_dequeue=self._release_slot)

        try:
            self.executor.submit(self._run, submission)
        except RuntimeError as e:
            self._release_slot(submission)
            raise PipelineTransientError(
                "Orchestrator is shut down", stage="submit", original_error=e
            ) from e

        self.logger.debug(
            f"Admitted {submission.submission_id} ({submission.fingerprint[:8]}...)"
        )
        return submission

    def analyze(self, asset: AudioAsset) -> AnalysisRecord:
        """Submit and wait for the record."""
        return self.submit(asset).result()

    def analyze_batch(
        self,
        assets: Iterable[AudioAsset],
        progress_callback: Optional[Callable[[int, int, Any], None]] = None,
    ) -> BatchResult:
        """
        Analyse a bounded list of assets with the shared worker pool.

        Per-item results come back in submission order; item failures are
        reported in their slot and never raise.

        Raises:
            BackpressureRejectedError: More than ``max_batch_size`` assets
        """
        processor = BatchProcessor(
            self,
            max_batch_size=self.max_batch_size,
            progress_callback=progress_callback
        )
        return processor.process(assets)

    def _run(self, submission: Submission) -> None:
        """Worker body: run the pipeline through the store, resolve the handle."""
        log = create_logger_with_context('orchestrator', {
            'submission_id': submission.submission_id,
            'fingerprint': submission.fingerprint[:12],
        })
        if not submission._start():
            log.info("Cancelled before start")
            self._release_slot(submission)
            self._publish(submission, None, submission.cancelled_error(), log)
            return

        timer: Optional[threading.Timer] = None
        record: Optional[AnalysisRecord] = None
        error: Optional[SoundMatchError] = None

        try:
            waited = submission.started_at - submission.submitted_at
            log.info(f"Extraction started after {waited:.3f}s in queue")

            if self.per_item_timeout:
                timer = threading.Timer(
                    self.per_item_timeout, self._expire, args=(submission,)
                )
                timer.daemon = True
                timer.start()

            record = self.store.get_or_compute(
                submission.fingerprint,
                self.model_version,
                lambda: self.extractor.analyze(submission.asset, submission.token),
                token=submission.token,
            )
            # A cancel that lands after the last checkpoint still wins
            submission.token.raise_if_cancelled("publish")

        except Exception as e:
            error = self._normalize_error(e, submission)

        finally:
            if timer is not None:
                timer.cancel()
            # Capacity is free before the caller sees the outcome
            self._release_slot(submission)

        self._publish(submission, record, error, log)

    def _publish(
        self,
        submission: Submission,
        record: Optional[AnalysisRecord],
        error: Optional[SoundMatchError],
        log: ContextAdapter,
    ) -> None:
        if error is not None:
            if submission._resolve(error=error):
                if error.retryable:
                    log.warning(f"Analysis failed (retryable): {error}")
                else:
                    log.info(f"Analysis rejected: {error}")
        elif submission._resolve(record=record):
            elapsed = time.time() - submission.started_at
            log.info(f"Analysis complete in {elapsed:.3f}s")

    def _expire(self, submission: Submission) -> None:
        """Timer callback: signal the pipeline to stop; the worker reports the timeout."""
        if submission.token.cancel(TIMEOUT_REASON):
            self.logger.warning(
                f"{submission.submission_id} timed out after {self.per_item_timeout}s"
            )

    def _normalize_error(self, error: Exception, submission: Submission) -> SoundMatchError:
        """Map any pipeline exception onto the error taxonomy."""
        if isinstance(error, AnalysisCancelledError):
            if not submission.token.cancelled:
                # Another submission's cancellation stopped the shared computation
                return PipelineTransientError(
                    "Shared computation was cancelled by another submission",
                    stage="store",
                    original_error=error
                )
            if submission.token.reason == TIMEOUT_REASON:
                return AnalysisTimeoutError(
                    f"Extraction exceeded {self.per_item_timeout}s",
                    timeout=self.per_item_timeout
                )
            return error

        if isinstance(error, SoundMatchError):
            return error

        self.logger.error(f"Unexpected pipeline failure: {error!r}")
        return PipelineTransientError(
            f"Unexpected pipeline failure: {error}",
            stage="pipeline",
            original_error=error
        )

    def _release_slot(self, submission: Submission) -> None:
        """Give back a submission's admission slot; later calls are no-ops."""
        if not submission._take_slot():
            return
        with self._counter_lock:
            self._admitted -= 1
        self._slots.release()

    def get_stats(self) -> Dict[str, Any]:
        with self._counter_lock:
            admitted = self._admitted
        return {
            'capacity': self.capacity,
            'concurrency_limit': self.concurrency_limit,
            'queue_depth': self.queue_depth,
            'admitted': admitted,
            'model_version': self.model_version,
            'store': self.store.get_stats(),
        }

    def shutdown(self, wait: bool = True) -> None:
        """Shutdown thread pool gracefully."""
        self.logger.info("Shutting down analysis orchestrator")
        self.executor.shutdown(wait=wait)

    def __enter__(self) -> "AnalysisOrchestrator":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()


def create_orchestrator(config: Dict[str, Any]) -> AnalysisOrchestrator:
    """
    Factory function to create a fully configured orchestrator.

    Args:
        config: Full configuration dict (see ``get_default_config``)
    """
    orchestrator_config = config.get('orchestrator', {})

    return AnalysisOrchestrator(
        extractor=create_feature_extractor(config),
        store=create_store(config.get('store', {})),
        concurrency_limit=orchestrator_config.get('concurrency_limit', 4),
        queue_depth=orchestrator_config.get('queue_depth', 16),
        per_item_timeout=orchestrator_config.get('per_item_timeout', 120.0),
        max_batch_size=orchestrator_config.get('max_batch_size', 64),
    )
