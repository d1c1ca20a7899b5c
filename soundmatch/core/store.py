"""
Analysis result store for the SoundMatch engine.

A keyed ledger of immutable records. Each (fingerprint, model_version) key
is either absent, in flight (a pending Future shared by every caller that
asks for it) or computed (the published record). The lock covers only the
map transitions; computations run outside it, so unrelated keys proceed in
parallel.
"""

import logging
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from soundmatch.core.cancellation import CancellationToken, checkpoint
from soundmatch.core.models import AnalysisRecord
from soundmatch.core.record_writer import JSONRecordWriter, RecordBackend
from soundmatch.utils.errors import StoreError

StoreKey = Tuple[str, str]

# How often a caller waiting on another caller's computation checks its token
JOIN_POLL_INTERVAL = 0.05  # seconds


class AnalysisResultStore:
    """
    Thread-safe compute-once store for analysis records.

    Features:
    - At most one computation per key, even under concurrent requests
    - Failed computations are not cached; the next call retries
    - Optional durable backend consulted on a memory miss
    """

    def __init__(self, backend: Optional[RecordBackend] = None):
        self.backend = backend
        self._records: Dict[StoreKey, AnalysisRecord] = {}
        self._in_flight: Dict[StoreKey, Future] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger("store")

        # Statistics
        self._hits = 0
        self._misses = 0
        self._joined = 0
        self._computations = 0
        self._failures = 0

    def get(self, fingerprint: str, model_version: str) -> Optional[AnalysisRecord]:
        """Return a published record without computing anything."""
        key = (fingerprint, model_version)
        with self._lock:
            record = self._records.get(key)
        if record is not None or self.backend is None:
            return record

        record = self.backend.load(fingerprint, model_version)
        if record is None:
            return None
        with self._lock:
            return self._records.setdefault(key, record)

    def get_or_compute(
        self,
        fingerprint: str,
        model_version: str,
        compute_fn: Callable[[], AnalysisRecord],
        token: Optional[CancellationToken] = None,
    ) -> AnalysisRecord:
        """
        Return the record for a key, computing it at most once.

        Concurrent callers for the same key share one execution of
        ``compute_fn`` and all receive the same record object, or the
        same exception if it fails. A caller that joins another caller's
        computation stops waiting as soon as its own ``token`` is cancelled;
        the computation itself carries on for the others.

        Raises:
            Whatever compute_fn raises
            AnalysisCancelledError: ``token`` cancelled while waiting
            StoreError: Record key mismatch or backend failure
        """
        key = (fingerprint, model_version)

        with self._lock:
            record = self._records.get(key)
            if record is not None:
                self._hits += 1
                self.logger.debug(f"Store hit: {fingerprint[:8]}...")
                return record

            future = self._in_flight.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._in_flight[key] = future
                self._misses += 1
            else:
                self._joined += 1

        if not leader:
            self.logger.debug(f"Joining in-flight computation: {fingerprint[:8]}...")
            return self._await(future, token)

        try:
            record = self._load_or_compute(key, compute_fn)
        except BaseException as e:
            with self._lock:
                del self._in_flight[key]
                self._failures += 1
            future.set_exception(e)
            raise

        with self._lock:
            self._records[key] = record
            del self._in_flight[key]
        future.set_result(record)
        self.logger.debug(f"Published: {fingerprint[:8]}... ({model_version})")
        return record

    @staticmethod
    def _await(future: Future, token: Optional[CancellationToken]) -> AnalysisRecord:
        """Wait on another caller's computation, polling ``token`` between waits."""
        if token is None:
            return future.result()
        while True:
            checkpoint(token, "store")
            try:
                return future.result(timeout=JOIN_POLL_INTERVAL)
            except FutureTimeoutError:
                continue

    def _load_or_compute(
        self,
        key: StoreKey,
        compute_fn: Callable[[], AnalysisRecord],
    ) -> AnalysisRecord:
        if self.backend is not None:
            stored = self.backend.load(*key)
            if stored is not None:
                self.logger.debug(f"Loaded from backend: {key[0][:8]}...")
                return stored

        with self._lock:
            self._computations += 1
        record = compute_fn()

        if record.key != key:
            raise StoreError(
                f"Computed record {record.key} does not match requested key {key}",
                operation="compute",
                key=key[0]
            )

        if self.backend is not None:
            self.backend.save(record)
        return record

    def contains(self, fingerprint: str, model_version: str) -> bool:
        """True if the record is published in memory (ignores the backend)."""
        with self._lock:
            return (fingerprint, model_version) in self._records

    def is_in_flight(self, fingerprint: str, model_version: str) -> bool:
        with self._lock:
            return (fingerprint, model_version) in self._in_flight

    def get_stats(self) -> Dict[str, Any]:
        """Hit/miss counters and current sizes."""
        with self._lock:
            lookups = self._hits + self._misses + self._joined
            return {
                'hits': self._hits,
                'misses': self._misses,
                'joined': self._joined,
                'computations': self._computations,
                'failures': self._failures,
                'in_flight': len(self._in_flight),
                'size': len(self._records),
                'hit_ratio': self._hits / lookups if lookups else 0.0,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, key: StoreKey) -> bool:
        return self.contains(*key)


def create_store(config: Optional[Dict[str, Any]] = None) -> AnalysisResultStore:
    """
    Factory function to create the store from the ``store`` config section.
    """
    if config is None:
        config = {}

    backend = None
    if config.get('backend', 'memory') == 'json':
        directory = config.get('directory')
        if not directory:
            raise StoreError("store.directory is required for the json backend",
                             operation="configure")
        backend = JSONRecordWriter(Path(directory))

    return AnalysisResultStore(backend=backend)
