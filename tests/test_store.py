"""Tests for the analysis result store and its JSON backend."""

import threading
import time
from pathlib import Path

import pytest

from soundmatch.core.cancellation import CancellationToken
from soundmatch.core.record_writer import JSONRecordWriter
from soundmatch.core.store import AnalysisResultStore, create_store
from soundmatch.utils.errors import AnalysisCancelledError, PipelineTransientError, StoreError


class TestComputeOnce:

    def test_concurrent_callers_share_one_computation(self, record_factory):
        store = AnalysisResultStore()
        record = record_factory()
        calls = []
        release = threading.Event()

        def compute():
            calls.append(1)
            release.wait(5)
            return record

        results = []
        errors = []

        def worker():
            try:
                results.append(store.get_or_compute(record.fingerprint, record.model_version, compute))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        # Wait until the first caller is computing, then let everyone pile up
        deadline = time.time() + 5
        while not calls and time.time() < deadline:
            time.sleep(0.005)
        time.sleep(0.05)
        release.set()
        for t in threads:
            t.join(5)

        assert not errors
        assert len(calls) == 1
        assert len(results) == 16
        assert all(r is results[0] for r in results)
        stats = store.get_stats()
        assert stats['computations'] == 1
        assert stats['in_flight'] == 0
        assert stats['size'] == 1

    def test_hit_after_publish(self, record_factory):
        store = AnalysisResultStore()
        record = record_factory()
        store.get_or_compute(record.fingerprint, record.model_version, lambda: record)

        def fail():
            raise AssertionError("should not recompute")

        assert store.get_or_compute(record.fingerprint, record.model_version, fail) is record
        assert store.get_stats()['hits'] == 1
        assert (record.fingerprint, record.model_version) in store
        assert len(store) == 1

    def test_unrelated_keys_compute_in_parallel(self, record_factory):
        store = AnalysisResultStore()
        barrier = threading.Barrier(2, timeout=5)
        records = [record_factory(fingerprint=c * 64) for c in "ab"]
        results = {}

        def worker(record):
            def compute():
                # Deadlocks (BrokenBarrierError) if computations were serialised
                barrier.wait()
                return record
            results[record.fingerprint] = store.get_or_compute(
                record.fingerprint, record.model_version, compute
            )

        threads = [threading.Thread(target=worker, args=(r,)) for r in records]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert set(results) == {"a" * 64, "b" * 64}

    def test_model_versions_are_separate_keys(self, record_factory):
        store = AnalysisResultStore()
        v1 = record_factory(model_version="v1")
        v2 = record_factory(model_version="v2")
        assert store.get_or_compute(v1.fingerprint, "v1", lambda: v1) is v1
        assert store.get_or_compute(v2.fingerprint, "v2", lambda: v2) is v2
        assert len(store) == 2


class TestFailures:

    def test_failure_not_cached(self, record_factory):
        store = AnalysisResultStore()
        record = record_factory()

        def failing():
            raise PipelineTransientError("decoder busy", stage="decode")

        with pytest.raises(PipelineTransientError):
            store.get_or_compute(record.fingerprint, record.model_version, failing)

        assert not store.is_in_flight(record.fingerprint, record.model_version)
        assert store.get(record.fingerprint, record.model_version) is None

        result = store.get_or_compute(record.fingerprint, record.model_version, lambda: record)
        assert result is record
        stats = store.get_stats()
        assert stats['failures'] == 1
        assert stats['computations'] == 2

    def test_followers_receive_leader_error(self, record_factory):
        store = AnalysisResultStore()
        record = record_factory()
        started = threading.Event()
        release = threading.Event()

        def failing():
            started.set()
            release.wait(5)
            raise PipelineTransientError("boom", stage="extract")

        outcomes = []

        def worker():
            try:
                store.get_or_compute(record.fingerprint, record.model_version, failing)
            except PipelineTransientError as e:
                outcomes.append(e)

        leader = threading.Thread(target=worker)
        leader.start()
        assert started.wait(5)
        followers = [threading.Thread(target=worker) for _ in range(3)]
        for t in followers:
            t.start()
        time.sleep(0.05)
        release.set()
        for t in [leader] + followers:
            t.join(5)

        assert len(outcomes) == 4
        assert store.get_stats()['computations'] == 1

    def test_cancelled_joiner_stops_waiting(self, record_factory):
        store = AnalysisResultStore()
        record = record_factory()
        started = threading.Event()
        release = threading.Event()

        def slow():
            started.set()
            release.wait(5)
            return record

        leader_results = []
        leader = threading.Thread(target=lambda: leader_results.append(
            store.get_or_compute(record.fingerprint, record.model_version, slow)
        ))
        leader.start()
        assert started.wait(5)

        token = CancellationToken()
        token.cancel("stop")
        began = time.time()
        with pytest.raises(AnalysisCancelledError):
            store.get_or_compute(record.fingerprint, record.model_version, slow, token=token)
        assert time.time() - began < 1.0

        # The shared computation is unaffected
        assert store.is_in_flight(record.fingerprint, record.model_version)
        release.set()
        leader.join(5)
        assert leader_results == [record]
        assert store.get_stats()['computations'] == 1

    def test_mismatched_record_rejected(self, record_factory):
        store = AnalysisResultStore()
        record = record_factory(fingerprint="b" * 64)
        with pytest.raises(StoreError, match="does not match"):
            store.get_or_compute("a" * 64, record.model_version, lambda: record)


class TestJSONBackend:

    def test_record_persists_across_stores(self, tmp_path, record_factory):
        record = record_factory()
        first = AnalysisResultStore(backend=JSONRecordWriter(tmp_path))
        first.get_or_compute(record.fingerprint, record.model_version, lambda: record)

        path = tmp_path / record.model_version / f"{record.fingerprint}.json"
        assert path.exists()

        second = AnalysisResultStore(backend=JSONRecordWriter(tmp_path))

        def fail():
            raise AssertionError("should load from backend")

        loaded = second.get_or_compute(record.fingerprint, record.model_version, fail)
        assert loaded.to_dict() == record.to_dict()
        assert second.get_stats()['computations'] == 0

    def test_get_falls_through_to_backend(self, tmp_path, record_factory):
        record = record_factory()
        JSONRecordWriter(tmp_path).save(record)
        store = AnalysisResultStore(backend=JSONRecordWriter(tmp_path))
        assert store.get(record.fingerprint, record.model_version).to_dict() == record.to_dict()
        assert store.contains(record.fingerprint, record.model_version)

    def test_unreadable_file_ignored(self, tmp_path, record_factory):
        record = record_factory()
        writer = JSONRecordWriter(tmp_path)
        path = writer.path_for(record.fingerprint, record.model_version)
        path.parent.mkdir(parents=True)
        path.write_text("{not json", encoding="utf-8")
        assert writer.load(record.fingerprint, record.model_version) is None

    def test_invalid_fingerprint_rejected(self, tmp_path):
        with pytest.raises(StoreError):
            JSONRecordWriter(tmp_path).path_for("../escape", "v1")

    def test_iter_keys(self, tmp_path, record_factory):
        writer = JSONRecordWriter(tmp_path)
        writer.save(record_factory(fingerprint="a" * 64))
        writer.save(record_factory(fingerprint="b" * 64))
        assert list(writer.iter_keys()) == [("a" * 64, "test-model"), ("b" * 64, "test-model")]

    def test_save_failure_is_store_error(self, tmp_path, record_factory):
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not a directory")
        writer = JSONRecordWriter(Path(blocker))
        with pytest.raises(StoreError):
            writer.save(record_factory())


class TestCreateStore:

    def test_memory_by_default(self):
        assert create_store().backend is None

    def test_json_backend(self, tmp_path):
        store = create_store({'backend': 'json', 'directory': str(tmp_path)})
        assert isinstance(store.backend, JSONRecordWriter)

    def test_json_backend_requires_directory(self):
        with pytest.raises(StoreError):
            create_store({'backend': 'json'})
