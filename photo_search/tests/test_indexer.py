import json
import sys
from collections import Counter
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from embedding import (
    EmbeddingProvider,
    ModelNotReady,
    TransientEmbedError,
    UnsupportedItem,
)
from indexer import IndexingPipeline, PipelineState, Stage
from photo_source import PhotoRecord
from vector_store import IndexEntry, SearchFilter, StoreError, VectorStore


class _ListSource:
    def __init__(self, photos, locations=None, capture_times=None):
        self.photos = photos
        self.locations = locations or {}
        self.capture_times = capture_times or {}

    def list_all(self):
        return list(self.photos)

    def get_asset_location(self, photo_id):
        return self.locations.get(photo_id)

    def get_capture_time(self, photo_id):
        return self.capture_times.get(photo_id)


class _FakeProvider(EmbeddingProvider):
    name = "fake"
    dimension = 2

    def __init__(self, failures=None, name=None):
        if name is not None:
            self.name = name
        self.calls = Counter()
        self.warmups = 0
        self.failures = failures or {}

    def warm_up(self, progress_callback=None):
        self.warmups += 1
        if progress_callback:
            progress_callback(1.0)

    def embed_image(self, path):
        self.calls[path] += 1
        failure = self.failures.get(path)
        if failure == "empty":
            return np.zeros(0, dtype=np.float32)
        if failure is not None:
            raise failure
        return np.array([1.0, float(len(path))], dtype=np.float32)

    def embed_text(self, text):
        return np.array([1.0, 0.0], dtype=np.float32)


class _FakeGeocoder:
    def city_for(self, lat, lon):
        return "Paris"


def _photos(count: int) -> list[PhotoRecord]:
    return [PhotoRecord(id=f"p{i}", uri=f"p{i}", created_at=1000 + i) for i in range(count)]


def _pipeline(tmp_path, photos, provider=None, store=None, **kwargs):
    store = store or VectorStore(tmp_path / "index.sqlite")
    provider = provider or _FakeProvider()
    source = kwargs.pop("source", None) or _ListSource(photos)
    pipeline = IndexingPipeline(store, provider, source, **kwargs)
    return pipeline, store, provider


# -- diffing --


def test_indexes_only_missing_photos(tmp_path):
    pipeline, store, provider = _pipeline(tmp_path, _photos(3))
    pipeline.start()
    assert store.list_indexed_ids() == {"p0", "p1", "p2"}

    pipeline._source.photos = _photos(5)
    report = pipeline.start()

    assert report.to_process == 2
    assert report.indexed == 2
    assert store.count() == 5
    assert all(n == 1 for n in provider.calls.values())


def test_duplicate_photos_indexed_once(tmp_path):
    photos = _photos(2) + _photos(2)
    pipeline, store, provider = _pipeline(tmp_path, photos)
    report = pipeline.start()

    assert report.total == 2
    assert store.count() == 2
    assert provider.calls == Counter({"p0": 1, "p1": 1})


def test_legacy_ids_count_as_indexed(tmp_path):
    legacy = tmp_path / "photos.json"
    legacy.write_text(json.dumps([
        {"id": "p0", "imageEmbedding": [0.1, 0.2]},
        {"id": "p1", "imageEmbedding": []},
        {"id": "p2"},
    ]))
    pipeline, store, provider = _pipeline(tmp_path, _photos(3), legacy_cache=legacy)

    report = pipeline.start()

    assert report.to_process == 2
    assert store.list_indexed_ids() == {"p1", "p2"}
    assert "p0" not in provider.calls


def test_entries_carry_location_and_city(tmp_path):
    source = _ListSource(_photos(2), locations={"p0": (48.85, 2.35)})
    pipeline, store, _ = _pipeline(
        tmp_path, None, source=source, geocoder=_FakeGeocoder()
    )
    pipeline.start()

    assert store.list_cities() == ["Paris"]
    assert [row[0] for row in store.scan(SearchFilter(city="Paris"))] == ["p0"]
    assert [row[0] for row in store.scan(SearchFilter(start_ms=1001, end_ms=1001))] == ["p1"]


def test_capture_time_preferred_over_listing_time(tmp_path):
    source = _ListSource(_photos(2), capture_times={"p0": 5})
    pipeline, store, _ = _pipeline(tmp_path, None, source=source)
    pipeline.start()

    assert [row[0] for row in store.scan(SearchFilter(start_ms=0, end_ms=10))] == ["p0"]
    assert [row[0] for row in store.scan(SearchFilter(start_ms=1001, end_ms=1001))] == ["p1"]


# -- batches --


class _FailOnIdStore(VectorStore):
    def __init__(self, path, fail_id):
        super().__init__(path)
        self.fail_id = fail_id

    def upsert_index_entry(self, entry):
        if entry.id == self.fail_id:
            raise StoreError("disk I/O error")
        super().upsert_index_entry(entry)


def test_batch_is_atomic(tmp_path):
    store = _FailOnIdStore(tmp_path / "index.sqlite", fail_id="p6")
    pipeline, _, _ = _pipeline(tmp_path, _photos(12), store=store, batch_size=10)

    report = pipeline.start()

    # p0..p5 were written before p6 failed; the whole first batch is gone.
    assert store.list_indexed_ids() == {"p10", "p11"}
    assert report.batches_failed == 1
    assert report.failed == 10
    assert report.batches_committed == 1
    assert not store.in_batch


class _FailingCommitStore(VectorStore):
    fail_commits = 1

    def commit_batch(self):
        if self.fail_commits:
            self.fail_commits -= 1
            raise StoreError("database is locked")
        super().commit_batch()


def test_commit_failure_moves_on(tmp_path):
    store = _FailingCommitStore(tmp_path / "index.sqlite")
    pipeline, _, _ = _pipeline(tmp_path, _photos(4), store=store, batch_size=2)

    report = pipeline.start()

    assert store.list_indexed_ids() == {"p2", "p3"}
    assert report.batches_failed == 1
    assert report.indexed == 2
    assert store.last_indexed_at() is not None

    # The lost batch is picked up on the next run.
    pipeline.start()
    assert store.count() == 4


def test_rejects_bad_batch_size(tmp_path):
    with pytest.raises(ValueError):
        _pipeline(tmp_path, _photos(1), batch_size=0)


# -- stop / resume --


def test_stop_rolls_back_open_batch_and_resumes(tmp_path):
    pipeline, store, provider = _pipeline(tmp_path, _photos(5), batch_size=2)

    def on_progress(p):
        if p.stage == Stage.INDEXING and p.processed >= 3:
            pipeline.stop()

    report = pipeline.start(on_progress)

    assert report.stopped
    assert pipeline.state is PipelineState.STOPPED
    assert store.list_indexed_ids() == {"p0", "p1"}
    assert store.last_indexed_at() is None

    report = pipeline.start()

    assert not report.stopped
    assert report.to_process == 3
    assert store.count() == 5
    assert provider.calls["p0"] == 1
    assert provider.calls["p1"] == 1
    assert pipeline.state is PipelineState.IDLE


def test_start_is_single_flight(tmp_path):
    pipeline, _, _ = _pipeline(tmp_path, _photos(3))
    nested = []

    def on_progress(p):
        if p.stage == Stage.INDEXING and not nested:
            nested.append(pipeline.start())
            assert pipeline.running

    assert pipeline.start(on_progress) is not None
    assert nested == [None]
    assert not pipeline.running


# -- per-photo outcomes --


def test_skip_outcomes_counted(tmp_path):
    provider = _FakeProvider(failures={
        "p1": UnsupportedItem("corrupt"),
        "p2": TransientEmbedError("busy"),
        "p3": "empty",
    })
    pipeline, store, _ = _pipeline(tmp_path, _photos(5), provider=provider)

    report = pipeline.start()

    assert store.list_indexed_ids() == {"p0", "p4"}
    assert report.indexed == 2
    assert report.skipped == {"unsupported": 1, "transient": 1, "empty_embedding": 1}
    assert report.skipped_total == 3


def test_unexpected_provider_error_skips_photo(tmp_path):
    provider = _FakeProvider(failures={"p1": RuntimeError("CUDA out of memory")})
    pipeline, store, _ = _pipeline(tmp_path, _photos(3), provider=provider, batch_size=1)

    report = pipeline.start()

    assert store.list_indexed_ids() == {"p0", "p2"}
    assert report.skipped == {"transient": 1}
    assert report.batches_failed == 0
    assert pipeline.state is PipelineState.IDLE


def test_model_not_ready_warms_up_and_retries_once(tmp_path):
    class _ColdOnce(_FakeProvider):
        cold = True

        def embed_image(self, path):
            if self.cold:
                self.cold = False
                raise ModelNotReady("not loaded")
            return super().embed_image(path)

    provider = _ColdOnce()
    pipeline, store, _ = _pipeline(tmp_path, _photos(2), provider=provider)
    pipeline.start()

    assert store.count() == 2
    assert provider.warmups == 2


def test_model_never_ready_skips(tmp_path):
    provider = _FakeProvider(failures={"p0": ModelNotReady("not loaded")})
    pipeline, store, _ = _pipeline(tmp_path, _photos(2), provider=provider)

    report = pipeline.start()

    assert provider.calls["p0"] == 2
    assert store.list_indexed_ids() == {"p1"}
    assert report.skipped == {"model_not_ready": 1}


# -- progress --


def test_progress_is_monotonic_and_complete(tmp_path):
    pipeline, store, _ = _pipeline(tmp_path, _photos(7), batch_size=3)
    pipeline.start()

    seen = []
    pipeline._source.photos = _photos(12)
    pipeline.start(lambda p: seen.append(p))

    stages = [p.stage for p in seen]
    assert stages[0] == Stage.MODEL_WARMUP
    indexing = [p.processed for p in seen if p.stage == Stage.INDEXING]
    assert indexing[0] == 0
    assert indexing == sorted(indexing)
    assert indexing[-1] == 12
    assert all(p.total == 12 for p in seen if p.stage == Stage.INDEXING)


def test_transcriber_warm_up_failure_is_not_fatal(tmp_path):
    class _BrokenTranscriber:
        def warm_up(self, progress_callback=None):
            raise RuntimeError("no whisper weights")

    pipeline, store, _ = _pipeline(tmp_path, _photos(2), transcriber=_BrokenTranscriber())
    pipeline.start()
    assert store.count() == 2


# -- startup check --


def test_ensure_up_to_date_schedules_first_run(tmp_path):
    pipeline, store, _ = _pipeline(tmp_path, _photos(3))
    scheduled = []

    result = pipeline.ensure_up_to_date(schedule=scheduled.append)

    assert result["started"] is True
    assert result["missing"] == 3
    assert store.count() == 0
    scheduled[0]()
    assert store.count() == 3


def test_ensure_up_to_date_noop_when_current(tmp_path):
    pipeline, _, provider = _pipeline(tmp_path, _photos(3))
    pipeline.start()

    result = pipeline.ensure_up_to_date(schedule=lambda run: pytest.fail("should not run"))

    assert result["started"] is False
    assert result["missing"] == 0
    assert result["last_indexed_at"] is not None


def test_ensure_up_to_date_runs_after_interrupted_first_run(tmp_path):
    pipeline, store, _ = _pipeline(tmp_path, _photos(3))
    store.upsert_index_entry(IndexEntry(id="p0", uri="p0", embedding=[1.0, 0.0], timestamp=0))

    result = pipeline.ensure_up_to_date()

    assert result["started"] is True
    assert store.count() == 3
    assert store.last_indexed_at() is not None


def test_status_reports_counts(tmp_path):
    pipeline, _, _ = _pipeline(tmp_path, _photos(2))
    pipeline.start()

    status = pipeline.status()

    assert status["state"] == "idle"
    assert status["indexed"] == 2
    assert status["last_progress"] == {"total": 2, "processed": 2}
    assert status["last_run"]["indexed"] == 2


def test_ensure_up_to_date_resumes_after_stop(tmp_path):
    pipeline, store, provider = _pipeline(tmp_path, _photos(5), batch_size=2)

    def on_progress(p):
        if p.stage == Stage.INDEXING and p.processed >= 2:
            pipeline.stop()

    pipeline.start(on_progress)
    assert store.list_indexed_ids() == {"p0", "p1"}

    result = pipeline.ensure_up_to_date()

    assert result["missing"] == 3
    assert store.count() == 5
    assert sum(provider.calls.values()) == 5


# -- provider changes --


def test_provider_change_reembeds_everything(tmp_path):
    pipeline, store, _ = _pipeline(tmp_path, _photos(3), provider=_FakeProvider(name="a"))
    pipeline.start()
    assert pipeline.status()["provider"] == "a"

    provider = _FakeProvider(name="b")
    pipeline, _, _ = _pipeline(tmp_path, _photos(3), provider=provider, store=store)
    result = pipeline.ensure_up_to_date()

    assert result["started"] is True
    assert result["missing"] == 0
    assert sum(provider.calls.values()) == 3
    assert store.count() == 3
    assert store.get_meta("embedding_provider") == "b"


def test_same_provider_keeps_embeddings(tmp_path):
    pipeline, store, _ = _pipeline(tmp_path, _photos(2), provider=_FakeProvider(name="a"))
    pipeline.start()

    provider = _FakeProvider(name="a")
    pipeline, _, _ = _pipeline(tmp_path, _photos(2), provider=provider, store=store)
    pipeline.start()

    assert sum(provider.calls.values()) == 0
    assert store.count() == 2
