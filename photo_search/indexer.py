"""Incremental indexing pipeline.

Embeds photos the store has not seen yet, in small batches that each commit
as one transaction. Append-only: photos that disappeared from the source
are never removed here (see VectorStore.delete_photo).

    warm up image + speech models
    all photos - (store ids | legacy ids)  ->  to_process
    for each batch of INDEX_BATCH_SIZE:
        BEGIN
        embed (FIFO queue) -> locate -> geocode -> upsert     per photo
        COMMIT  (rollback + move on if anything in the store fails)
    last_indexed_at = now
"""

import enum
import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable

import numpy as np

from config import INDEX_BATCH_SIZE
from embedding import (
    EmbedError,
    EmbeddingProvider,
    ModelNotReady,
    SerializedEmbedder,
    UnsupportedItem,
)
from geo import Geocoder
from legacy import load_legacy_ids
from photo_source import PhotoRecord, PhotoSource
from vector_store import IndexEntry, StoreError, VectorStore

logger = logging.getLogger(__name__)

LAST_PROGRESS_KEY = "last_progress"
PROVIDER_KEY = "embedding_provider"


class PipelineState(enum.Enum):
    IDLE = "idle"
    WARMING = "warming"
    INGESTING = "ingesting"
    STOPPED = "stopped"


class Stage(str, enum.Enum):
    MODEL_WARMUP = "model_warmup"
    INDEXING = "indexing"


class ItemOutcome(enum.Enum):
    INDEXED = "indexed"
    SKIPPED_NOT_READY = "model_not_ready"
    SKIPPED_TRANSIENT = "transient"
    SKIPPED_UNSUPPORTED = "unsupported"
    SKIPPED_EMPTY = "empty_embedding"


@dataclass
class IndexingProgress:
    total: int
    processed: int
    stage: Stage
    stage_progress: float
    stage_name: str = ""
    current: str | None = None
    error: str | None = None


@dataclass
class RunReport:
    total: int = 0
    to_process: int = 0
    indexed: int = 0
    skipped: dict[str, int] = field(default_factory=dict)
    failed: int = 0  # photos lost to rolled-back batches
    batches_committed: int = 0
    batches_failed: int = 0
    stopped: bool = False
    elapsed: float = 0.0

    @property
    def skipped_total(self) -> int:
        return sum(self.skipped.values())


ProgressCallback = Callable[[IndexingProgress], None]


class IndexingPipeline:
    """Owns one indexing state machine. Construct once per store and share it."""

    def __init__(
        self,
        store: VectorStore,
        embedder: EmbeddingProvider,
        photo_source: PhotoSource,
        geocoder: Geocoder | None = None,
        transcriber=None,
        legacy_cache: Path | None = None,
        batch_size: int = INDEX_BATCH_SIZE,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self._store = store
        if isinstance(embedder, SerializedEmbedder):
            self._embedder = embedder
        else:
            self._embedder = SerializedEmbedder(embedder)
        self._source = photo_source
        self._geocoder = geocoder
        self._transcriber = transcriber
        self._legacy_cache = legacy_cache
        self._batch_size = batch_size

        self._run_lock = threading.Lock()
        self._stop = threading.Event()
        self._state = PipelineState.IDLE
        self._progress: IndexingProgress | None = None
        self._callback: ProgressCallback | None = None
        self._last_report: RunReport | None = None

    # -- state --

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    @property
    def progress(self) -> IndexingProgress | None:
        return self._progress

    @property
    def embedder(self) -> SerializedEmbedder:
        return self._embedder

    def stop(self) -> None:
        """Ask the current run to stop at the next photo or batch boundary."""
        if self.running:
            logger.info("Stop requested")
        self._stop.set()

    def _emit(self, progress: IndexingProgress) -> None:
        self._progress = progress
        if self._callback:
            self._callback(progress)

    # -- diffing --

    @staticmethod
    def _dedupe(photos: list[PhotoRecord]) -> list[PhotoRecord]:
        seen: set[str] = set()
        unique = []
        for p in photos:
            if p.id in seen:
                continue
            seen.add(p.id)
            unique.append(p)
        return unique

    def _indexed_ids(self) -> set[str]:
        return self._store.list_indexed_ids() | load_legacy_ids(self._legacy_cache)

    def pending(self, photos: list[PhotoRecord]) -> list[PhotoRecord]:
        """Photos not yet indexed, in source order."""
        indexed = self._indexed_ids()
        return [p for p in self._dedupe(photos) if p.id not in indexed]

    # -- run --

    def start(self, progress_callback: ProgressCallback | None = None) -> RunReport | None:
        """Run one indexing pass. Returns None if a pass is already running."""
        if not self._run_lock.acquire(blocking=False):
            logger.info("Indexing already in progress")
            return None

        self._stop.clear()
        self._callback = progress_callback
        report = RunReport()
        started = time.time()
        try:
            self._state = PipelineState.WARMING
            self._warm_up()
            self._reconcile_provider()

            photos = self._dedupe(self._source.list_all())
            to_process = self.pending(photos)
            positions = {p.id: i for i, p in enumerate(photos)}
            report.total = len(photos)
            report.to_process = len(to_process)
            logger.info(
                "Total photos: %d, already indexed: %d, to process: %d",
                len(photos), len(photos) - len(to_process), len(to_process),
            )

            self._state = PipelineState.INGESTING
            self._emit(IndexingProgress(
                total=len(photos), processed=0, stage=Stage.INDEXING,
                stage_progress=0.0, stage_name="Analyzing images",
            ))

            for batch_start in range(0, len(to_process), self._batch_size):
                if self._stop.is_set():
                    report.stopped = True
                    break
                batch = to_process[batch_start:batch_start + self._batch_size]
                logger.info(
                    "Processing batch %d: photos %d-%d/%d",
                    batch_start // self._batch_size + 1,
                    batch_start + 1, batch_start + len(batch), len(to_process),
                )
                if not self._run_batch(batch, positions, len(photos), report):
                    report.stopped = True
                    break

            if report.stopped or self._stop.is_set():
                report.stopped = True
                self._state = PipelineState.STOPPED
                logger.info("Indexing stopped: %d indexed this run", report.indexed)
                return report

            self._emit(IndexingProgress(
                total=len(photos), processed=len(photos), stage=Stage.INDEXING,
                stage_progress=1.0, stage_name="Done",
            ))
            self._store.set_last_indexed_at(int(time.time() * 1000))
            self._state = PipelineState.IDLE
            logger.info(
                "Indexing completed: %d indexed, %d skipped, %d batches failed",
                report.indexed, report.skipped_total, report.batches_failed,
            )
            return report
        except BaseException:
            self._state = PipelineState.IDLE
            raise
        finally:
            report.elapsed = time.time() - started
            self._last_report = report
            self._callback = None
            self._run_lock.release()

    def _provider_changed(self) -> bool:
        stored = self._store.get_meta(PROVIDER_KEY)
        return stored is not None and stored != self._embedder.name

    def _reconcile_provider(self) -> None:
        """Drop embeddings written by a different provider so they get re-embedded."""
        if self._provider_changed():
            stored = self._store.get_meta(PROVIDER_KEY)
            dropped = self._store.reset_embeddings()
            logger.warning(
                "Embedding provider changed from %s to %s, re-indexing %d photos",
                stored, self._embedder.name, dropped,
            )
        self._store.set_meta(PROVIDER_KEY, self._embedder.name)

    def _warm_up(self) -> None:
        def _stage(name: str):
            def _report(fraction: float) -> None:
                self._emit(IndexingProgress(
                    total=0, processed=0, stage=Stage.MODEL_WARMUP,
                    stage_progress=min(max(float(fraction), 0.0), 1.0),
                    stage_name=f"Loading {name}: {round(fraction * 100)}%",
                ))
            return _report

        # No separate text warm-up; a cold text encoder loads on the first search.
        image_report = _stage("vision model")
        image_report(0.0)
        self._embedder.warm_up(image_report)

        if self._transcriber is not None:
            speech_report = _stage("speech model")
            speech_report(0.0)
            try:
                self._transcriber.warm_up(speech_report)
            except Exception:
                logger.warning("Speech model warm-up failed, will retry when needed", exc_info=True)

    def _run_batch(
        self,
        batch: list[PhotoRecord],
        positions: dict[str, int],
        total: int,
        report: RunReport,
    ) -> bool:
        """Index one batch in a single transaction. False if a stop ended it."""
        try:
            self._store.begin_batch()
        except StoreError:
            logger.error("Cannot open batch, skipping %d photos", len(batch), exc_info=True)
            report.batches_failed += 1
            report.failed += len(batch)
            return True

        outcomes: list[ItemOutcome] = []
        try:
            for photo in batch:
                if self._stop.is_set():
                    self._store.rollback_batch()
                    logger.info("Rolled back batch of %d photos on stop", len(batch))
                    return False

                outcomes.append(self._index_one(photo))

                processed = max(
                    self._progress.processed if self._progress else 0,
                    positions[photo.id] + 1,
                )
                self._emit(IndexingProgress(
                    total=total,
                    processed=processed,
                    stage=Stage.INDEXING,
                    stage_progress=processed / total if total else 0.0,
                    stage_name=f"Analyzing images: {processed}/{total}",
                    current=photo.id,
                ))
            self._store.commit_batch()
        except StoreError as exc:
            logger.error("Batch failed, rolling back %d photos", len(batch), exc_info=True)
            self._rollback_quietly()
            report.batches_failed += 1
            report.failed += len(batch)
            if self._progress:
                self._progress.error = f"Batch failed: {exc}"
            return True
        except BaseException:
            self._rollback_quietly()
            raise

        report.batches_committed += 1
        for outcome in outcomes:
            if outcome is ItemOutcome.INDEXED:
                report.indexed += 1
            else:
                report.skipped[outcome.value] = report.skipped.get(outcome.value, 0) + 1
        self._persist_progress()
        return True

    def _rollback_quietly(self) -> None:
        if not self._store.in_batch:
            return
        try:
            self._store.rollback_batch()
        except StoreError:
            logger.error("Rollback failed", exc_info=True)

    def _persist_progress(self) -> None:
        if self._progress is None:
            return
        snapshot = {"total": self._progress.total, "processed": self._progress.processed}
        try:
            self._store.set_meta(LAST_PROGRESS_KEY, json.dumps(snapshot))
        except StoreError:
            logger.warning("Could not persist indexing progress", exc_info=True)

    # -- per photo --

    def _embed(self, photo: PhotoRecord) -> tuple[ItemOutcome, np.ndarray | None]:
        retried = False
        while True:
            try:
                vector = self._embedder.embed_image(photo.uri)
                break
            except ModelNotReady:
                if retried:
                    logger.warning("Model still not ready for %s, skipping", photo.id)
                    return ItemOutcome.SKIPPED_NOT_READY, None
                retried = True
                try:
                    self._embedder.warm_up()
                except Exception:
                    logger.warning("Warm-up retry failed for %s", photo.id, exc_info=True)
                    return ItemOutcome.SKIPPED_NOT_READY, None
            except UnsupportedItem as exc:
                logger.warning("Unsupported photo %s: %s", photo.id, exc)
                return ItemOutcome.SKIPPED_UNSUPPORTED, None
            except EmbedError as exc:
                logger.warning("Embedding failed for %s, will retry next run: %s", photo.id, exc)
                return ItemOutcome.SKIPPED_TRANSIENT, None
            except Exception:
                logger.error("Provider error embedding %s, will retry next run", photo.id, exc_info=True)
                return ItemOutcome.SKIPPED_TRANSIENT, None

        vector = np.asarray(vector, dtype=np.float32).ravel()
        if vector.size == 0:
            logger.warning("Empty embedding for %s, skipping", photo.id)
            return ItemOutcome.SKIPPED_EMPTY, None
        return ItemOutcome.INDEXED, vector

    def _locate(self, photo: PhotoRecord) -> tuple[float | None, float | None, str | None]:
        try:
            coords = self._source.get_asset_location(photo.id)
        except Exception:
            logger.debug("Location lookup failed for %s", photo.id, exc_info=True)
            coords = None
        if not coords:
            return None, None, None
        lat, lon = coords
        city = self._geocoder.city_for(lat, lon) if self._geocoder else None
        return lat, lon, city

    def _capture_time(self, photo: PhotoRecord) -> int:
        try:
            captured = self._source.get_capture_time(photo.id)
        except Exception:
            logger.debug("Capture time lookup failed for %s", photo.id, exc_info=True)
            captured = None
        return photo.created_at if captured is None else captured

    def _index_one(self, photo: PhotoRecord) -> ItemOutcome:
        outcome, vector = self._embed(photo)
        if vector is None:
            return outcome
        lat, lon, city = self._locate(photo)
        self._store.upsert_index_entry(IndexEntry(
            id=photo.id,
            uri=photo.uri,
            embedding=vector,
            timestamp=self._capture_time(photo),
            latitude=lat,
            longitude=lon,
            city=city,
        ))
        return outcome

    # -- startup check --

    def ensure_up_to_date(
        self,
        schedule: Callable[[Callable[[], object]], object] | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> dict:
        """Start a run if something is unindexed, no run ever finished, or the
        embedding provider changed since the last run.

        Does no embedding itself. With a schedule (e.g. a background thread
        launcher) the run is handed off and this returns immediately.
        """
        if self.running:
            return {"missing": None, "last_indexed_at": None, "started": False}
        try:
            missing = len(self.pending(self._source.list_all()))
            last_indexed = self._store.last_indexed_at()
            provider_changed = self._provider_changed()
        except (StoreError, OSError):
            logger.warning("Up-to-date check failed, not indexing", exc_info=True)
            return {"missing": None, "last_indexed_at": None, "started": False}

        needs_run = last_indexed is None or missing > 0 or provider_changed
        if needs_run:
            logger.info(
                "Index out of date (%d unindexed, provider changed: %s), starting run",
                missing, provider_changed,
            )
            run = lambda: self.start(progress_callback)  # noqa: E731
            if schedule is not None:
                schedule(run)
            else:
                run()
        return {"missing": missing, "last_indexed_at": last_indexed, "started": needs_run}

    # -- status --

    def status(self) -> dict:
        last_progress = self._store.get_meta(LAST_PROGRESS_KEY)
        return {
            "state": self._state.value,
            "running": self.running,
            "progress": asdict(self._progress) if self._progress else None,
            "last_progress": json.loads(last_progress) if last_progress else None,
            "last_indexed_at": self._store.last_indexed_at(),
            "provider": self._store.get_meta(PROVIDER_KEY),
            "indexed": self._store.count(),
            "last_run": asdict(self._last_report) if self._last_report else None,
        }
