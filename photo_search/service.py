"""HTTP service daemon for photo-search.

Owns the store, embedding provider, indexing pipeline and query planner.
Only one instance should run at a time.

    uv run python service.py

Startup order:
    1. Start uvicorn  -- HTTP is up immediately
    2. Background thread: open the store, detect the embedding provider
    3. ensure_up_to_date() hands any indexing run to another background thread
    Handlers return {"loading": true} until the engine is ready.
"""

import asyncio
import logging
import signal
import sys
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from categorize import NO_LABEL_EMBEDDINGS, categorize, categorize_from_prompt
from config import (
    ALLOW_FALLBACK_PROVIDER,
    DB_FILE,
    DISLIKE_TAG,
    EMBEDDING_PROVIDER,
    LEGACY_CACHE_FILE,
    LLM_API_KEY,
    PHOTO_FOLDERS,
    SERVICE_HOST,
    SERVICE_PORT,
    TRANSCRIBER,
)
from embedding import SerializedEmbedder
from expansion import KeywordExpander, LLMExpander
from geo import CityGeocoder
from indexer import IndexingPipeline
from photo_source import FolderPhotoSource
from planner import QueryPlanner
from preferences import PreferenceModel
from search import SimilaritySearchEngine
from transcription import create_transcriber
from vector_store import StoreError, VectorStore

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    store: VectorStore
    embedder: SerializedEmbedder
    pipeline: IndexingPipeline
    preferences: PreferenceModel
    planner: QueryPlanner
    expander: object

    def close(self) -> None:
        self.pipeline.stop()
        self.embedder.shutdown()
        self.store.close()


def build_engine(
    db_path: Path = DB_FILE,
    folders: list[str] | None = None,
    provider_name: str = EMBEDDING_PROVIDER,
    transcriber_name: str = TRANSCRIBER,
) -> Engine:
    from models import create_provider

    provider = create_provider(provider_name, allow_fallback=ALLOW_FALLBACK_PROVIDER)
    logger.info("Embedding provider: %s (%d dims)", provider.name, provider.dimension)
    store = VectorStore(db_path)
    embedder = SerializedEmbedder(provider)
    transcriber = create_transcriber(transcriber_name)

    pipeline = IndexingPipeline(
        store,
        embedder,
        FolderPhotoSource(folders if folders is not None else PHOTO_FOLDERS),
        geocoder=CityGeocoder(),
        legacy_cache=LEGACY_CACHE_FILE,
        transcriber=transcriber,
    )
    preferences = PreferenceModel(store)
    if LLM_API_KEY:
        expander = LLMExpander()
    else:
        expander = KeywordExpander(known_cities=store.list_cities)
    planner = QueryPlanner(
        expander, embedder, SimilaritySearchEngine(store, preferences), transcriber=transcriber
    )
    return Engine(store, embedder, pipeline, preferences, planner, expander)


def run_in_background(fn: Callable[[], object], name: str = "indexing") -> threading.Thread:
    def _target():
        try:
            fn()
        except Exception:
            logger.error("Background task %s failed", name, exc_info=True)

    thread = threading.Thread(target=_target, name=name, daemon=True)
    thread.start()
    return thread


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

_LOADING = {"loading": True}


def _engine(request: Request) -> Engine | None:
    return getattr(request.app.state, "engine", None)


def _loading() -> JSONResponse:
    return JSONResponse(_LOADING, status_code=503)


def _query_result_json(result) -> dict:
    return {
        "results": [asdict(r) for r in result.results],
        "phrases_used": result.phrases_used,
        "filter": asdict(result.filter),
        "message": result.message,
        "candidates": result.candidates,
        "matched": result.matched,
        "transcript": result.transcript,
    }


async def health(request: Request) -> JSONResponse:
    return JSONResponse({"ok": True, "ready": _engine(request) is not None})


async def status(request: Request) -> JSONResponse:
    engine = _engine(request)
    if engine is None:
        return _loading()
    data = await asyncio.to_thread(engine.pipeline.status)
    return JSONResponse(data)


async def search(request: Request) -> JSONResponse:
    engine = _engine(request)
    if engine is None:
        return _loading()
    body = await request.json()
    try:
        result = await asyncio.to_thread(
            engine.planner.search,
            body.get("query", ""),
            body.get("threshold"),
            body.get("limit"),
        )
    except ValueError as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    return JSONResponse(_query_result_json(result))


async def search_audio(request: Request) -> JSONResponse:
    engine = _engine(request)
    if engine is None:
        return _loading()
    body = await request.json()
    result = await asyncio.to_thread(engine.planner.search_audio, body["path"])
    return JSONResponse(_query_result_json(result))


async def start_index(request: Request) -> JSONResponse:
    engine = _engine(request)
    if engine is None:
        return _loading()
    if engine.pipeline.running:
        return JSONResponse({"started": False, "reason": "already running"}, status_code=409)
    request.app.state.schedule(engine.pipeline.start)
    return JSONResponse({"started": True})


async def stop_index(request: Request) -> JSONResponse:
    engine = _engine(request)
    if engine is None:
        return _loading()
    engine.pipeline.stop()
    return JSONResponse({"stopping": engine.pipeline.running})


async def feedback(request: Request) -> JSONResponse:
    engine = _engine(request)
    if engine is None:
        return _loading()
    body = await request.json()
    recorded = await asyncio.to_thread(
        engine.preferences.record_feedback, body["image_id"], body.get("tag", DISLIKE_TAG)
    )
    return JSONResponse({"recorded": recorded})


async def categorize_images(request: Request) -> JSONResponse:
    engine = _engine(request)
    if engine is None:
        return _loading()
    body = await request.json()
    try:
        if body.get("labels"):
            report = await asyncio.to_thread(
                categorize, engine.store, engine.embedder, list(body["labels"])
            )
        else:
            report = await asyncio.to_thread(
                categorize_from_prompt,
                engine.store, engine.embedder, engine.expander, body.get("prompt", ""),
            )
    except StoreError as exc:
        return JSONResponse({"error": str(exc)}, status_code=500)
    if report.message == NO_LABEL_EMBEDDINGS:
        return JSONResponse(asdict(report), status_code=503)
    return JSONResponse(asdict(report))


async def delete_photo(request: Request) -> JSONResponse:
    engine = _engine(request)
    if engine is None:
        return _loading()
    body = await request.json()
    await asyncio.to_thread(engine.store.delete_photo, body["image_id"])
    return JSONResponse({"deleted": body["image_id"]})


routes = [
    Route("/health", health, methods=["GET"]),
    Route("/status", status, methods=["GET"]),
    Route("/search", search, methods=["POST"]),
    Route("/search-audio", search_audio, methods=["POST"]),
    Route("/index", start_index, methods=["POST"]),
    Route("/stop", stop_index, methods=["POST"]),
    Route("/feedback", feedback, methods=["POST"]),
    Route("/categorize", categorize_images, methods=["POST"]),
    Route("/delete", delete_photo, methods=["POST"]),
]


def create_app(
    engine: Engine | None = None,
    schedule: Callable[[Callable[[], object]], object] = run_in_background,
) -> Starlette:
    """Build the app. Without an engine, call start_background() to load one."""
    app = Starlette(routes=routes)
    app.state.engine = engine
    app.state.schedule = schedule
    return app


def start_background(app: Starlette, factory: Callable[[], Engine] = build_engine) -> None:
    """Build the engine off the event loop, then bring the index up to date.

    Handlers return 503 until the engine is attached to the app.
    """
    def _load():
        engine = factory()
        app.state.engine = engine
        logger.info("Engine ready: %d photos indexed", engine.store.count())
        engine.pipeline.ensure_up_to_date(schedule=app.state.schedule)

    run_in_background(_load, name="background-startup")


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))

    app = create_app()
    start_background(app)

    logger.info("Starting photo-search service on %s:%d", SERVICE_HOST, SERVICE_PORT)
    uvicorn.run(app, host=SERVICE_HOST, port=SERVICE_PORT, log_level="warning")
