"""Turns a raw user query into phrases and filters, then runs the search.

Planning never fails outright: any expander error, timeout or malformed
answer degrades to a literal single-phrase search with no filters.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field

import numpy as np

from config import (
    DEFAULT_LIMIT,
    DEFAULT_THRESHOLD,
    EXPANSION_TIMEOUT_SECONDS,
    MAX_PHRASES,
    PENALTY_FACTOR,
)
from embedding import EmbedError, EmbeddingProvider, embed_text_warm
from expansion import PhraseExpander, PlanningError
from search import SearchResult, SimilaritySearchEngine
from transcription import Transcriber
from vector_store import SearchFilter

logger = logging.getLogger(__name__)


@dataclass
class QueryPlan:
    phrases: list[str]
    filter: SearchFilter = field(default_factory=SearchFilter)


@dataclass
class QueryResult:
    results: list[SearchResult] = field(default_factory=list)
    phrases_used: list[str] = field(default_factory=list)
    filter: SearchFilter = field(default_factory=SearchFilter)
    message: str = ""
    candidates: int = 0
    matched: int = 0
    transcript: str | None = None


def _as_epoch_ms(value, name: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PlanningError(f"{name} is not a number: {value!r}")
    return int(value)


def validate_expansion(raw_query: str, response) -> QueryPlan:
    """Check an expander answer and turn it into a plan. Raises PlanningError."""
    if not isinstance(response, dict):
        raise PlanningError(f"Expansion is not an object: {type(response).__name__}")

    phrases = response.get("phrases")
    if phrases is None:
        phrases = []
    if not isinstance(phrases, list):
        raise PlanningError("Expansion phrases is not a list")
    cleaned = [p.strip() for p in phrases if isinstance(p, str) and p.strip()]
    if not cleaned:
        cleaned = [raw_query]

    city = response.get("city")
    if city is not None and not isinstance(city, str):
        raise PlanningError(f"Expansion city is not a string: {city!r}")

    start_ms = end_ms = None
    time_range = response.get("time_range")
    if time_range is not None:
        if not isinstance(time_range, (list, tuple)) or len(time_range) != 2:
            raise PlanningError(f"Expansion time_range is malformed: {time_range!r}")
        start_ms = _as_epoch_ms(time_range[0], "time_range start")
        end_ms = _as_epoch_ms(time_range[1], "time_range end")
    else:
        start_ms = _as_epoch_ms(response.get("start_ms"), "start_ms")
        end_ms = _as_epoch_ms(response.get("end_ms"), "end_ms")
    if start_ms is not None and end_ms is not None and start_ms > end_ms:
        raise PlanningError(f"Expansion time range is inverted: {start_ms} > {end_ms}")

    return QueryPlan(
        phrases=list(dict.fromkeys(cleaned))[:MAX_PHRASES],
        filter=SearchFilter(city=(city or "").strip() or None, start_ms=start_ms, end_ms=end_ms),
    )


class QueryPlanner:
    def __init__(
        self,
        expander: PhraseExpander | None,
        embedder: EmbeddingProvider,
        engine: SimilaritySearchEngine,
        transcriber: Transcriber | None = None,
        expansion_timeout: float = EXPANSION_TIMEOUT_SECONDS,
    ):
        self._expander = expander
        self._embedder = embedder
        self._engine = engine
        self._transcriber = transcriber
        self._expansion_timeout = expansion_timeout
        self._pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="expand")

    # -- planning --

    def plan(self, raw_query: str) -> QueryPlan:
        literal = QueryPlan(phrases=[raw_query])
        if self._expander is None:
            return literal
        future = self._pool.submit(self._expander.expand, raw_query)
        try:
            response = future.result(timeout=self._expansion_timeout)
            return validate_expansion(raw_query, response)
        except FutureTimeout:
            logger.warning("Query expansion timed out after %.1fs", self._expansion_timeout)
        except PlanningError as exc:
            logger.warning("Query expansion unusable, searching literally: %s", exc)
        except Exception:
            logger.warning("Query expansion failed, searching literally", exc_info=True)
        return literal

    # -- embedding --

    def _embed_phrase(self, phrase: str) -> np.ndarray | None:
        try:
            vector = embed_text_warm(self._embedder, phrase)
        except EmbedError as exc:
            logger.warning("Embedding failed for phrase %r: %s", phrase, exc)
            return None
        vector = np.asarray(vector, dtype=np.float32).ravel()
        return vector if vector.size > 0 else None

    # -- search --

    def search(
        self,
        raw_query: str,
        threshold: float | None = None,
        limit: int | None = None,
        penalty_factor: float | None = None,
    ) -> QueryResult:
        if limit is not None and limit < 0:
            raise ValueError(f"limit must be non-negative, got {limit}")
        if not raw_query or not raw_query.strip():
            return QueryResult(message="Empty query")
        raw_query = raw_query.strip()

        plan = self.plan(raw_query)
        vectors: list[np.ndarray] = []
        used: list[str] = []
        for phrase in plan.phrases:
            vector = self._embed_phrase(phrase)
            if vector is not None:
                vectors.append(vector)
                used.append(phrase)

        if not vectors:
            return QueryResult(filter=plan.filter, message="No embeddings for phrases")

        outcome = self._engine.search(
            vectors,
            phrases=used,
            search_filter=plan.filter,
            threshold=DEFAULT_THRESHOLD if threshold is None else threshold,
            limit=DEFAULT_LIMIT if limit is None else limit,
            penalty_factor=PENALTY_FACTOR if penalty_factor is None else penalty_factor,
        )
        noun = "phrase" if len(plan.phrases) == 1 else "phrases"
        message = (
            f"Expanded to {len(plan.phrases)} {noun}; matched {outcome.matched} of "
            f"{outcome.candidates} candidates; returning {len(outcome.results)}."
        )
        logger.info("Search %r: %s", raw_query, message)
        return QueryResult(
            results=outcome.results,
            phrases_used=used,
            filter=plan.filter,
            message=message,
            candidates=outcome.candidates,
            matched=outcome.matched,
        )

    def search_audio(self, audio_path: str, **kwargs) -> QueryResult:
        if self._transcriber is None:
            return QueryResult(message="Speech search unavailable")
        try:
            transcript = (self._transcriber.transcribe(audio_path) or "").strip()
        except Exception:
            logger.warning("Transcription failed for %s", audio_path, exc_info=True)
            return QueryResult(message="Transcription failed", transcript="")
        if not transcript:
            return QueryResult(message="Empty transcript", transcript="")
        result = self.search(transcript, **kwargs)
        result.transcript = transcript
        return result
