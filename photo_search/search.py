"""Brute-force cosine search over every stored embedding.

    base    = max over query phrases of cos(phrase, photo)
    penalty = cos(dislike centroid, photo) * penalty_factor
    score   = base - penalty     kept if >= threshold, sorted desc, capped
"""

import logging
from dataclasses import dataclass, field

import numpy as np

from config import DEFAULT_LIMIT, DEFAULT_THRESHOLD, DISLIKE_TAG, PENALTY_FACTOR
from preferences import PreferenceModel
from vector_store import SearchFilter, VectorStore

logger = logging.getLogger(__name__)


def cosine_similarity(a, b) -> float:
    """dot(a, b) / (|a| |b|) over the common prefix. 0.0 for empty or zero vectors."""
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    n = min(a.size, b.size)
    if n == 0:
        return 0.0
    a = a[:n]
    b = b[:n]
    denom = np.linalg.norm(a) * np.linalg.norm(b)
    if denom == 0 or not np.isfinite(denom):
        return 0.0
    sim = float(np.dot(a, b) / denom)
    if not np.isfinite(sim):
        return 0.0
    return max(-1.0, min(1.0, sim))


@dataclass
class SearchResult:
    id: str
    uri: str
    score: float
    phrase: str = ""
    base_score: float = 0.0
    penalty: float = 0.0


@dataclass
class SearchOutcome:
    results: list[SearchResult] = field(default_factory=list)
    candidates: int = 0
    matched: int = 0


class SimilaritySearchEngine:
    def __init__(self, store: VectorStore, preferences: PreferenceModel | None = None):
        self._store = store
        self._preferences = preferences

    def _dislike_centroid(self, tag: str) -> np.ndarray | None:
        if self._preferences is None:
            return None
        centroid = self._preferences.centroid(tag)
        return centroid if centroid.size > 0 else None

    def search(
        self,
        query_vectors: list[np.ndarray],
        phrases: list[str] | None = None,
        search_filter: SearchFilter | None = None,
        threshold: float = DEFAULT_THRESHOLD,
        limit: int = DEFAULT_LIMIT,
        penalty_factor: float = PENALTY_FACTOR,
        dislike_tag: str = DISLIKE_TAG,
    ) -> SearchOutcome:
        if limit is not None and limit < 0:
            raise ValueError(f"limit must be non-negative, got {limit}")
        queries = [np.asarray(q, dtype=np.float32).ravel() for q in query_vectors]
        queries = [q for q in queries if q.size > 0]
        if not queries:
            return SearchOutcome()
        phrases = list(phrases or [])

        centroid = self._dislike_centroid(dislike_tag)

        scored: list[SearchResult] = []
        candidates = 0
        for image_id, uri, embedding in self._store.scan(search_filter):
            candidates += 1
            sims = [cosine_similarity(q, embedding) for q in queries]
            best = int(np.argmax(sims))
            base = sims[best]
            penalty = 0.0
            if centroid is not None:
                penalty = cosine_similarity(centroid, embedding) * penalty_factor
            final = base - penalty
            if final < threshold:
                continue
            scored.append(SearchResult(
                id=image_id,
                uri=uri,
                score=final,
                phrase=phrases[best] if best < len(phrases) else "",
                base_score=base,
                penalty=penalty,
            ))

        scored.sort(key=lambda r: (-r.score, r.id))
        results = scored[:limit] if limit is not None else scored
        logger.debug(
            "Search: %d candidates, %d matched, returning %d",
            candidates, len(scored), len(results),
        )
        return SearchOutcome(results=results, candidates=candidates, matched=len(scored))
