"""Score every indexed photo against a set of text labels.

Scores go to ``image_labels`` and are safe to recompute: each label's old
rows are cleared before new ones are written, all in one batch.
"""

import logging
from dataclasses import dataclass, field

import numpy as np

from config import LABEL_THRESHOLD, MAX_LABELS
from embedding import EmbedError, EmbeddingProvider, embed_text_warm
from expansion import PlanningError
from search import cosine_similarity
from vector_store import StoreError, VectorStore

logger = logging.getLogger(__name__)

NO_LABEL_EMBEDDINGS = "No embeddings for labels"


@dataclass
class LabelCount:
    label: str
    count: int
    top_score: float


@dataclass
class CategorizeReport:
    labels: list[str] = field(default_factory=list)
    counts: list[LabelCount] = field(default_factory=list)
    message: str = ""


def categorize(
    store: VectorStore,
    embedder: EmbeddingProvider,
    labels: list[str],
    threshold: float = LABEL_THRESHOLD,
) -> CategorizeReport:
    labels = list(dict.fromkeys(s.strip() for s in labels if s and s.strip()))[:MAX_LABELS]
    if not labels:
        return CategorizeReport(message="No labels")

    images = [(image_id, emb) for image_id, _uri, emb in store.scan()]
    if not images:
        return CategorizeReport(labels=labels, message="No indexed images")

    label_vectors: dict[str, np.ndarray] = {}
    for label in labels:
        try:
            vec = np.asarray(embed_text_warm(embedder, label), dtype=np.float32).ravel()
        except EmbedError as exc:
            logger.warning("Skipping label %r: %s", label, exc)
            continue
        if vec.size:
            label_vectors[label] = vec
    if not label_vectors:
        logger.warning("None of %d labels could be embedded", len(labels))
        return CategorizeReport(labels=labels, message=NO_LABEL_EMBEDDINGS)

    counts: list[LabelCount] = []
    store.begin_batch()
    try:
        for label, vec in label_vectors.items():
            store.clear_labels(label)
            top = 0.0
            matched = 0
            for image_id, emb in images:
                score = cosine_similarity(vec, emb)
                if score >= threshold:
                    matched += 1
                top = max(top, score)
                store.insert_label_score(image_id, label, score)
            counts.append(LabelCount(label=label, count=matched, top_score=top))
        store.commit_batch()
    except StoreError:
        logger.error("Categorization failed, rolling back", exc_info=True)
        store.rollback_batch()
        raise

    counts.sort(key=lambda c: (-c.count, -c.top_score))
    message = f"Categorized {len(images)} images over {len(label_vectors)} labels."
    logger.info(message)
    return CategorizeReport(labels=labels, counts=counts, message=message)


def categorize_from_prompt(
    store: VectorStore,
    embedder: EmbeddingProvider,
    expander,
    prompt: str,
    threshold: float = LABEL_THRESHOLD,
) -> CategorizeReport:
    """Ask the expander for labels describing the prompt, then categorize."""
    try:
        labels = expander.expand_labels(prompt)
    except PlanningError as exc:
        logger.warning("Label expansion failed: %s", exc)
        labels = []
    return categorize(store, embedder, labels, threshold)
