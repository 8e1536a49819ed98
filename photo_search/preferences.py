import logging

import numpy as np

from config import DISLIKE_TAG
from vector_store import VectorStore

logger = logging.getLogger(__name__)


def mean_vector(vectors: list[np.ndarray]) -> np.ndarray:
    """Per-dimension mean, truncated to the shortest vector. Empty in, empty out."""
    if not vectors:
        return np.zeros(0, dtype=np.float32)
    dim = min(len(v) for v in vectors)
    if dim == 0:
        return np.zeros(0, dtype=np.float32)
    stacked = np.stack([np.asarray(v[:dim], dtype=np.float64) for v in vectors])
    return stacked.mean(axis=0).astype(np.float32)


class PreferenceModel:
    """Like/dislike feedback stored as copies of the photo's embedding.

    Search only consumes the dislike centroid. Other tags are recorded and
    their centroids are available, but nothing ranks by them.
    """

    def __init__(self, store: VectorStore):
        self._store = store

    def record_feedback(self, image_id: str, tag: str = DISLIKE_TAG) -> bool:
        embedding = self._store.get_embedding(image_id)
        if embedding is None or embedding.size == 0:
            logger.info("No embedding for %s yet, feedback %r not recorded", image_id, tag)
            return False
        self._store.insert_preference(image_id, tag, embedding)
        return True

    def centroid(self, tag: str = DISLIKE_TAG) -> np.ndarray:
        return mean_vector(self._store.preference_embeddings(tag))
