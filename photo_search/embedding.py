"""Embedding provider interface, error kinds and the serialized image queue."""

import enum
import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable

import numpy as np

logger = logging.getLogger(__name__)

WarmupCallback = Callable[[float], None]


class EmbedErrorKind(enum.Enum):
    MODEL_NOT_READY = "model_not_ready"
    TRANSIENT = "transient"
    UNSUPPORTED = "unsupported"


class EmbedError(Exception):
    kind: EmbedErrorKind = EmbedErrorKind.TRANSIENT

    def __init__(self, message: str = "", kind: EmbedErrorKind | None = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class ModelNotReady(EmbedError):
    """Model is not loaded yet. Warm it up and retry once."""

    kind = EmbedErrorKind.MODEL_NOT_READY


class TransientEmbedError(EmbedError):
    kind = EmbedErrorKind.TRANSIENT


class UnsupportedItem(EmbedError):
    """The item can never be embedded by this provider."""

    kind = EmbedErrorKind.UNSUPPORTED


class EmbeddingProvider(ABC):
    """Base interface for text and image encoders sharing one vector space."""

    name: str
    dimension: int

    @property
    def loaded(self) -> bool:
        return True

    def warm_up(self, progress_callback: WarmupCallback | None = None) -> None:
        """Load model weights. Reports fractional progress in [0, 1]."""
        if progress_callback:
            progress_callback(1.0)

    @abstractmethod
    def embed_text(self, text: str) -> np.ndarray:
        """Encode text to a (D,) float32 vector."""

    @abstractmethod
    def embed_image(self, path: str) -> np.ndarray:
        """Encode the image at path to a (D,) float32 vector."""


class DeterministicFallbackProvider(EmbeddingProvider):
    """Hash-seeded pseudo embeddings for running without a real encoder.

    The same input always maps to the same unit vector, so indexing, search
    and feedback behave consistently even though scores carry no meaning.
    """

    def __init__(self, dimension: int = 512, name: str = "deterministic-fallback"):
        self.name = name
        self.dimension = dimension

    def _vector(self, namespace: str, value: str) -> np.ndarray:
        digest = hashlib.sha256(f"{namespace}:{value}".encode()).digest()
        rng = np.random.default_rng(int.from_bytes(digest[:8], "little"))
        vec = rng.standard_normal(self.dimension).astype(np.float32)
        vec /= np.linalg.norm(vec)
        return vec

    def embed_text(self, text: str) -> np.ndarray:
        return self._vector("text", text)

    def embed_image(self, path: str) -> np.ndarray:
        return self._vector("image", str(path))


class SerializedEmbedder(EmbeddingProvider):
    """Routes every image-embedding call through one FIFO worker thread.

    The wrapped provider never sees two image calls at once, whichever
    thread they come from. Calls run in submission order. Text calls are
    passed straight through. There is no timeout: a hung call blocks every
    caller queued behind it.
    """

    def __init__(self, provider: EmbeddingProvider):
        self._provider = provider
        self.name = provider.name
        self.dimension = provider.dimension
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="image-embed")

    @property
    def provider(self) -> EmbeddingProvider:
        return self._provider

    @property
    def loaded(self) -> bool:
        return self._provider.loaded

    def warm_up(self, progress_callback: WarmupCallback | None = None) -> None:
        self._executor.submit(self._provider.warm_up, progress_callback).result()

    def submit_image(self, path: str) -> Future:
        return self._executor.submit(self._provider.embed_image, path)

    def embed_image(self, path: str) -> np.ndarray:
        return self.submit_image(path).result()

    def embed_text(self, text: str) -> np.ndarray:
        return self._provider.embed_text(text)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


_text_warm_lock = threading.Lock()


def embed_text_warm(embedder: EmbeddingProvider, text: str) -> np.ndarray:
    """Embed text, loading a cold encoder and retrying once on ModelNotReady.

    Raises EmbedError when the text still cannot be embedded.
    """
    try:
        return embedder.embed_text(text)
    except ModelNotReady:
        logger.info("Text encoder not loaded, warming up")
    with _text_warm_lock:
        try:
            embedder.warm_up()
        except EmbedError:
            raise
        except Exception as exc:
            raise ModelNotReady(f"Text encoder warm-up failed: {exc}") from exc
    return embedder.embed_text(text)
