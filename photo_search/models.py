import logging
import threading

import numpy as np
import torch
from PIL import Image, ImageOps, UnidentifiedImageError

from config import (
    CLIP_EMBEDDING_DIM,
    CLIP_MODEL_NAME,
    CLIP_PRETRAINED,
    FALLBACK_DIMENSION,
)
from embedding import (
    DeterministicFallbackProvider,
    EmbeddingProvider,
    ModelNotReady,
    TransientEmbedError,
    UnsupportedItem,
    WarmupCallback,
)

logger = logging.getLogger(__name__)

# Allow large panoramas; images are downscaled by the preprocessor right away
Image.MAX_IMAGE_PIXELS = None

_heif_registered = False


def register_heif() -> None:
    """Register HEIF/HEIC opener with Pillow (idempotent)."""
    global _heif_registered
    if _heif_registered:
        return
    from pillow_heif import register_heif_opener

    register_heif_opener()
    _heif_registered = True
    logger.info("HEIF support registered")


def get_device() -> torch.device:
    if torch.cuda.is_available():
        return torch.device("cuda")
    if torch.backends.mps.is_available():
        return torch.device("mps")
    return torch.device("cpu")


def open_for_embedding(path: str) -> Image.Image:
    """Open an image as upright RGB with pixels loaded and the file closed."""
    try:
        with Image.open(path) as img:
            img = ImageOps.exif_transpose(img)
            img.load()
            if img.mode != "RGB":
                img = img.convert("RGB")
            return img
    except (FileNotFoundError, UnidentifiedImageError, OSError) as exc:
        raise UnsupportedItem(f"Cannot open image {path}: {exc}") from exc


class OpenCLIPProvider(EmbeddingProvider):
    """CLIP image and text encoders via the open_clip library.

    warm_up loads the whole model, image and text towers together. Until
    then both embed calls raise ModelNotReady.
    """

    def __init__(
        self,
        model_name: str = CLIP_MODEL_NAME,
        pretrained: str = CLIP_PRETRAINED,
        dimension: int = CLIP_EMBEDDING_DIM,
    ):
        self.name = f"open_clip:{model_name}"
        self.dimension = dimension
        self._model_name = model_name
        self._pretrained = pretrained
        self._model = None
        self._preprocess = None
        self._tokenizer = None
        self._device = None
        self._load_lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._model is not None

    def warm_up(self, progress_callback: WarmupCallback | None = None) -> None:
        import open_clip

        with self._load_lock:
            if self._model is not None:
                if progress_callback:
                    progress_callback(1.0)
                return
            if progress_callback:
                progress_callback(0.0)
            register_heif()
            self._device = get_device()
            logger.info("Loading %s (%s) on %s", self._model_name, self._pretrained, self._device)
            model, _, preprocess = open_clip.create_model_and_transforms(
                self._model_name, pretrained=self._pretrained or None
            )
            if progress_callback:
                progress_callback(0.8)
            self._tokenizer = open_clip.get_tokenizer(self._model_name)
            self._preprocess = preprocess
            self._model = model.to(self._device).eval()
            logger.info("Loaded %s", self.name)
            if progress_callback:
                progress_callback(1.0)

    def _normalized(self, features: torch.Tensor) -> np.ndarray:
        features = features / features.norm(dim=-1, keepdim=True)
        return features[0].cpu().numpy().astype(np.float32)

    def embed_image(self, path: str) -> np.ndarray:
        if self._model is None:
            raise ModelNotReady(f"{self.name} image encoder not loaded")
        image = open_for_embedding(path)
        try:
            tensor = self._preprocess(image).unsqueeze(0).to(self._device)
        except (ValueError, TypeError) as exc:
            raise UnsupportedItem(f"Cannot preprocess {path}: {exc}") from exc
        try:
            with torch.no_grad():
                features = self._model.encode_image(tensor)
        except RuntimeError as exc:
            # Includes torch.cuda.OutOfMemoryError.
            raise TransientEmbedError(f"Image inference failed for {path}: {exc}") from exc
        return self._normalized(features)

    def embed_text(self, text: str) -> np.ndarray:
        if self._model is None:
            raise ModelNotReady(f"{self.name} text encoder not loaded")
        try:
            tokens = self._tokenizer([text]).to(self._device)
            with torch.no_grad():
                features = self._model.encode_text(tokens)
        except RuntimeError as exc:
            raise TransientEmbedError(f"Text inference failed: {exc}") from exc
        return self._normalized(features)


# ---------------------------------------------------------------------------
# Capability detection
# ---------------------------------------------------------------------------

PROVIDERS = {
    "clip": OpenCLIPProvider,
    "fallback": lambda: DeterministicFallbackProvider(FALLBACK_DIMENSION),
}


def detect_provider(name: str) -> EmbeddingProvider | None:
    """Construct the named provider, or None when it cannot run here.

    Checked once at startup; callers never re-check mid-call.
    """
    factory = PROVIDERS.get(name)
    if factory is None:
        logger.warning("Unknown embedding provider: %s", name)
        return None
    try:
        return factory()
    except Exception:
        logger.warning("Embedding provider %s unavailable", name, exc_info=True)
        return None


def create_provider(name: str, allow_fallback: bool = True) -> EmbeddingProvider:
    provider = detect_provider(name)
    if provider is not None:
        return provider
    if not allow_fallback:
        raise RuntimeError(f"Embedding provider {name!r} is not available")
    logger.warning("Falling back to deterministic embeddings (provider %s unavailable)", name)
    return DeterministicFallbackProvider(FALLBACK_DIMENSION)
