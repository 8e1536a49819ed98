import sys
from pathlib import Path

import pytest
from PIL import Image

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

pytest.importorskip("torch")

from embedding import DeterministicFallbackProvider, ModelNotReady, TransientEmbedError, UnsupportedItem
from models import OpenCLIPProvider, create_provider, detect_provider, open_for_embedding


def test_unknown_provider_falls_back():
    provider = create_provider("no-such-model")
    assert isinstance(provider, DeterministicFallbackProvider)
    assert provider.dimension == 512


def test_unknown_provider_without_fallback_raises():
    with pytest.raises(RuntimeError):
        create_provider("no-such-model", allow_fallback=False)


def test_detect_provider():
    assert detect_provider("no-such-model") is None
    assert isinstance(detect_provider("fallback"), DeterministicFallbackProvider)


def test_clip_not_ready_before_warm_up():
    provider = OpenCLIPProvider()
    assert not provider.loaded
    with pytest.raises(ModelNotReady):
        provider.embed_text("sunset")
    with pytest.raises(ModelNotReady):
        provider.embed_image("photo.jpg")


def test_open_for_embedding(tmp_path):
    path = tmp_path / "gray.png"
    Image.new("L", (20, 10)).save(path)
    img = open_for_embedding(str(path))
    assert img.mode == "RGB"
    assert img.size == (20, 10)


def test_open_for_embedding_unsupported(tmp_path):
    bad = tmp_path / "bad.jpg"
    bad.write_bytes(b"not an image")
    with pytest.raises(UnsupportedItem):
        open_for_embedding(str(bad))
    with pytest.raises(UnsupportedItem):
        open_for_embedding(str(tmp_path / "missing.jpg"))


class _OutOfMemoryModel:
    def encode_image(self, tensor):
        raise RuntimeError("CUDA out of memory")

    def encode_text(self, tokens):
        raise RuntimeError("CUDA out of memory")


def _loaded_provider(preprocess) -> OpenCLIPProvider:
    import torch

    provider = OpenCLIPProvider()
    provider._model = _OutOfMemoryModel()
    provider._preprocess = preprocess
    provider._tokenizer = lambda texts: torch.zeros((len(texts), 4), dtype=torch.long)
    provider._device = "cpu"
    return provider


def test_inference_runtime_error_is_transient(tmp_path):
    import torch

    path = tmp_path / "photo.png"
    Image.new("RGB", (8, 8)).save(path)
    provider = _loaded_provider(lambda img: torch.zeros((3, 8, 8)))

    with pytest.raises(TransientEmbedError):
        provider.embed_image(str(path))
    with pytest.raises(TransientEmbedError):
        provider.embed_text("sunset")


def test_preprocess_failure_is_unsupported(tmp_path):
    def _reject(img):
        raise ValueError("image too small")

    path = tmp_path / "photo.png"
    Image.new("RGB", (8, 8)).save(path)

    with pytest.raises(UnsupportedItem):
        _loaded_provider(_reject).embed_image(str(path))
