"""Speech-to-text for spoken search queries.

WhisperTranscriber wraps a HuggingFace transformers ASR pipeline. Weights
load on warm_up, or lazily on the first transcribe call.
"""

import logging
import threading
from typing import Protocol

from config import STATIC_TRANSCRIPT, WHISPER_MODEL
from embedding import WarmupCallback

logger = logging.getLogger(__name__)


class Transcriber(Protocol):
    def warm_up(self, progress_callback: WarmupCallback | None = None) -> None: ...

    def transcribe(self, audio_path: str) -> str: ...


class WhisperTranscriber:
    def __init__(self, model_name: str = WHISPER_MODEL):
        self.model_name = model_name
        self._pipeline = None
        self._lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._pipeline is not None

    def warm_up(self, progress_callback: WarmupCallback | None = None) -> None:
        with self._lock:
            if self._pipeline is None:
                from transformers import pipeline

                if progress_callback:
                    progress_callback(0.0)
                logger.info("Loading speech model %s", self.model_name)
                self._pipeline = pipeline("automatic-speech-recognition", model=self.model_name)
                logger.info("Loaded speech model %s", self.model_name)
        if progress_callback:
            progress_callback(1.0)

    def transcribe(self, audio_path: str) -> str:
        if self._pipeline is None:
            self.warm_up()
        result = self._pipeline(audio_path)
        return (result.get("text") or "").strip()


class StaticTranscriber:
    """Returns a fixed transcript. For development without speech weights."""

    def __init__(self, text: str = STATIC_TRANSCRIPT):
        self.text = text

    def warm_up(self, progress_callback: WarmupCallback | None = None) -> None:
        if progress_callback:
            progress_callback(1.0)

    def transcribe(self, audio_path: str) -> str:
        return self.text


def create_transcriber(name: str) -> Transcriber | None:
    """Build a transcriber by name: "whisper", "static" or "none"."""
    if name == "whisper":
        return WhisperTranscriber()
    if name == "static":
        return StaticTranscriber()
    if name == "none":
        return None
    raise ValueError(f"Unknown transcriber: {name!r}")
