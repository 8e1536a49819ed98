import os
from pathlib import Path

CACHE_DIR = Path(
    os.environ.get("PHOTO_SEARCH_CACHE_DIR", Path.home() / ".cache" / "photo-search")
).resolve()

DB_FILE = CACHE_DIR / "photo_search.sqlite"
# Flat-file cache written by older releases: a JSON list of photo records.
LEGACY_CACHE_FILE = CACHE_DIR / "photos.json"

SUPPORTED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".heif", ".heic"}

# Folders enumerated by the default photo source, separated by os.pathsep.
PHOTO_FOLDERS = [
    p for p in os.environ.get("PHOTO_SEARCH_FOLDERS", "").split(os.pathsep) if p
]

# -- indexing --

INDEX_BATCH_SIZE = 10  # photos per storage transaction

# -- embedding providers --

EMBEDDING_PROVIDER = os.environ.get("PHOTO_SEARCH_PROVIDER", "clip")
# Hash-based vectors carry no meaning; only use them when asked to.
ALLOW_FALLBACK_PROVIDER = os.environ.get("PHOTO_SEARCH_ALLOW_FALLBACK", "0") == "1"
CLIP_MODEL_NAME = "ViT-B-16"
CLIP_PRETRAINED = "openai"
CLIP_EMBEDDING_DIM = 512
FALLBACK_DIMENSION = 512

# -- speech --

# "whisper", "static" or "none"
TRANSCRIBER = os.environ.get("PHOTO_SEARCH_TRANSCRIBER", "whisper")
WHISPER_MODEL = os.environ.get("PHOTO_SEARCH_WHISPER_MODEL", "openai/whisper-small")
STATIC_TRANSCRIPT = "This is a mocked transcription response."

# -- search relevance --

DEFAULT_THRESHOLD = 0.25
DEFAULT_LIMIT = 100
PENALTY_FACTOR = 1.2

DISLIKE_TAG = "Dislike"
LIKE_TAG = "Like"

# -- query planning --

MAX_PHRASES = 8
EXPANSION_TIMEOUT_SECONDS = 10.0

LLM_API_URL = os.environ.get(
    "PHOTO_SEARCH_LLM_URL", "https://openrouter.ai/api/v1/chat/completions"
)
LLM_API_KEY = os.environ.get("OPENROUTER_API_KEY", "")
LLM_MODEL = os.environ.get("PHOTO_SEARCH_LLM_MODEL", "qwen/qwen3-235b-a22b-instruct")

# -- categorization --

MAX_LABELS = 20
LABEL_THRESHOLD = 0.25

# -- geocoding --

GEO_KEY_PRECISION = 6  # decimal places in the coordinate cache key

# -- service daemon --

SERVICE_PORT = int(os.environ.get("PHOTO_SEARCH_PORT", "7830"))
SERVICE_HOST = "127.0.0.1"
