"""Read-only access to the flat-file photo cache written by older releases.

The file is a JSON list of photo records. A record counts as indexed only
when it carries a non-empty ``imageEmbedding``.
"""

import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def load_legacy_ids(path: Path | None) -> set[str]:
    if path is None or not path.exists():
        return set()
    try:
        raw = json.loads(path.read_text())
    except (json.JSONDecodeError, ValueError, OSError):
        logger.warning("Corrupt legacy cache %s, ignoring it", path)
        return set()
    if not isinstance(raw, list):
        logger.warning("Unexpected legacy cache layout in %s, ignoring it", path)
        return set()

    ids: set[str] = set()
    for record in raw:
        if not isinstance(record, dict):
            continue
        photo_id = record.get("id")
        embedding = record.get("imageEmbedding")
        if photo_id and isinstance(embedding, list) and embedding:
            ids.add(str(photo_id))
    return ids
