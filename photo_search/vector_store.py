"""SQLite-backed store for photo embeddings, labels and feedback.

One write connection (autocommit, explicit BEGIN for batches) guarded by a
lock that the batch owner holds until commit or rollback. Every read opens
its own short-lived connection so searches never wait on an indexing batch
and never see its uncommitted rows.
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

import numpy as np

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS image_index (
    id TEXT PRIMARY KEY,
    uri TEXT,
    embedding BLOB,
    latitude REAL NULL,
    longitude REAL NULL,
    city TEXT NULL,
    timestamp INTEGER
);
CREATE INDEX IF NOT EXISTS idx_image_index_timestamp ON image_index(timestamp);
CREATE INDEX IF NOT EXISTS idx_image_index_city ON image_index(city);

CREATE TABLE IF NOT EXISTS image_labels (
    image_id TEXT,
    label TEXT,
    score REAL,
    PRIMARY KEY (image_id, label)
);
CREATE INDEX IF NOT EXISTS idx_image_labels_label ON image_labels(label);

CREATE TABLE IF NOT EXISTS user_preferences (
    image_id TEXT,
    feedback_tag TEXT,
    embedding_vector BLOB,
    UNIQUE (image_id, feedback_tag)
);

CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT
);
"""

LAST_INDEXED_KEY = "last_indexed_at"


class StoreError(Exception):
    """A read or write against the store failed."""


# ---------------------------------------------------------------------------
# Embedding codec
# ---------------------------------------------------------------------------

_FLOAT32_LE = np.dtype("<f4")


def embedding_to_bytes(vector) -> bytes:
    """Pack a vector as little-endian float32, no header."""
    return np.asarray(vector, dtype=_FLOAT32_LE).ravel().tobytes()


def embedding_from_bytes(blob) -> np.ndarray:
    """Unpack a stored blob. Malformed or missing blobs decode to an empty vector."""
    if not blob or len(blob) % 4 != 0:
        if blob:
            logger.warning("Malformed embedding blob of %d bytes", len(blob))
        return np.zeros(0, dtype=np.float32)
    return np.frombuffer(bytes(blob), dtype=_FLOAT32_LE).astype(np.float32)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class IndexEntry:
    id: str
    uri: str
    embedding: np.ndarray
    timestamp: int
    latitude: float | None = None
    longitude: float | None = None
    city: str | None = None


@dataclass(frozen=True)
class SearchFilter:
    """Structured restriction on the candidate set. Bounds are inclusive."""

    city: str | None = None
    start_ms: int | None = None
    end_ms: int | None = None

    @property
    def empty(self) -> bool:
        return not self.city and self.start_ms is None and self.end_ms is None

    def where_clause(self) -> tuple[str, list]:
        conditions: list[str] = []
        params: list = []
        if self.city and self.city.strip():
            conditions.append("city = ?")
            params.append(self.city.strip())
        if self.start_ms is not None:
            conditions.append("timestamp >= ?")
            params.append(int(self.start_ms))
        if self.end_ms is not None:
            conditions.append("timestamp <= ?")
            params.append(int(self.end_ms))
        if not conditions:
            return "", params
        return " WHERE " + " AND ".join(conditions), params


class ScanResult:
    """Lazy, restartable sequence of (id, uri, embedding) rows.

    Each iteration re-runs the query on a fresh read connection.
    """

    FETCH_SIZE = 256

    def __init__(self, store: "VectorStore", search_filter: SearchFilter | None = None):
        self._store = store
        self._filter = search_filter or SearchFilter()

    def __iter__(self) -> Iterator[tuple[str, str, np.ndarray]]:
        where, params = self._filter.where_clause()
        sql = f"SELECT id, uri, embedding FROM image_index{where} ORDER BY id"
        conn = self._store._read_connection()
        try:
            cursor = conn.execute(sql, params)
            while True:
                rows = cursor.fetchmany(self.FETCH_SIZE)
                if not rows:
                    break
                for image_id, uri, blob in rows:
                    yield image_id, uri, embedding_from_bytes(blob)
        except sqlite3.Error as exc:
            raise StoreError(f"Scan failed: {exc}") from exc
        finally:
            conn.close()


# ---------------------------------------------------------------------------
# VectorStore
# ---------------------------------------------------------------------------


class VectorStore:
    def __init__(self, db_path: Path):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._batch_owner: int | None = None
        try:
            self._conn = sqlite3.connect(
                str(self._db_path), isolation_level=None, check_same_thread=False
            )
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot open store at {self._db_path}: {exc}") from exc

    @property
    def path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _read_connection(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._db_path))

    def _write(self, sql: str, params: tuple | list = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                return self._conn.execute(sql, params)
            except sqlite3.Error as exc:
                raise StoreError(f"Write failed: {exc}") from exc

    def _read_all(self, sql: str, params: tuple | list = ()) -> list[tuple]:
        conn = self._read_connection()
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"Read failed: {exc}") from exc
        finally:
            conn.close()

    # -- batches --

    @property
    def in_batch(self) -> bool:
        return self._batch_owner is not None

    def begin_batch(self) -> None:
        """Open a unit of work. Other threads' writes wait until it ends."""
        if self._batch_owner == threading.get_ident():
            raise StoreError("Nested batch rejected: a batch is already open")
        self._lock.acquire()
        try:
            self._conn.execute("BEGIN")
        except sqlite3.Error as exc:
            self._lock.release()
            raise StoreError(f"Cannot begin batch: {exc}") from exc
        self._batch_owner = threading.get_ident()

    def _end_batch(self, statement: str) -> None:
        if self._batch_owner != threading.get_ident():
            raise StoreError(f"{statement} without an open batch")
        try:
            self._conn.execute(statement)
        except sqlite3.Error as exc:
            if statement == "COMMIT":
                # Transaction stays open; the caller must roll back.
                raise StoreError(f"Commit failed: {exc}") from exc
            logger.error("Rollback failed", exc_info=True)
        self._batch_owner = None
        self._lock.release()

    def commit_batch(self) -> None:
        self._end_batch("COMMIT")

    def rollback_batch(self) -> None:
        if self._batch_owner != threading.get_ident():
            raise StoreError("ROLLBACK without an open batch")
        if not self._conn.in_transaction:
            self._batch_owner = None
            self._lock.release()
            return
        self._end_batch("ROLLBACK")

    # -- image_index --

    def upsert_index_entry(self, entry: IndexEntry) -> None:
        blob = embedding_to_bytes(entry.embedding)
        if not blob:
            raise ValueError(f"Refusing to store an empty embedding for {entry.id}")
        self._write(
            """INSERT OR REPLACE INTO image_index
               (id, uri, embedding, latitude, longitude, city, timestamp)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.id,
                entry.uri,
                blob,
                entry.latitude,
                entry.longitude,
                entry.city,
                int(entry.timestamp),
            ),
        )
        # Feedback rows hold a copy of the photo's embedding.
        self._write(
            "UPDATE user_preferences SET embedding_vector = ? WHERE image_id = ?",
            (blob, entry.id),
        )

    def list_indexed_ids(self) -> set[str]:
        return {row[0] for row in self._read_all("SELECT id FROM image_index")}

    def count(self) -> int:
        return self._read_all("SELECT COUNT(*) FROM image_index")[0][0]

    def scan(self, search_filter: SearchFilter | None = None) -> ScanResult:
        return ScanResult(self, search_filter)

    def get_embedding(self, image_id: str) -> np.ndarray | None:
        rows = self._read_all("SELECT embedding FROM image_index WHERE id = ?", (image_id,))
        if not rows:
            return None
        return embedding_from_bytes(rows[0][0])

    def list_cities(self) -> list[str]:
        rows = self._read_all(
            "SELECT DISTINCT city FROM image_index WHERE city IS NOT NULL ORDER BY city"
        )
        return [r[0] for r in rows]

    def delete_photo(self, image_id: str) -> None:
        """Remove every row belonging to a photo the user deleted."""
        with self._lock:
            own_batch = not self.in_batch
            if own_batch:
                self.begin_batch()
            try:
                self._write("DELETE FROM image_index WHERE id = ?", (image_id,))
                self._write("DELETE FROM image_labels WHERE image_id = ?", (image_id,))
                self._write("DELETE FROM user_preferences WHERE image_id = ?", (image_id,))
            except StoreError:
                if own_batch:
                    self.rollback_batch()
                raise
            if own_batch:
                self.commit_batch()

    def reset_embeddings(self) -> int:
        """Drop every indexed embedding and derived label score. Returns rows dropped.

        Feedback rows are kept; upserts refresh their embeddings as photos are
        re-indexed.
        """
        with self._lock:
            dropped = self.count()
            self.begin_batch()
            try:
                self._write("DELETE FROM image_index")
                self._write("DELETE FROM image_labels")
                self._write("DELETE FROM meta WHERE key = ?", (LAST_INDEXED_KEY,))
            except StoreError:
                self.rollback_batch()
                raise
            self.commit_batch()
        return dropped

    # -- image_labels --

    def insert_label_score(self, image_id: str, label: str, score: float) -> None:
        self._write(
            "INSERT OR REPLACE INTO image_labels (image_id, label, score) VALUES (?, ?, ?)",
            (image_id, label, float(score)),
        )

    def clear_labels(self, label: str) -> None:
        self._write("DELETE FROM image_labels WHERE label = ?", (label,))

    def label_scores(self, label: str, min_score: float = 0.0) -> list[tuple[str, float]]:
        rows = self._read_all(
            """SELECT image_id, score FROM image_labels
               WHERE label = ? AND score >= ?
               ORDER BY score DESC, image_id""",
            (label, min_score),
        )
        return [(r[0], r[1]) for r in rows]

    # -- user_preferences --

    def insert_preference(self, image_id: str, tag: str, embedding) -> None:
        self._write(
            """INSERT OR REPLACE INTO user_preferences
               (image_id, feedback_tag, embedding_vector) VALUES (?, ?, ?)""",
            (image_id, tag, embedding_to_bytes(embedding)),
        )

    def preference_embeddings(self, tag: str) -> list[np.ndarray]:
        rows = self._read_all(
            "SELECT embedding_vector FROM user_preferences WHERE feedback_tag = ? ORDER BY image_id",
            (tag,),
        )
        vectors = [embedding_from_bytes(r[0]) for r in rows]
        return [v for v in vectors if v.size > 0]

    # -- meta --

    def get_meta(self, key: str) -> str | None:
        rows = self._read_all("SELECT value FROM meta WHERE key = ?", (key,))
        return rows[0][0] if rows else None

    def set_meta(self, key: str, value: str) -> None:
        self._write("INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, value))

    def last_indexed_at(self) -> int | None:
        value = self.get_meta(LAST_INDEXED_KEY)
        try:
            return int(value) if value is not None else None
        except ValueError:
            logger.warning("Corrupt %s value %r, treating as unset", LAST_INDEXED_KEY, value)
            return None

    def set_last_indexed_at(self, epoch_ms: int) -> None:
        self.set_meta(LAST_INDEXED_KEY, str(int(epoch_ms)))
