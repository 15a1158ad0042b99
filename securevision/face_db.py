from __future__ import annotations

"""SQLite-backed identity store and cosine-similarity matching."""

import logging
import sqlite3
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_DIM = 512


class IdentityStoreError(ValueError):
    """Base class for rejected identity-store operations."""


class InvalidNameError(IdentityStoreError):
    pass


class DuplicateNameError(IdentityStoreError):
    pass


class InvalidEmbeddingError(IdentityStoreError):
    pass


@dataclass
class IdentityRecord:
    """One registered identity and its match provenance."""

    id: int
    name: str
    embedding: np.ndarray
    created_at: str
    last_seen: Optional[str] = None
    match_count: int = 0
    active: bool = True
    image_path: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class FaceMatch:
    """Best-match result; `identity_id` is None when below threshold."""

    identity_id: Optional[int]
    name: Optional[str]
    similarity: float

    @property
    def matched(self) -> bool:
        return self.identity_id is not None


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity clamped to `[0, 1]`.

    Zero vectors and mismatched lengths score 0.0; negative similarity is
    floored to 0.0 rather than treated as a strong anti-match.
    """
    vec_a = np.asarray(a, dtype=np.float32).reshape(-1)
    vec_b = np.asarray(b, dtype=np.float32).reshape(-1)
    if vec_a.shape != vec_b.shape:
        return 0.0
    norm_a = float(np.linalg.norm(vec_a))
    norm_b = float(np.linalg.norm(vec_b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    sim = float(np.dot(vec_a, vec_b)) / (norm_a * norm_b)
    return min(1.0, max(0.0, sim))


def _is_degenerate(vec: np.ndarray) -> bool:
    return vec.size == 0 or not np.all(np.isfinite(vec)) or float(np.linalg.norm(vec)) == 0.0


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


class IdentityStore:
    """Thread-safe registry of identity embeddings.

    Records persist in SQLite; active records are also cached in memory in
    ascending id order so matching never touches the database. One coarse
    lock serializes inserts, hit recording and scans.
    """

    def __init__(self, db_path: Path | str = ":memory:", embedding_dim: int = DEFAULT_EMBEDDING_DIM) -> None:
        """Open database connection, ensure schema, and load active records."""
        self.embedding_dim = int(embedding_dim)
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        if self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._lock = threading.Lock()
        self._records: List[IdentityRecord] = []
        self._init_schema()
        self._load_records()

    def _init_schema(self) -> None:
        """Create required tables/indexes if they do not exist."""
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS face_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    image_path TEXT,
                    description TEXT,
                    feature BLOB NOT NULL,
                    feature_dim INTEGER NOT NULL,
                    create_time TEXT NOT NULL,
                    last_seen TEXT,
                    recognition_count INTEGER NOT NULL DEFAULT 0,
                    active INTEGER NOT NULL DEFAULT 1
                );

                CREATE UNIQUE INDEX IF NOT EXISTS idx_face_records_active_name
                    ON face_records(name COLLATE NOCASE) WHERE active = 1;
                """
            )
            self._conn.commit()

    def _load_records(self) -> None:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT id, name, image_path, description, feature, feature_dim,
                       create_time, last_seen, recognition_count
                FROM face_records WHERE active = 1 ORDER BY id
                """
            ).fetchall()

        records: List[IdentityRecord] = []
        for row_id, name, image_path, description, blob, dim, created, last_seen, count in rows:
            vec = np.frombuffer(blob, dtype=np.float32).copy()
            if vec.shape[0] != int(dim) or int(dim) != self.embedding_dim:
                logger.warning("Skipping identity %s (%s): stored dimension %s != %d", row_id, name, dim, self.embedding_dim)
                continue
            records.append(
                IdentityRecord(
                    id=int(row_id),
                    name=str(name),
                    embedding=vec,
                    created_at=str(created),
                    last_seen=last_seen,
                    match_count=int(count),
                    image_path=image_path,
                    description=description,
                )
            )
        with self._lock:
            self._records = records
        logger.info("Identity store ready: %d active records (%s)", len(records), self.db_path)

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()

    def _validate_embedding(self, embedding) -> np.ndarray:
        vec = np.asarray(embedding, dtype=np.float32).reshape(-1)
        if vec.shape[0] != self.embedding_dim:
            raise InvalidEmbeddingError(f"Embedding has {vec.shape[0]} values, expected {self.embedding_dim}")
        if not np.all(np.isfinite(vec)):
            raise InvalidEmbeddingError("Embedding contains non-finite values")
        return vec.copy()

    def insert(
        self,
        name: str,
        embedding,
        image_path: Optional[str] = None,
        description: Optional[str] = None,
    ) -> int:
        """Register a new identity and return its id.

        Raises `InvalidNameError`, `DuplicateNameError` or
        `InvalidEmbeddingError`; nothing is written on failure.
        """
        clean_name = (name or "").strip()
        if not clean_name:
            raise InvalidNameError("Identity name must not be empty")
        vec = self._validate_embedding(embedding)
        created = _now()

        with self._lock:
            if any(record.name.casefold() == clean_name.casefold() for record in self._records):
                raise DuplicateNameError(f"Identity {clean_name!r} already exists")
            try:
                cursor = self._conn.execute(
                    """
                    INSERT INTO face_records (name, image_path, description, feature, feature_dim, create_time)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (clean_name, image_path, description, sqlite3.Binary(vec.tobytes()), int(vec.shape[0]), created),
                )
                self._conn.commit()
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                raise DuplicateNameError(f"Identity {clean_name!r} already exists") from exc
            record = IdentityRecord(
                id=int(cursor.lastrowid),
                name=clean_name,
                embedding=vec,
                created_at=created,
                image_path=image_path,
                description=description,
            )
            self._records.append(record)

        logger.info("Identity registered: %s (id=%d)", clean_name, record.id)
        return record.id

    def deactivate(self, name: str) -> bool:
        """Soft-delete the active identity with this name; frees the name."""
        key = (name or "").strip().casefold()
        with self._lock:
            target = next((record for record in self._records if record.name.casefold() == key), None)
            if target is None:
                return False
            self._conn.execute("UPDATE face_records SET active = 0 WHERE id = ?", (target.id,))
            self._conn.commit()
            self._records.remove(target)
        logger.info("Identity deactivated: %s (id=%d)", target.name, target.id)
        return True

    def find_best_match(self, query, min_similarity: float) -> FaceMatch:
        """Scan active records by ascending id; first record wins exact ties.

        Below `min_similarity` the result carries no identity but still
        reports the best score so callers can act on near misses.
        Degenerate queries and records (zero, non-finite or wrong length)
        never match.
        """
        vec = np.asarray(query, dtype=np.float32).reshape(-1)
        best: Optional[IdentityRecord] = None
        best_sim = 0.0
        if vec.shape[0] != self.embedding_dim or _is_degenerate(vec):
            return FaceMatch(identity_id=None, name=None, similarity=0.0)

        with self._lock:
            for record in self._records:
                if _is_degenerate(record.embedding):
                    continue
                sim = cosine_similarity(vec, record.embedding)
                if best is None or sim > best_sim:
                    best = record
                    best_sim = sim

        if best is None or best_sim < min_similarity:
            return FaceMatch(identity_id=None, name=None, similarity=best_sim)
        return FaceMatch(identity_id=best.id, name=best.name, similarity=best_sim)

    def record_hit(self, identity_id: int) -> None:
        """Update last-seen time and match count after a successful match."""
        seen = _now()
        with self._lock:
            record = next((item for item in self._records if item.id == identity_id), None)
            if record is None:
                logger.debug("record_hit for unknown/inactive identity %s", identity_id)
                return
            self._conn.execute(
                "UPDATE face_records SET last_seen = ?, recognition_count = recognition_count + 1 WHERE id = ?",
                (seen, identity_id),
            )
            self._conn.commit()
            record.last_seen = seen
            record.match_count += 1

    def get(self, identity_id: int) -> Optional[IdentityRecord]:
        """Return a copy of the active record with this id."""
        with self._lock:
            for record in self._records:
                if record.id == identity_id:
                    return replace(record, embedding=record.embedding.copy())
        return None

    def records(self) -> List[IdentityRecord]:
        with self._lock:
            return [replace(record, embedding=record.embedding.copy()) for record in self._records]

    def list_names(self) -> List[str]:
        with self._lock:
            return [record.name for record in self._records]

    def count(self) -> int:
        with self._lock:
            return len(self._records)
