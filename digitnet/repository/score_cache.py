# digitnet/repository/score_cache.py
"""
Repository layer for cached scorer outputs.

Goal:
- Give the scorers a simple, stable key/value interface:
    - get(image_id, scorer_type, scorer_version)
    - put(image_id, scorer_type, scorer_version, scores)
    - delete_by_scorer(scorer_type, scorer_version)
    - delete_by_image(image_id)
- Hide whether results live in SQLite or in process memory.

Every backend failure is raised as CacheError. Callers treat the cache as
an optimization only, so they catch CacheError and compute directly.
"""

import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from digitnet.config.settings import Settings
from digitnet.errors import CacheError
from digitnet.utils.score_codec import decode_scores, encode_scores

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# 1. Abstract Repository Interface
# ---------------------------------------------------------------------------

class ScoreCache(ABC):
    """
    Key/value store for score vectors keyed by
    (image identity, scorer type, scorer version).

    Implementations:
    - SqliteScoreCache:   persistent, shared by every process on the host
    - InMemoryScoreCache: process-local, used in tests and when persistence is off
    """

    @abstractmethod
    def get(self, image_id: str, scorer_type: str, scorer_version: str) -> Optional[np.ndarray]:
        """Return the stored vector, or None on a miss."""
        raise NotImplementedError

    @abstractmethod
    def put(self, image_id: str, scorer_type: str, scorer_version: str, scores: Sequence[float]) -> None:
        """Store a vector. Writing the same key twice keeps the last value."""
        raise NotImplementedError

    @abstractmethod
    def delete_by_scorer(self, scorer_type: str, scorer_version: str) -> int:
        """Remove every entry produced by one scorer version. Returns rows removed."""
        raise NotImplementedError

    @abstractmethod
    def delete_by_image(self, image_id: str) -> int:
        raise NotImplementedError

    @abstractmethod
    def count(self) -> int:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# 2. SQLite Implementation
# ---------------------------------------------------------------------------

class SqliteScoreCache(ScoreCache):
    """
    SQLite-backed score cache.

    - WAL journal so readers do not block the writer
    - one connection per thread
    - upsert on write, so racing writers simply overwrite each other
    """

    def __init__(self, db_path: str = "data/score_cache.db"):
        self.db_path = Path(db_path)
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_db()
        except (OSError, sqlite3.Error) as e:
            raise CacheError(f"Failed to initialize score cache at {self.db_path}: {e}") from e
        logger.info(f"Initialized SQLite score cache at {self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(str(self.db_path), timeout=30, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def _init_db(self):
        """Initialize database schema."""
        conn = self._get_connection()
        with conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS score_result (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    image_id TEXT NOT NULL,
                    scorer_type TEXT NOT NULL,
                    scorer_version TEXT NOT NULL,
                    scores_blob BLOB NOT NULL,
                    created_ts INTEGER NOT NULL,
                    UNIQUE (image_id, scorer_type, scorer_version)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_scorer_lookup
                ON score_result (scorer_type, scorer_version, image_id)
            """)

    def get(self, image_id: str, scorer_type: str, scorer_version: str) -> Optional[np.ndarray]:
        try:
            row = self._get_connection().execute(
                """
                SELECT scores_blob FROM score_result
                WHERE image_id = ? AND scorer_type = ? AND scorer_version = ?
                """,
                (image_id, scorer_type, scorer_version),
            ).fetchone()
        except sqlite3.Error as e:
            raise CacheError(f"Score lookup failed: {e}") from e

        if row is None:
            return None
        try:
            return decode_scores(row["scores_blob"])
        except ValueError as e:
            raise CacheError(f"Corrupt score blob for {image_id} {scorer_type}/{scorer_version}: {e}") from e

    def put(self, image_id: str, scorer_type: str, scorer_version: str, scores: Sequence[float]) -> None:
        blob = encode_scores(scores)
        now = int(time.time() * 1000)
        try:
            conn = self._get_connection()
            with conn:
                conn.execute(
                    """
                    INSERT INTO score_result (image_id, scorer_type, scorer_version, scores_blob, created_ts)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT (image_id, scorer_type, scorer_version) DO UPDATE SET
                        scores_blob = excluded.scores_blob,
                        created_ts = excluded.created_ts
                    """,
                    (image_id, scorer_type, scorer_version, sqlite3.Binary(blob), now),
                )
        except sqlite3.Error as e:
            raise CacheError(f"Score store failed: {e}") from e

    def delete_by_scorer(self, scorer_type: str, scorer_version: str) -> int:
        try:
            conn = self._get_connection()
            with conn:
                cursor = conn.execute(
                    "DELETE FROM score_result WHERE scorer_type = ? AND scorer_version = ?",
                    (scorer_type, scorer_version),
                )
            return cursor.rowcount
        except sqlite3.Error as e:
            raise CacheError(f"Failed to delete {scorer_type}/{scorer_version}: {e}") from e

    def delete_by_image(self, image_id: str) -> int:
        try:
            conn = self._get_connection()
            with conn:
                cursor = conn.execute("DELETE FROM score_result WHERE image_id = ?", (image_id,))
            return cursor.rowcount
        except sqlite3.Error as e:
            raise CacheError(f"Failed to delete results for image {image_id}: {e}") from e

    def count(self) -> int:
        try:
            row = self._get_connection().execute("SELECT COUNT(*) AS n FROM score_result").fetchone()
        except sqlite3.Error as e:
            raise CacheError(f"Count failed: {e}") from e
        return int(row["n"])

    def close(self):
        """
        Close every connection opened by any thread (worker pools included).
        The next call from any thread opens a fresh one.
        """
        with self._connections_lock:
            connections, self._connections = self._connections, []
            self._local = threading.local()
        for conn in connections:
            conn.close()
        logger.debug(f"Closed {len(connections)} score cache connection(s)")


# ---------------------------------------------------------------------------
# 3. In-memory Implementation
# ---------------------------------------------------------------------------

class InMemoryScoreCache(ScoreCache):
    """Dictionary-backed cache. Vectors are copied in and out."""

    def __init__(self):
        self._entries: Dict[Tuple[str, str, str], np.ndarray] = {}
        self._lock = threading.Lock()

    def get(self, image_id: str, scorer_type: str, scorer_version: str) -> Optional[np.ndarray]:
        with self._lock:
            vec = self._entries.get((image_id, scorer_type, scorer_version))
        return None if vec is None else vec.copy()

    def put(self, image_id: str, scorer_type: str, scorer_version: str, scores: Sequence[float]) -> None:
        vec = np.array(scores, dtype=np.float64)
        with self._lock:
            self._entries[(image_id, scorer_type, scorer_version)] = vec

    def delete_by_scorer(self, scorer_type: str, scorer_version: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if k[1] == scorer_type and k[2] == scorer_version]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    def delete_by_image(self, image_id: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if k[0] == image_id]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    def count(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# 4. Administration + factory
# ---------------------------------------------------------------------------

def purge_scorer(cache: ScoreCache, scorer_type: str, scorer_version: str) -> int:
    """
    Clear all cached results for one scorer type and version.
    Use this when a scorer's parameters or algorithm change.
    """
    removed = cache.delete_by_scorer(scorer_type, scorer_version)
    logger.info(f"Purged {removed} cached results for {scorer_type}/{scorer_version}")
    return removed


_score_cache: Optional[ScoreCache] = None
_score_cache_lock = threading.Lock()


def get_score_cache(settings: Optional[Settings] = None) -> Optional[ScoreCache]:
    """
    Get or create the process-wide score cache.

    Returns None when caching is disabled or the database cannot be opened;
    classification still works, it just recomputes every score.
    """
    global _score_cache
    settings = settings or Settings.from_env()
    if not settings.cache_enabled:
        return None

    with _score_cache_lock:
        if _score_cache is None:
            try:
                _score_cache = SqliteScoreCache(settings.cache_db_path)
            except CacheError as e:
                logger.warning(f"Score cache unavailable, continuing without it: {e}")
                return None
        return _score_cache


def reset_score_cache():
    """Forget the process-wide cache instance (tests / reconfiguration)."""
    global _score_cache
    with _score_cache_lock:
        _score_cache = None
