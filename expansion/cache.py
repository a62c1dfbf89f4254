"""
Result Cache - SQLite-backed memo for expensive external calls.

Keys are SHA-256 hashes over canonical JSON of every input that affects
the output, so changing any input (or the model id) is a clean miss.
Entries expire after a TTL. A failed write is logged and swallowed:
the caller already has its result. A failed read is a miss.
"""

import hashlib
import json
import sqlite3
import threading
import time
from typing import Any, Callable, Dict, Optional
import logging

from expansion.errors import CacheWriteFailed

log = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def canonical_json(data: Any) -> str:
    """Stable serialization: sorted keys, no whitespace."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


class ResultCache:
    """
    Thread-safe TTL cache.

    Usage:
        cache = ResultCache("cache.db", ttl_days=90)
        key = cache.make_key("rationale", {"lat": 51.5, "model": "gpt-4o-mini"})
        if cache.get(key) is None:
            cache.put(key, payload)
    """

    DEFAULT_DB_PATH = "expansion_cache.db"

    def __init__(self, db_path: str = None, ttl_days: int = 90,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            db_path: SQLite file. Defaults to 'expansion_cache.db'
            ttl_days: Default lifetime of new entries
            clock: Time source in epoch seconds (tests inject a fake)
        """
        self.db_path = db_path or self.DEFAULT_DB_PATH
        self.ttl_days = ttl_days
        self._clock = clock
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0
        self._write_failures = 0
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS cache_entries (
                        key TEXT PRIMARY KEY,
                        namespace TEXT,
                        payload TEXT NOT NULL,
                        created_at REAL NOT NULL,
                        expires_at REAL NOT NULL
                    )
                """)
                conn.execute("CREATE INDEX IF NOT EXISTS idx_expires ON cache_entries(expires_at)")
                conn.commit()
            finally:
                conn.close()

    @staticmethod
    def make_key(namespace: str, inputs: Dict[str, Any]) -> str:
        """Hash a namespace plus every relevant input into a cache key."""
        digest = hashlib.sha256(canonical_json(inputs).encode("utf-8")).hexdigest()
        return f"{namespace}:{digest}"

    def get(self, key: str) -> Optional[str]:
        """
        Read a payload.

        A database that cannot be read counts as a miss.

        Returns:
            The stored payload exactly as written, or None on miss/expiry
        """
        now = self._clock()
        try:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT payload, expires_at FROM cache_entries WHERE key = ?",
                    (key,)
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            log.warning(f"Cache read for {key} failed, treating as a miss: {e}")
            row = None

        with self._lock:
            if row is None or row["expires_at"] <= now:
                self._misses += 1
                return None
            self._hits += 1
        return row["payload"]

    def get_json(self, key: str) -> Optional[Any]:
        payload = self.get(key)
        if payload is None:
            return None
        try:
            return json.loads(payload)
        except ValueError:
            log.warning(f"Cache entry {key} is not valid JSON; ignoring it")
            return None

    def put(self, key: str, payload: str, ttl_days: Optional[int] = None) -> bool:
        """
        Store a payload. Never raises.

        Returns:
            True if the entry was written
        """
        now = self._clock()
        ttl = self.ttl_days if ttl_days is None else ttl_days
        namespace = key.split(":", 1)[0] if ":" in key else None
        try:
            with self._lock:
                conn = self._get_connection()
                try:
                    conn.execute(
                        """
                        INSERT OR REPLACE INTO cache_entries
                            (key, namespace, payload, created_at, expires_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (key, namespace, payload, now, now + ttl * SECONDS_PER_DAY)
                    )
                    conn.commit()
                finally:
                    conn.close()
            return True
        except sqlite3.Error as e:
            with self._lock:
                self._write_failures += 1
            failure = CacheWriteFailed(f"Cache write for {key} failed: {e}")
            log.warning(str(failure))
            return False

    def put_json(self, key: str, value: Any, ttl_days: Optional[int] = None) -> bool:
        return self.put(key, canonical_json(value), ttl_days)

    def purge_expired(self) -> int:
        """Delete expired entries. Returns the number removed."""
        with self._lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "DELETE FROM cache_entries WHERE expires_at <= ?",
                    (self._clock(),)
                )
                conn.commit()
                removed = cursor.rowcount
            finally:
                conn.close()
        if removed:
            log.info(f"Purged {removed} expired cache entries")
        return removed

    def stats(self) -> Dict[str, Any]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT namespace, COUNT(*) AS count FROM cache_entries GROUP BY namespace"
            ).fetchall()
        finally:
            conn.close()

        with self._lock:
            total = self._hits + self._misses
            return {
                "entries": {row["namespace"]: row["count"] for row in rows},
                "hits": self._hits,
                "misses": self._misses,
                "write_failures": self._write_failures,
                "hit_rate": round(self._hits / total * 100, 1) if total > 0 else 0.0,
            }
