"""
cache/store.py -- SQLite-backed TTL cache shared by the API workers.

Holds short-lived keys that several workers must agree on:
  - the access-token denylist written by logout (TTL = token's remaining life)
  - per-email password-reset request counters (TTL = 1 hour window)

Every entry carries its own absolute expiry. Expired entries read as missing
and are physically removed by purge_expired(), which is idempotent and safe
to run from several workers at once.

Each call opens its own short-lived connection, so no Python-level lock is
held while SQLite does I/O; SQLite's own file locking serializes writers.

Usage:
    cache = CacheStore("/tmp/teamguard_cache.db")
    cache.set("denylist:abc", True, ttl=300)
    cache.exists("denylist:abc")        # True until the TTL elapses
    cache.incr("reset:alice@example.com", ttl=3600)
    cache.purge_expired()
"""

import json
import sqlite3
import time
from contextlib import closing
from typing import Any, Optional

from core.config import get_settings

_DDL = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    expires_at  REAL NOT NULL
);
"""


class CacheStore:
    def __init__(self, db_path: Optional[str] = None, timeout: float = 5.0) -> None:
        self.db_path = db_path or get_settings().cache_db_path
        self._timeout = timeout
        with closing(self._connect()) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(_DDL)

    def _connect(self) -> sqlite3.Connection:
        # isolation_level=None: statements autocommit unless we BEGIN explicitly.
        return sqlite3.connect(self.db_path, timeout=self._timeout, isolation_level=None)

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value for key, or None if absent or expired."""
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT value FROM cache_entries WHERE key = ? AND expires_at > ?",
                (key, time.time()),
            ).fetchone()
        return json.loads(row[0]) if row is not None else None

    def set(self, key: str, value: Any, ttl: int) -> None:
        """Store value under key for ttl seconds, replacing any existing entry.

        A non-positive ttl is a no-op: the entry would already be expired.
        """
        if ttl <= 0:
            return
        with closing(self._connect()) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO cache_entries (key, value, expires_at) VALUES (?, ?, ?)",
                (key, json.dumps(value), time.time() + ttl),
            )

    def delete(self, key: str) -> bool:
        with closing(self._connect()) as conn:
            cursor = conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
        return cursor.rowcount > 0

    def exists(self, key: str) -> bool:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT 1 FROM cache_entries WHERE key = ? AND expires_at > ?",
                (key, time.time()),
            ).fetchone()
        return row is not None

    def incr(self, key: str, ttl: int) -> int:
        """Atomically increment an integer counter and return the new value.

        The window starts on the first increment: an expired counter restarts
        at 1 with a fresh expiry, a live one keeps its original expiry.
        """
        now = time.time()
        with closing(self._connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    """
                    INSERT INTO cache_entries (key, value, expires_at) VALUES (?, '1', ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = CASE WHEN cache_entries.expires_at <= ? THEN '1'
                                     ELSE CAST(CAST(cache_entries.value AS INTEGER) + 1 AS TEXT) END,
                        expires_at = CASE WHEN cache_entries.expires_at <= ? THEN excluded.expires_at
                                          ELSE cache_entries.expires_at END
                    """,
                    (key, now + ttl, now, now),
                )
                row = conn.execute("SELECT value FROM cache_entries WHERE key = ?", (key,)).fetchone()
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
        return int(row[0])

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        with closing(self._connect()) as conn:
            cursor = conn.execute("DELETE FROM cache_entries WHERE expires_at <= ?", (time.time(),))
        return cursor.rowcount

    def close(self) -> None:
        # Connections are per-call; nothing is held open between calls.
        return None
