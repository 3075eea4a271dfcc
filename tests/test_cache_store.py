"""Unit tests for cache/store.py -- the SQLite TTL cache.

Covers:
- set/get/exists/delete round trips for JSON-serializable values
- non-positive ttl is a no-op
- expired entries read as missing and are removed by purge_expired()
- incr(): starts at 1, keeps its window, restarts after expiry
- several CacheStore instances over one file see the same entries
"""

import sqlite3
import time
from contextlib import closing

import pytest

from cache.store import CacheStore


def _expire(cache: CacheStore, key: str) -> None:
    """Move an entry's expiry into the past without waiting."""
    with closing(sqlite3.connect(cache.db_path, isolation_level=None)) as conn:
        conn.execute("UPDATE cache_entries SET expires_at = ? WHERE key = ?", (time.time() - 1, key))


class TestGetSet:
    @pytest.mark.parametrize("value", [True, 42, "text", {"a": [1, 2]}, [1, "two"]])
    def test_round_trip(self, cache, value) -> None:
        cache.set("k", value, ttl=60)
        assert cache.get("k") == value
        assert cache.exists("k") is True

    def test_missing_key(self, cache) -> None:
        assert cache.get("missing") is None
        assert cache.exists("missing") is False

    def test_set_replaces(self, cache) -> None:
        cache.set("k", 1, ttl=60)
        cache.set("k", 2, ttl=60)
        assert cache.get("k") == 2

    @pytest.mark.parametrize("ttl", [0, -10])
    def test_non_positive_ttl_is_noop(self, cache, ttl) -> None:
        cache.set("k", "v", ttl=ttl)
        assert cache.exists("k") is False

    def test_delete(self, cache) -> None:
        cache.set("k", "v", ttl=60)
        assert cache.delete("k") is True
        assert cache.delete("k") is False
        assert cache.get("k") is None


class TestExpiry:
    def test_expired_entry_reads_as_missing(self, cache) -> None:
        cache.set("k", "v", ttl=60)
        _expire(cache, "k")
        assert cache.get("k") is None
        assert cache.exists("k") is False

    def test_purge_removes_only_expired(self, cache) -> None:
        cache.set("old", 1, ttl=60)
        cache.set("new", 2, ttl=60)
        _expire(cache, "old")
        assert cache.purge_expired() == 1
        assert cache.purge_expired() == 0
        assert cache.get("new") == 2


class TestIncr:
    def test_counts_from_one(self, cache) -> None:
        assert [cache.incr("c", ttl=60) for _ in range(3)] == [1, 2, 3]

    def test_counters_are_independent(self, cache) -> None:
        cache.incr("a", ttl=60)
        assert cache.incr("b", ttl=60) == 1

    def test_restarts_after_window(self, cache) -> None:
        cache.incr("c", ttl=60)
        cache.incr("c", ttl=60)
        _expire(cache, "c")
        assert cache.incr("c", ttl=60) == 1
        assert cache.exists("c") is True

    def test_live_counter_keeps_its_expiry(self, cache) -> None:
        cache.incr("c", ttl=60)
        with closing(sqlite3.connect(cache.db_path)) as conn:
            (first,) = conn.execute("SELECT expires_at FROM cache_entries WHERE key = 'c'").fetchone()
        cache.incr("c", ttl=3600)
        with closing(sqlite3.connect(cache.db_path)) as conn:
            (second,) = conn.execute("SELECT expires_at FROM cache_entries WHERE key = 'c'").fetchone()
        assert first == second


class TestSharedFile:
    def test_instances_share_entries(self, cache) -> None:
        other = CacheStore(cache.db_path)
        cache.set("denylist:x", True, ttl=60)
        assert other.exists("denylist:x") is True
        other.incr("n", ttl=60)
        assert cache.incr("n", ttl=60) == 2
