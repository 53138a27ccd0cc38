"""
Unit tests for the query result cache.
"""

import pytest

from nycdb_insights.data.result_cache import ResultCache


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return ResultCache(ttl_seconds=60, max_size=2, clock=clock)


class TestResultCache:
    """Test ResultCache."""

    def test_get_miss(self, cache):
        """Test that unknown keys miss."""
        assert cache.get("missing") is None
        assert cache.stats()["misses"] == 1

    def test_set_and_get(self, cache):
        """Test that stored rows are returned within the TTL."""
        rows = [{"bbl": "3001"}]
        cache.set("key", rows)

        assert cache.get("key") == rows
        assert cache.stats()["hits"] == 1

    def test_expiry(self, cache, clock):
        """Test that entries older than the TTL are dropped."""
        cache.set("key", [{"a": 1}])
        clock.now = 61

        assert cache.get("key") is None
        assert cache.stats()["keys"] == 0

    def test_eviction_order(self, cache):
        """Test that the oldest entry is evicted when full."""
        cache.set("a", [])
        cache.set("b", [])
        cache.set("c", [])

        assert cache.get("a") is None
        assert cache.get("b") == []
        assert cache.get("c") == []

    def test_reset_moves_key_to_newest(self, cache):
        """Test that re-setting a key refreshes its position."""
        cache.set("a", [1])
        cache.set("b", [2])
        cache.set("a", [3])
        cache.set("c", [4])

        assert cache.get("b") is None
        assert cache.get("a") == [3]

    def test_read_keeps_entry_recent(self, cache):
        """Test that a cache hit protects the entry from the next eviction."""
        cache.set("a", [1])
        cache.set("b", [2])
        cache.get("a")
        cache.set("c", [3])

        assert cache.get("b") is None
        assert cache.get("a") == [1]

    def test_expired_entries_not_counted(self, cache, clock):
        """Test that stats ignore entries past their TTL."""
        cache.set("a", [])
        clock.now = 30
        cache.set("b", [])
        clock.now = 75

        assert cache.stats()["keys"] == 1
        assert cache.get("b") == []

    def test_clear_and_stats(self, cache):
        """Test clear resets entries and counters."""
        cache.set("a", [])
        cache.get("a")
        cache.get("b")
        assert cache.stats()["hit_rate"] == 0.5

        cache.clear()

        assert cache.stats() == {"keys": 0, "hits": 0, "misses": 0, "hit_rate": 0.0}
