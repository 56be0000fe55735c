"""Tests for the response cache.

Test Coverage:
- Hit and miss accounting
- Query normalization and context scoping
- Capacity eviction
- TTL expiry with an injected clock
- Statistics
"""

from __future__ import annotations

import threading

import pytest

from keel.cache.response_cache import ResponseCache, cache_key


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestCacheBasics:
    """Test get and set."""

    def test_get_set_get(self):
        cache = ResponseCache()
        assert cache.get("What is the status?") is None
        cache.set("What is the status?", "All green.", tokens_saved=120)
        entry = cache.get("What is the status?")
        assert entry.response == "All green."
        assert entry.hit_count == 1

        stats = cache.stats()
        assert stats["total_hits"] == 1
        assert stats["total_misses"] == 1
        assert stats["hit_rate"] == 50.0
        assert stats["tokens_saved"] == 120

    def test_normalized_query(self):
        cache = ResponseCache()
        cache.set("  Hello World ", "hi")
        assert cache.get("hello world").response == "hi"

    def test_context_scopes_key(self):
        cache = ResponseCache()
        cache.set("hello", "formal", context="Be formal.")
        assert cache.get("hello") is None
        assert cache.get("hello", context="Be formal.").response == "formal"
        assert cache_key("hello", "a") != cache_key("hello", "b")

    def test_overwrite_resets_hits(self):
        cache = ResponseCache()
        cache.set("q", "first")
        cache.get("q")
        cache.set("q", "second")
        entry = cache.get("q")
        assert entry.response == "second"
        assert entry.hit_count == 1
        assert len(cache) == 1

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            ResponseCache(max_entries=0)
        with pytest.raises(ValueError):
            ResponseCache(ttl_seconds=0)


class TestCacheEviction:
    """Test capacity and TTL handling."""

    def test_oldest_evicted_at_capacity(self):
        cache = ResponseCache(max_entries=2)
        cache.set("a", "1")
        cache.set("b", "2")
        cache.set("c", "3")
        assert len(cache) == 2
        assert cache.get("a") is None
        assert cache.get("c").response == "3"

    def test_ttl_expiry(self):
        clock = FakeClock()
        cache = ResponseCache(ttl_seconds=60, clock=clock)
        cache.set("q", "answer")
        clock.now += 59
        assert cache.get("q") is not None
        clock.now += 2
        assert cache.get("q") is None
        assert len(cache) == 0

    def test_prune(self):
        clock = FakeClock()
        cache = ResponseCache(ttl_seconds=10, clock=clock)
        cache.set("old", "x")
        clock.now += 20
        cache.set("new", "y")
        assert cache.prune() == 1
        assert len(cache) == 1

    def test_clear_resets_stats(self):
        cache = ResponseCache()
        cache.set("q", "a")
        cache.get("q")
        cache.clear()
        assert cache.stats() == {
            "total_entries": 0,
            "total_hits": 0,
            "total_misses": 0,
            "hit_rate": 0.0,
            "tokens_saved": 0,
        }

    def test_top_entries(self):
        cache = ResponseCache()
        cache.set("a", "1")
        cache.set("b", "2")
        cache.get("b")
        cache.get("b")
        cache.get("a")
        assert [e.response for e in cache.top_entries()] == ["2", "1"]

    def test_concurrent_writers(self):
        cache = ResponseCache(max_entries=50)

        def writer(offset: int) -> None:
            for i in range(100):
                cache.set(f"q{offset}-{i}", "r")

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert len(cache) == 50
