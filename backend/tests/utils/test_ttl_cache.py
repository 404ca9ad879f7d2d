"""Tests for the in-memory TTL cache."""

import pytest

from tradecal.utils.cache import Cache


class TestCache:
    def test_expiry_follows_clock(self, clock):
        cache = Cache(clock=clock, default_ttl_seconds=60)
        cache.set("k", {"v": 1})

        assert cache.get("k") == {"v": 1}
        clock.advance(seconds=60)
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_per_key_ttl_and_cleanup(self, clock):
        cache = Cache(clock=clock, default_ttl_seconds=60)
        cache.set("short", 1, ttl_seconds=10)
        cache.set("long", 2)

        clock.advance(seconds=30)

        assert cache.cleanup_expired() == 1
        assert "long" in cache
        assert "short" not in cache

    def test_delete_and_clear(self, clock):
        cache = Cache(clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)

        cache.delete("a")
        cache.delete("missing")
        assert cache.get("a") is None

        cache.clear()
        assert len(cache) == 0

    def test_get_or_set(self, clock):
        cache = Cache(clock=clock, default_ttl_seconds=60)
        calls = []

        def load():
            calls.append(1)
            return "value"

        assert cache.get_or_set("k", load) == "value"
        assert cache.get_or_set("k", load) == "value"
        assert len(calls) == 1

    def test_get_or_set_failure_not_cached(self, clock):
        cache = Cache(clock=clock)

        def fail():
            raise RuntimeError("store down")

        with pytest.raises(RuntimeError):
            cache.get_or_set("k", fail)
        assert "k" not in cache
