"""Tests for caching functionality."""

import logging

import pytest
import redis.asyncio as redis

from app.utils import cache as cache_module
from app.utils.cache import cache_key, cached, invalidate_cache


class FakeRedis:
    """In-memory stand-in for the few Redis calls the cache makes."""

    def __init__(self):
        self.store: dict[str, str] = {}

    async def get(self, key):
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self.store[key] = value

    async def scan_iter(self, match):
        prefix = match.rstrip("*")
        for key in list(self.store):
            if key.startswith(prefix):
                yield key

    async def delete(self, *keys):
        for key in keys:
            self.store.pop(key, None)


class BrokenRedis:
    async def get(self, key):
        raise redis.ConnectionError("Connection refused")

    async def setex(self, key, ttl, value):
        raise redis.ConnectionError("Connection refused")

    async def scan_iter(self, match):
        raise redis.ConnectionError("Connection refused")
        yield  # pragma: no cover


@pytest.fixture
def use_redis(monkeypatch):
    """Enable caching against the given client."""

    def _use(client):
        async def fake_get_redis():
            return client

        monkeypatch.setattr(cache_module.settings, "cache_enabled", True)
        monkeypatch.setattr(cache_module, "get_redis", fake_get_redis)
        return client

    return _use


@pytest.mark.cache
class TestCacheKey:
    def test_cache_key_generation(self):
        """Same args give the same key, different args a different one."""
        key1 = cache_key(limit=50, offset=0)
        key2 = cache_key(offset=0, limit=50)
        key3 = cache_key(limit=100, offset=0)

        assert key1 == key2
        assert key1 != key3

    def test_no_arguments(self):
        assert cache_key() == "default"


@pytest.mark.cache
@pytest.mark.asyncio
class TestCachedDecorator:
    """Test the cached decorator against a fake Redis."""

    async def test_hit_after_miss(self, use_redis):
        store = use_redis(FakeRedis())
        call_count = 0

        @cached(ttl=10, prefix="test")
        async def expensive_function(db=None, period: str = "today"):
            nonlocal call_count
            call_count += 1
            return {"period": period}

        assert await expensive_function(db=object(), period="today") == {"period": "today"}
        assert call_count == 1

        # Second call is served from the cache, whatever session is passed
        assert await expensive_function(db=object(), period="today") == {"period": "today"}
        assert call_count == 1

        await expensive_function(db=object(), period="week")
        assert call_count == 2
        assert all(key.startswith("test:expensive_function:") for key in store.store)

    async def test_disabled_cache_always_calls(self, monkeypatch):
        monkeypatch.setattr(cache_module.settings, "cache_enabled", False)
        call_count = 0

        @cached(ttl=10, prefix="test")
        async def counted():
            nonlocal call_count
            call_count += 1
            return call_count

        assert await counted() == 1
        assert await counted() == 2

    async def test_redis_errors_fall_back_to_uncached(self, use_redis, caplog):
        """An unreachable Redis never fails the call."""
        use_redis(BrokenRedis())

        @cached(ttl=10, prefix="test")
        async def compute():
            return {"value": 42}

        with caplog.at_level(logging.WARNING, logger="app.utils.cache"):
            assert await compute() == {"value": 42}

        assert "falling back to uncached" in caplog.text


@pytest.mark.cache
@pytest.mark.asyncio
class TestInvalidation:
    async def test_cache_invalidation(self, use_redis):
        """Only keys matching the pattern are deleted."""
        store = use_redis(FakeRedis())
        store.store.update({
            "stats:dashboard_stats:abc": "1",
            "stats:sales_stats:def": "2",
            "other:func:xyz": "3",
        })

        await invalidate_cache("stats:*")

        assert list(store.store) == ["other:func:xyz"]

    async def test_invalidation_survives_redis_errors(self, use_redis):
        use_redis(BrokenRedis())

        await invalidate_cache("stats:*")

    async def test_invalidation_noop_when_disabled(self, monkeypatch):
        async def fail():
            raise AssertionError("Redis must not be contacted")

        monkeypatch.setattr(cache_module.settings, "cache_enabled", False)
        monkeypatch.setattr(cache_module, "get_redis", fail)

        await invalidate_cache("stats:*")
