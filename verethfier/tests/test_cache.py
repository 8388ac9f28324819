"""Tests for the TTL key/value stores (verethfier/core/cache.py).

Covers:
- MemoryCache get/set/pop/delete with lazy expiry
- MemoryCache sweep
- RedisCache key prefixing and JSON round trip (against a fake client)
- build_cache backend selection
"""

from __future__ import annotations

import pytest

from verethfier.core.cache import MemoryCache, RedisCache, build_cache
from verethfier.core.config import Settings


class FakeRedis:
    """Minimal async Redis mock for testing."""

    def __init__(self):
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}
        self.closed = False

    async def ping(self):
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        self._store[key] = value
        if ex:
            self._ttls[key] = ex

    async def getdel(self, key: str) -> str | None:
        return self._store.pop(key, None)

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self._store.pop(key, None) is not None)

    async def aclose(self):
        self.closed = True


# ── MemoryCache ──────────────────────────────────────────────────────────


class TestMemoryCache:
    @pytest.mark.asyncio
    async def test_set_get(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.set("k", {"a": 1}, ttl=10)
        assert await cache.get("k") == {"a": 1}

    @pytest.mark.asyncio
    async def test_expired_entry_is_invisible(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.set("k", "v", ttl=10)
        clock.advance(10)
        assert await cache.get("k") is None
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_pop_removes(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.set("k", "v", ttl=10)
        assert await cache.pop("k") == "v"
        assert await cache.pop("k") is None

    @pytest.mark.asyncio
    async def test_delete(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.set("k", "v", ttl=10)
        await cache.delete("k")
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_sweep_drops_only_expired(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.set("short", 1, ttl=5)
        await cache.set("long", 2, ttl=500)
        clock.advance(60)
        assert cache.sweep() == 1
        assert len(cache) == 1
        assert await cache.get("long") == 2

    @pytest.mark.asyncio
    async def test_close_clears(self, clock):
        cache = MemoryCache(clock=clock)
        await cache.set("k", "v", ttl=10)
        cache.start_sweeper()
        await cache.close()
        assert len(cache) == 0


# ── RedisCache ───────────────────────────────────────────────────────────


class TestRedisCache:
    @pytest.mark.asyncio
    async def test_prefix_and_ttl(self):
        client = FakeRedis()
        cache = RedisCache("redis://unused", client=client)
        await cache.set("nonce:1", {"nonce": "abc"}, ttl=300)
        assert "vf:nonce:1" in client._store
        assert client._ttls["vf:nonce:1"] == 300
        assert await cache.get("nonce:1") == {"nonce": "abc"}

    @pytest.mark.asyncio
    async def test_pop_uses_getdel(self):
        client = FakeRedis()
        cache = RedisCache("redis://unused", client=client)
        await cache.set("k", [1, 2], ttl=10)
        assert await cache.pop("k") == [1, 2]
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_ping_and_close(self):
        client = FakeRedis()
        cache = RedisCache("redis://unused", client=client)
        assert await cache.ping() is True
        await cache.close()
        assert client.closed


class TestBuildCache:
    def test_memory_backend(self):
        cache = build_cache(Settings(nonce_backend="memory"))
        assert isinstance(cache, MemoryCache)

    def test_redis_backend(self):
        cache = build_cache(Settings(nonce_backend="redis", redis_url="redis://localhost:6379/0"))
        assert isinstance(cache, RedisCache)
