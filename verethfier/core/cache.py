"""TTL key/value stores backing short-lived state (nonces).

Two interchangeable backends:

    RedisCache   → redis.asyncio, shared across processes and restarts
    MemoryCache  → per-process dict with lazy expiry plus a background sweep

Usage:
    from verethfier.core.cache import build_cache

    cache = build_cache(settings)
    await cache.set("nonce:123", {"nonce": "abc"}, ttl=300)
    await cache.pop("nonce:123")  # destructive read
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import redis.asyncio as aioredis

from verethfier.core.clock import Clock, system_clock
from verethfier.core.config import Settings

logger = logging.getLogger(__name__)


class KeyValueCache:
    """Abstract async TTL store with JSON-serialisable values."""

    async def get(self, key: str) -> Any | None:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl: int) -> None:
        raise NotImplementedError

    async def pop(self, key: str) -> Any | None:
        """Atomically read and delete a key. Returns None on miss."""
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


# ── Redis ────────────────────────────────────────────────────────────────────


class RedisCache(KeyValueCache):
    """Redis-backed store. Errors propagate: callers must not treat an outage as a miss."""

    def __init__(self, url: str, prefix: str = "vf", client: Any | None = None) -> None:
        self._url = url
        self._prefix = prefix
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = aioredis.from_url(
                self._url,
                decode_responses=True,
                socket_connect_timeout=2,
            )
        return self._client

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def get(self, key: str) -> Any | None:
        raw = await self._get_client().get(self._key(key))
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        raw = json.dumps(value, default=str)
        await self._get_client().set(self._key(key), raw, ex=ttl)

    async def pop(self, key: str) -> Any | None:
        raw = await self._get_client().getdel(self._key(key))
        return None if raw is None else json.loads(raw)

    async def delete(self, key: str) -> None:
        await self._get_client().delete(self._key(key))

    async def ping(self) -> bool:
        return bool(await self._get_client().ping())

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# ── In-memory ────────────────────────────────────────────────────────────────


class MemoryCache(KeyValueCache):
    """Single-process TTL map. Expired entries are invisible on read and swept periodically."""

    def __init__(self, clock: Clock = system_clock, sweep_interval: float = 60.0) -> None:
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._store: dict[str, tuple[float, str]] = {}
        self._sweeper: asyncio.Task | None = None

    def _live(self, key: str) -> str | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        expires_at, raw = entry
        if expires_at <= self._clock.timestamp():
            del self._store[key]
            return None
        return raw

    async def get(self, key: str) -> Any | None:
        raw = self._live(key)
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        self._store[key] = (self._clock.timestamp() + ttl, json.dumps(value, default=str))

    async def pop(self, key: str) -> Any | None:
        raw = self._live(key)
        self._store.pop(key, None)
        return None if raw is None else json.loads(raw)

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def sweep(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self._clock.timestamp()
        expired = [k for k, (exp, _) in self._store.items() if exp <= now]
        for key in expired:
            del self._store[key]
        return len(expired)

    def start_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="memory-cache-sweeper")

    async def _sweep_loop(self) -> None:
        while True:
            await self._clock.sleep(self._sweep_interval)
            removed = self.sweep()
            if removed:
                logger.debug("Swept %d expired cache entries", removed)

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)


def build_cache(settings: Settings, clock: Clock = system_clock) -> KeyValueCache:
    """Select the nonce backend configured in settings."""
    if settings.nonce_backend == "memory":
        logger.warning("Using in-memory nonce store — nonces will not survive restarts")
        return MemoryCache(clock=clock, sweep_interval=settings.nonce_sweep_interval_seconds)
    return RedisCache(settings.redis_url)
