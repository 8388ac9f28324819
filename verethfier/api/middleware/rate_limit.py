"""Rate limiting middleware using a Redis sliding window.

Every client is held to three windows at once:
  - short:  3 requests per second
  - medium: 20 requests per 10 seconds
  - long:   100 requests per minute

Limits come from settings (``rate_limit_short`` etc.). The client is
identified by API key when present, else by IP.
"""

from __future__ import annotations

import hashlib
import logging
import time
from typing import Callable

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)

DEFAULT_TIERS: dict[str, tuple[int, int]] = {
    "short": (3, 1),
    "medium": (20, 10),
    "long": (100, 60),
}

EXEMPT_PATHS = {"/api/health", "/api/health/ready", "/api/metrics", "/api/docs", "/api/openapi.json"}


def _get_client_key(request: Request) -> str:
    api_key = request.headers.get("x-api-key", "")
    if api_key:
        identity = f"key:{api_key}"
    else:
        identity = request.client.host if request.client else "unknown"
    return hashlib.sha256(identity.encode()).hexdigest()[:16]


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Redis-based sliding window rate limiter.

    Falls back to an in-memory dict if Redis is unavailable.
    """

    def __init__(
        self,
        app: ASGIApp,
        redis_url: str | None = None,
        tiers: dict[str, tuple[int, int]] | None = None,
    ) -> None:
        super().__init__(app)
        self._redis = None
        self._redis_url = redis_url
        self._redis_failed = False
        self.tiers = tiers or DEFAULT_TIERS
        self._memory_store: dict[str, list[float]] = {}

    async def _get_redis(self):
        """Lazy-init Redis connection."""
        if self._redis is None and self._redis_url and not self._redis_failed:
            try:
                import redis.asyncio as aioredis

                client = aioredis.from_url(self._redis_url, decode_responses=True)
                await client.ping()
                self._redis = client
            except Exception:
                logger.warning("Rate limiter: Redis unavailable, using in-memory fallback")
                self._redis_failed = True
        return self._redis

    async def _check(self, key: str, limit: int, window: int) -> tuple[bool, int]:
        r = await self._get_redis()
        if not r:
            return self._check_memory(key, limit, window)

        now = time.time()
        pipe = r.pipeline()
        pipe.zremrangebyscore(key, 0, now - window)
        pipe.zadd(key, {f"{now}": now})
        pipe.zcard(key)
        pipe.expire(key, window)
        results = await pipe.execute()
        count = results[2]
        return count > limit, max(0, limit - count)

    def _check_memory(self, key: str, limit: int, window: int) -> tuple[bool, int]:
        now = time.time()
        hits = [t for t in self._memory_store.get(key, []) if t > now - window]
        hits.append(now)
        self._memory_store[key] = hits
        count = len(hits)
        return count > limit, max(0, limit - count)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in EXEMPT_PATHS or request.method == "OPTIONS":
            return await call_next(request)

        client_key = _get_client_key(request)
        remaining_overall: int | None = None
        for name, (limit, window) in self.tiers.items():
            exceeded, remaining = await self._check(f"rl:{client_key}:{name}", limit, window)
            if exceeded:
                return JSONResponse(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    content={
                        "error": "Rate limit exceeded",
                        "code": "RATE_LIMITED",
                        "retry_after": window,
                        "tier": name,
                    },
                    headers={
                        "Retry-After": str(window),
                        "X-RateLimit-Limit": str(limit),
                        "X-RateLimit-Remaining": "0",
                    },
                )
            if remaining_overall is None or remaining < remaining_overall:
                remaining_overall = remaining

        response = await call_next(request)
        if remaining_overall is not None:
            response.headers["X-RateLimit-Remaining"] = str(remaining_overall)
        return response
