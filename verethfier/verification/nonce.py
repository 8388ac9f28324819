"""Single-use nonces binding a verification attempt to its request context.

One live nonce per owner: issuing again replaces the previous one. After
``consume`` (or expiry) ``resolve`` returns ``None`` and ``require`` raises,
so a replayed signature can never get past the nonce check twice.
"""

from __future__ import annotations

import hmac
import logging
import secrets

from verethfier.core.cache import KeyValueCache
from verethfier.core.clock import Clock, system_clock
from verethfier.core.errors import NonceError
from verethfier.core.types import NonceContext

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_SECONDS = 300


class NonceAuthority:
    def __init__(
        self,
        cache: KeyValueCache,
        expiry_seconds: int = DEFAULT_EXPIRY_SECONDS,
        clock: Clock = system_clock,
    ) -> None:
        self._cache = cache
        self._expiry = expiry_seconds
        self._clock = clock

    @staticmethod
    def _key(owner_user_id: str) -> str:
        return f"nonce:{owner_user_id}"

    async def issue(
        self,
        owner_user_id: str,
        message_id: str | None = None,
        channel_id: str | None = None,
    ) -> str:
        nonce = secrets.token_urlsafe(24)
        context = NonceContext(
            nonce=nonce,
            owner_user_id=owner_user_id,
            message_id=message_id,
            channel_id=channel_id,
            expires_at=self._clock.timestamp() + self._expiry,
        )
        await self._cache.set(self._key(owner_user_id), context.model_dump(), ttl=self._expiry)
        logger.debug("Issued nonce for user %s", owner_user_id)
        return nonce

    async def resolve(self, owner_user_id: str) -> NonceContext | None:
        """Context of the live nonce, or None when there is no active nonce."""
        raw = await self._cache.get(self._key(owner_user_id))
        if raw is None:
            return None
        context = NonceContext.model_validate(raw)
        # Backstop for stores whose TTL granularity is coarser than ours
        if context.expires_at <= self._clock.timestamp():
            return None
        return context

    async def validate(self, owner_user_id: str, nonce: str) -> bool:
        context = await self.resolve(owner_user_id)
        if context is None:
            return False
        return hmac.compare_digest(context.nonce.encode(), nonce.encode())

    async def require(self, owner_user_id: str, nonce: str) -> NonceContext:
        context = await self.resolve(owner_user_id)
        if context is None:
            raise NonceError(f"No active nonce for user {owner_user_id}")
        if not hmac.compare_digest(context.nonce.encode(), nonce.encode()):
            raise NonceError(f"Nonce mismatch for user {owner_user_id}")
        return context

    async def consume(self, owner_user_id: str) -> bool:
        """Destructive read. True when a live nonce was removed."""
        raw = await self._cache.pop(self._key(owner_user_id))
        if raw is None:
            return False
        context = NonceContext.model_validate(raw)
        return context.expires_at > self._clock.timestamp()
