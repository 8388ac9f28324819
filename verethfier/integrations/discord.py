"""Role platform adapter — grants and removes guild member roles over Discord REST.

Only three endpoints are used:

    PUT    /guilds/{guild}/members/{user}/roles/{role}
    DELETE /guilds/{guild}/members/{user}/roles/{role}
    GET    /guilds/{guild}/members/{user}

429 responses are retried after the advertised ``retry_after`` up to
``max_retries`` times. Everything else that is not a 2xx raises
``RolePlatformError``.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from verethfier.core.clock import Clock, system_clock
from verethfier.core.config import Settings
from verethfier.core.errors import RolePlatformError

logger = logging.getLogger(__name__)


class RolePlatform:
    """External collaborator that owns the user-visible roles."""

    async def add_role(self, guild_id: str, user_id: str, role_id: str) -> None:
        raise NotImplementedError

    async def remove_role(self, guild_id: str, user_id: str, role_id: str) -> None:
        raise NotImplementedError

    async def has_role(self, guild_id: str, user_id: str, role_id: str) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class DiscordRolePlatform(RolePlatform):
    def __init__(
        self,
        bot_token: str,
        api_base: str = "https://discord.com/api/v10",
        timeout: float = 10.0,
        max_retries: int = 3,
        clock: Clock = system_clock,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._max_retries = max_retries
        self._clock = clock
        self._client = httpx.AsyncClient(
            base_url=api_base.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bot {bot_token}",
                "User-Agent": "Verethfier (https://github.com/verethfier, 1.0)",
            },
        )

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock = system_clock) -> DiscordRolePlatform:
        if not settings.discord_bot_token:
            logger.warning("VERETHFIER_DISCORD_BOT_TOKEN is not set; role mutations will fail")
        return cls(
            bot_token=settings.discord_bot_token,
            api_base=settings.discord_api_base,
            timeout=settings.discord_request_timeout,
            max_retries=settings.discord_max_retries,
            clock=clock,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        attempt = 0
        while True:
            try:
                resp = await self._client.request(method, path, **kwargs)
            except httpx.HTTPError as exc:
                raise RolePlatformError(f"{method} {path} failed: {exc.__class__.__name__}") from exc

            if resp.status_code != 429:
                return resp

            attempt += 1
            if attempt > self._max_retries:
                raise RolePlatformError(f"{method} {path} rate limited", status_code=429)
            try:
                retry_after = float(resp.json().get("retry_after", 1.0))
            except (ValueError, AttributeError):
                retry_after = 1.0
            logger.warning(
                "Discord rate limit on %s %s, retrying in %.2fs (attempt %d/%d)",
                method,
                path,
                retry_after,
                attempt,
                self._max_retries,
            )
            await self._clock.sleep(retry_after)

    @staticmethod
    def _role_path(guild_id: str, user_id: str, role_id: str) -> str:
        return f"/guilds/{guild_id}/members/{user_id}/roles/{role_id}"

    async def add_role(self, guild_id: str, user_id: str, role_id: str) -> None:
        resp = await self._request("PUT", self._role_path(guild_id, user_id, role_id))
        if not resp.is_success:
            # Never log the body; it can echo request headers
            raise RolePlatformError(
                f"Adding role {role_id} to {user_id} failed with HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        logger.info("Granted role %s to %s in guild %s", role_id, user_id, guild_id,
                    extra={"guild_id": guild_id})

    async def remove_role(self, guild_id: str, user_id: str, role_id: str) -> None:
        resp = await self._request("DELETE", self._role_path(guild_id, user_id, role_id))
        if resp.status_code == 404:
            # Member left the guild or the role was deleted: nothing left to remove
            logger.info("Role %s or member %s no longer exists in guild %s", role_id, user_id,
                        guild_id, extra={"guild_id": guild_id})
            return
        if not resp.is_success:
            raise RolePlatformError(
                f"Removing role {role_id} from {user_id} failed with HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        logger.info("Removed role %s from %s in guild %s", role_id, user_id, guild_id,
                    extra={"guild_id": guild_id})

    async def has_role(self, guild_id: str, user_id: str, role_id: str) -> bool:
        resp = await self._request("GET", f"/guilds/{guild_id}/members/{user_id}")
        if resp.status_code == 404:
            return False
        if not resp.is_success:
            raise RolePlatformError(
                f"Fetching member {user_id} failed with HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        return role_id in resp.json().get("roles", [])

    async def close(self) -> None:
        await self._client.aclose()
