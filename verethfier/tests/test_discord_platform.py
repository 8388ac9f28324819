"""Tests for the Discord role adapter (verethfier/integrations/discord.py).

Uses ``httpx.MockTransport`` so no request leaves the process.
"""

from __future__ import annotations

import httpx
import pytest

from verethfier.core.errors import RolePlatformError
from verethfier.integrations.discord import DiscordRolePlatform

GUILD = "111"
USER = "222"
ROLE = "333"


def _platform(handler, clock, max_retries: int = 3) -> DiscordRolePlatform:
    return DiscordRolePlatform(
        bot_token="bot-token",
        api_base="https://discord.test/api/v10",
        max_retries=max_retries,
        clock=clock,
        transport=httpx.MockTransport(handler),
    )


class TestDiscordRolePlatform:
    @pytest.mark.asyncio
    async def test_add_role(self, clock):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204)

        platform = _platform(handler, clock)
        await platform.add_role(GUILD, USER, ROLE)
        await platform.close()

        assert seen[0].method == "PUT"
        assert seen[0].url.path == f"/api/v10/guilds/{GUILD}/members/{USER}/roles/{ROLE}"
        assert seen[0].headers["Authorization"] == "Bot bot-token"

    @pytest.mark.asyncio
    async def test_add_role_forbidden(self, clock):
        platform = _platform(lambda r: httpx.Response(403, json={"message": "Missing Permissions"}), clock)
        with pytest.raises(RolePlatformError) as exc_info:
            await platform.add_role(GUILD, USER, ROLE)
        assert exc_info.value.status_code == 403
        await platform.close()

    @pytest.mark.asyncio
    async def test_remove_role_missing_member_is_success(self, clock):
        platform = _platform(lambda r: httpx.Response(404, json={"code": 10007}), clock)
        await platform.remove_role(GUILD, USER, ROLE)
        await platform.close()

    @pytest.mark.asyncio
    async def test_remove_role_server_error(self, clock):
        platform = _platform(lambda r: httpx.Response(500), clock)
        with pytest.raises(RolePlatformError):
            await platform.remove_role(GUILD, USER, ROLE)
        await platform.close()

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self, clock):
        responses = [
            httpx.Response(429, json={"retry_after": 2.5}),
            httpx.Response(204),
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        platform = _platform(handler, clock)
        await platform.add_role(GUILD, USER, ROLE)
        await platform.close()
        assert clock.sleeps == [2.5]

    @pytest.mark.asyncio
    async def test_rate_limit_gives_up(self, clock):
        platform = _platform(lambda r: httpx.Response(429, json={"retry_after": 1}), clock, max_retries=2)
        with pytest.raises(RolePlatformError) as exc_info:
            await platform.add_role(GUILD, USER, ROLE)
        assert exc_info.value.status_code == 429
        assert clock.sleeps == [1.0, 1.0]
        await platform.close()

    @pytest.mark.asyncio
    async def test_transport_error(self, clock):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        platform = _platform(handler, clock)
        with pytest.raises(RolePlatformError):
            await platform.add_role(GUILD, USER, ROLE)
        await platform.close()

    @pytest.mark.asyncio
    async def test_has_role(self, clock):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith(f"/members/{USER}"):
                return httpx.Response(200, json={"roles": [ROLE, "444"]})
            return httpx.Response(404)

        platform = _platform(handler, clock)
        assert await platform.has_role(GUILD, USER, ROLE) is True
        assert await platform.has_role(GUILD, USER, "555") is False
        assert await platform.has_role(GUILD, "unknown", ROLE) is False
        await platform.close()
