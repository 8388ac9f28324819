"""Injectable time source for expiry checks and scheduled work."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone


class Clock:
    """Wall clock plus an awaitable sleep. Subclass to control time in tests."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def timestamp(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class SystemClock(Clock):
    pass


system_clock = SystemClock()
