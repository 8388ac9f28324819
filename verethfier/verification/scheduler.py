"""Fixed-interval job runner with cooperative cancellation.

    scheduler = PeriodicScheduler("reconcile", 6 * 3600, reconciler.run_scheduled_reverification)
    scheduler.start()
    ...
    await scheduler.stop()

Time comes from an injectable ``Clock`` so tests can drive the loop without
waiting on the wall clock. A failing job is logged and the loop keeps going.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from verethfier.core.clock import Clock, system_clock

logger = logging.getLogger(__name__)


class PeriodicScheduler:
    def __init__(
        self,
        name: str,
        interval_seconds: float,
        job: Callable[[], Awaitable[Any]],
        clock: Clock = system_clock,
        run_immediately: bool = False,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self._job = job
        self._clock = clock
        self._run_immediately = run_immediately
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=f"scheduler:{self.name}")
        logger.info("Scheduler %s started (every %.0fs)", self.name, self.interval_seconds)

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Scheduler %s stopped", self.name)

    async def run_once(self) -> Any:
        """Run the job now. Exceptions are logged and swallowed into ``None``."""
        self.runs += 1
        try:
            return await self._job()
        except Exception:
            self.failures += 1
            logger.exception("Scheduled job %s failed", self.name)
            return None

    async def _wait(self) -> bool:
        """Sleep one interval. True when woken by ``stop``."""
        sleeper = asyncio.ensure_future(self._clock.sleep(self.interval_seconds))
        stopper = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (sleeper, stopper):
                if not fut.done():
                    fut.cancel()
            await asyncio.gather(sleeper, stopper, return_exceptions=True)
        return self._stop.is_set()

    async def _loop(self) -> None:
        if self._run_immediately and not self._stop.is_set():
            await self.run_once()
        while not self._stop.is_set():
            if await self._wait():
                break
            await self.run_once()
