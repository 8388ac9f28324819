"""Tests for the periodic job runner (verethfier/verification/scheduler.py)."""

from __future__ import annotations

import asyncio

import pytest

from verethfier.core.clock import Clock
from verethfier.verification.scheduler import PeriodicScheduler


class SteppingClock(Clock):
    """Each ``sleep`` blocks until the test releases a tick."""

    def __init__(self) -> None:
        self.ticks: asyncio.Queue[None] = asyncio.Queue()
        self.requested: list[float] = []

    async def sleep(self, seconds: float) -> None:
        self.requested.append(seconds)
        await self.ticks.get()

    def tick(self) -> None:
        self.ticks.put_nowait(None)


async def _settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class TestPeriodicScheduler:
    def test_rejects_non_positive_interval(self):
        async def job():
            return None

        with pytest.raises(ValueError):
            PeriodicScheduler("bad", 0, job)

    @pytest.mark.asyncio
    async def test_runs_once_per_interval(self):
        clock = SteppingClock()
        calls: list[int] = []

        async def job():
            calls.append(1)

        scheduler = PeriodicScheduler("test", 60, job, clock=clock)
        scheduler.start()
        await _settle()
        assert calls == []
        assert clock.requested == [60]

        clock.tick()
        await _settle()
        assert len(calls) == 1

        clock.tick()
        await _settle()
        assert len(calls) == 2
        assert scheduler.runs == 2

        await scheduler.stop()
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_run_immediately(self):
        clock = SteppingClock()
        calls: list[int] = []

        async def job():
            calls.append(1)

        scheduler = PeriodicScheduler("test", 60, job, clock=clock, run_immediately=True)
        scheduler.start()
        await _settle()
        assert calls == [1]
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_failing_job_keeps_loop_alive(self):
        clock = SteppingClock()

        async def job():
            raise RuntimeError("boom")

        scheduler = PeriodicScheduler("test", 60, job, clock=clock)
        scheduler.start()
        clock.tick()
        await _settle()
        clock.tick()
        await _settle()

        assert scheduler.runs == 2
        assert scheduler.failures == 2
        assert scheduler.running
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_interrupts_sleep(self):
        clock = SteppingClock()

        async def job():
            return None

        scheduler = PeriodicScheduler("test", 3600, job, clock=clock)
        scheduler.start()
        await _settle()
        await asyncio.wait_for(scheduler.stop(), timeout=1)
        assert scheduler.runs == 0

    @pytest.mark.asyncio
    async def test_run_once_returns_result(self):
        async def job():
            return 42

        scheduler = PeriodicScheduler("test", 60, job)
        assert await scheduler.run_once() == 42
        assert scheduler.runs == 1
