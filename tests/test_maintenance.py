"""Tests for throttled lazy cleanup."""
from __future__ import annotations

import asyncio

from pokerlive_server.maintenance import LazyCleanup


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_runs_at_most_once_per_interval():
    clock = FakeClock()
    cleanup = LazyCleanup(300, clock=clock)
    runs = []

    async def job():
        runs.append(clock.now)
        return len(runs)

    async def scenario():
        assert await cleanup.maybe_run(job) == 1
        clock.now += 100
        assert await cleanup.maybe_run(job) is None
        clock.now += 200
        assert await cleanup.maybe_run(job) == 2

    asyncio.run(scenario())
    assert runs == [1000.0, 1300.0]


def test_failure_is_logged_and_retried():
    """A failing job does not raise and leaves the cleanup due."""
    clock = FakeClock()
    cleanup = LazyCleanup(300, clock=clock)
    calls = []

    async def job():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("database is locked")
        return "ok"

    async def scenario():
        assert await cleanup.maybe_run(job) is None
        assert cleanup.due()
        assert await cleanup.maybe_run(job) == "ok"
        assert not cleanup.due()

    asyncio.run(scenario())
    assert len(calls) == 2


def test_force_ignores_throttle():
    clock = FakeClock()
    cleanup = LazyCleanup(300, clock=clock)

    async def job():
        return "done"

    async def scenario():
        await cleanup.maybe_run(job)
        assert not cleanup.due()
        return await cleanup.force(job)

    assert asyncio.run(scenario()) == "done"
