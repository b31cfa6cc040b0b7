"""Tests for the trailing-debounce update coalescer."""
from __future__ import annotations

import asyncio
import time

from pokerlive_server.coalescer import UpdateCoalescer

DELAY = 0.05


def test_burst_produces_single_broadcast_after_last_trigger():
    """K rapid triggers yield one broadcast, timed from the last trigger."""
    fired = []

    async def broadcast(code):
        fired.append((code, time.monotonic()))

    async def scenario():
        coalescer = UpdateCoalescer(broadcast, delay=DELAY)
        last = 0.0
        for _ in range(5):
            coalescer.schedule_broadcast("S")
            last = time.monotonic()
            await asyncio.sleep(DELAY / 5)
        assert coalescer.is_pending("S")
        await asyncio.sleep(DELAY * 4)
        assert not coalescer.is_pending("S")
        return last

    last = asyncio.run(scenario())
    assert len(fired) == 1
    code, at = fired[0]
    assert code == "S"
    assert at - last >= DELAY * 0.9


def test_sessions_are_independent():
    """Triggers for different sessions do not coalesce with each other."""
    fired = []

    async def broadcast(code):
        fired.append(code)

    async def scenario():
        coalescer = UpdateCoalescer(broadcast, delay=DELAY)
        coalescer.schedule_broadcast("A")
        coalescer.schedule_broadcast("B")
        coalescer.schedule_broadcast("A")
        assert coalescer.pending_count == 2
        await asyncio.sleep(DELAY * 4)

    asyncio.run(scenario())
    assert sorted(fired) == ["A", "B"]


def test_failed_broadcast_does_not_leave_stuck_timer():
    """An exception in the broadcaster clears the pending entry."""
    calls = []

    async def broadcast(code):
        calls.append(code)
        if len(calls) == 1:
            raise RuntimeError("store unavailable")

    async def scenario():
        coalescer = UpdateCoalescer(broadcast, delay=DELAY)
        coalescer.schedule_broadcast("S")
        await asyncio.sleep(DELAY * 3)
        assert not coalescer.is_pending("S")
        coalescer.schedule_broadcast("S")
        await asyncio.sleep(DELAY * 3)

    asyncio.run(scenario())
    assert calls == ["S", "S"]


def test_trigger_during_broadcast_does_not_cancel_it():
    """A running broadcast completes; a trigger arriving meanwhile gets its own."""
    events = []

    async def broadcast(code):
        events.append("start")
        await asyncio.sleep(DELAY * 2)
        events.append("done")

    async def scenario():
        coalescer = UpdateCoalescer(broadcast, delay=DELAY)
        coalescer.schedule_broadcast("S")
        await asyncio.sleep(DELAY * 1.5)  # first one is running now
        coalescer.schedule_broadcast("S")
        await asyncio.sleep(DELAY * 6)

    asyncio.run(scenario())
    assert events == ["start", "done", "start", "done"] or events == ["start", "start", "done", "done"]
    assert events.count("done") == 2


def test_aclose_cancels_pending_timers():
    """Shutdown drops broadcasts that have not fired yet."""
    fired = []

    async def broadcast(code):
        fired.append(code)

    async def scenario():
        coalescer = UpdateCoalescer(broadcast, delay=DELAY)
        coalescer.schedule_broadcast("S")
        await coalescer.aclose()
        assert coalescer.pending_count == 0
        await asyncio.sleep(DELAY * 2)

    asyncio.run(scenario())
    assert fired == []
