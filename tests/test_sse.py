"""Tests for SSE framing and the per-client session event stream."""
from __future__ import annotations

import asyncio

from pokerlive_server.broadcaster import SessionBroadcaster
from pokerlive_server.channel import WriteResult
from pokerlive_server.registry import ConnectionRegistry
from pokerlive_server.sse import HEARTBEAT_EVENT, SessionEventStream, StreamState, format_event

from conftest import CODE, FakeStore, decode, make_snapshot


def _stream(participant=None, keepalive=10.0, store=None):
    registry = ConnectionRegistry()
    broadcaster = SessionBroadcaster(store or FakeStore(make_snapshot()), registry)
    stream = SessionEventStream(
        CODE, registry, broadcaster, participant=participant, keepalive_interval=keepalive
    )
    return registry, broadcaster, stream


async def _next(gen, timeout=1.0):
    return await asyncio.wait_for(gen.__anext__(), timeout=timeout)


def test_format_event():
    """Events are framed as a single data line."""
    assert format_event({"type": "heartbeat"}) == 'data: {"type": "heartbeat"}\n\n'
    assert decode(HEARTBEAT_EVENT) == {"type": "heartbeat"}


def test_open_sends_snapshot_and_relays_broadcasts():
    """Connect registers the channel, paints immediately, then relays updates."""
    registry, broadcaster, stream = _stream(participant="Ann")

    async def scenario():
        gen = stream.events()
        assert stream.state is StreamState.CONNECTING
        assert await _next(gen) == ":ok\n\n"

        first = decode(await _next(gen))
        assert stream.state is StreamState.OPEN
        assert registry.has_subscribers(CODE)
        assert first["type"] == "session-update"
        ann = next(p for p in first["participants"] if p["name"] == "Ann")
        assert ann["connected"] is True

        assert await broadcaster.broadcast(CODE) == 1
        second = decode(await _next(gen))
        assert second["sessionCode"] == CODE

        await gen.aclose()

    asyncio.run(scenario())
    assert stream.state is StreamState.CLOSED
    assert not registry.has_subscribers(CODE)
    assert not registry.is_connected(CODE, "Ann")


def test_heartbeat_is_sent_periodically():
    """An idle stream emits heartbeat events."""
    registry, broadcaster, stream = _stream(keepalive=0.05)

    async def scenario():
        gen = stream.events()
        await _next(gen)  # :ok
        await _next(gen)  # snapshot
        beat = await _next(gen)
        await gen.aclose()
        return beat

    assert asyncio.run(scenario()) == HEARTBEAT_EVENT


def test_failed_heartbeat_closes_stream():
    """A keep-alive write failure ends the stream without waiting for the transport."""
    registry, broadcaster, stream = _stream(participant="Ann", keepalive=0.05)

    async def scenario():
        gen = stream.events()
        await _next(gen)
        await _next(gen)
        stream.channel.send = lambda message: WriteResult.FAILED
        return [m async for m in gen]

    assert asyncio.run(scenario()) == []
    assert stream.state is StreamState.CLOSED
    assert not registry.has_subscribers(CODE)
    assert not registry.is_connected(CODE, "Ann")


def test_channel_pruned_by_broadcast_ends_stream():
    """When the channel dies the stream reaches CLOSED and cleans up once."""
    registry, broadcaster, stream = _stream()

    async def scenario():
        gen = stream.events()
        await _next(gen)
        await _next(gen)
        rest = asyncio.ensure_future(_drain(gen))
        await asyncio.sleep(0.01)
        stream.channel.close()
        return await asyncio.wait_for(rest, timeout=1)

    async def _drain(gen):
        return [m async for m in gen]

    assert asyncio.run(scenario()) == []
    assert stream.state is StreamState.CLOSED
    assert not registry.has_subscribers(CODE)
    stream.close()  # idempotent
    assert stream.state is StreamState.CLOSED


def test_close_before_open_is_terminal():
    """A stream closed before it opened never registers."""
    registry, broadcaster, stream = _stream()
    stream.close()

    async def scenario():
        await stream.open()

    asyncio.run(scenario())
    assert stream.state is StreamState.CLOSED
    assert not registry.has_subscribers(CODE)
