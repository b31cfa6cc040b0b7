"""Tests for the output channel."""
from __future__ import annotations

import asyncio

import pytest

from pokerlive_server.channel import Channel, ChannelClosed, WriteResult


def test_send_and_receive():
    """Delivered messages come out in order."""
    ch = Channel()
    assert ch.send("a") is WriteResult.DELIVERED
    assert ch.send("b") is WriteResult.DELIVERED

    async def read():
        return [await ch.receive(timeout=1), await ch.receive(timeout=1)]

    assert asyncio.run(read()) == ["a", "b"]


def test_receive_times_out_with_none():
    """No message within the timeout yields None."""
    ch = Channel()
    assert asyncio.run(ch.receive(timeout=0.01)) is None


def test_closed_channel_fails_writes():
    """Writes to a closed channel fail and buffered data is dropped."""
    ch = Channel()
    ch.send("a")
    ch.close()
    assert not ch.writable
    assert ch.send("b") is WriteResult.FAILED
    assert ch.drain() == []


def test_full_buffer_fails_and_closes():
    """A client that stops reading is cut off."""
    ch = Channel(queue_size=2)
    assert ch.send("1") is WriteResult.DELIVERED
    assert ch.send("2") is WriteResult.DELIVERED
    assert ch.send("3") is WriteResult.FAILED
    assert ch.closed


def test_close_wakes_waiting_reader():
    """A reader blocked on receive sees ChannelClosed as soon as it closes."""
    ch = Channel()

    async def scenario():
        waiter = asyncio.ensure_future(ch.receive(timeout=5))
        await asyncio.sleep(0.01)
        ch.close()
        with pytest.raises(ChannelClosed):
            await asyncio.wait_for(waiter, timeout=1)
        with pytest.raises(ChannelClosed):
            await ch.receive(timeout=0.01)

    asyncio.run(scenario())


def test_close_is_idempotent():
    """Closing twice is harmless."""
    ch = Channel()
    ch.close()
    ch.close()
    assert ch.closed
