"""Tests for the connection registry."""
from __future__ import annotations

from pokerlive_server.channel import Channel
from pokerlive_server.registry import ConnectionRegistry

from conftest import CODE


def test_subscribe_creates_session_entry():
    """First subscriber creates the session entry."""
    registry = ConnectionRegistry()
    assert not registry.has_subscribers(CODE)
    ch = Channel()
    registry.subscribe(CODE, ch)
    assert registry.has_subscribers(CODE)
    assert registry.channels(CODE) == [ch]


def test_resubscribe_does_not_duplicate():
    """Adding the same channel twice keeps a single membership."""
    registry = ConnectionRegistry()
    ch = Channel()
    registry.subscribe(CODE, ch)
    registry.subscribe(CODE, ch)
    assert registry.subscriber_count == 1


def test_last_unsubscribe_removes_entry():
    """The session entry disappears with its last channel."""
    registry = ConnectionRegistry()
    a, b = Channel(), Channel()
    registry.subscribe(CODE, a)
    registry.subscribe(CODE, b)
    registry.unsubscribe(CODE, a)
    assert registry.has_subscribers(CODE)
    registry.unsubscribe(CODE, b)
    assert not registry.has_subscribers(CODE)
    assert registry.session_count == 0
    # unknown channel / session is harmless
    registry.unsubscribe(CODE, a)


def test_is_connected_requires_writable_channel():
    """A tracked participant counts as connected only while the channel is open."""
    registry = ConnectionRegistry()
    ch = Channel()
    registry.subscribe(CODE, ch)
    registry.track_participant(CODE, "Ann", ch)
    assert registry.is_connected(CODE, "Ann")
    assert not registry.is_connected(CODE, "Bob")
    ch.close()
    assert not registry.is_connected(CODE, "Ann")


def test_track_last_writer_wins():
    """A newer tab replaces the participant mapping."""
    registry = ConnectionRegistry()
    old, new = Channel(), Channel()
    registry.track_participant(CODE, "Ann", old)
    registry.track_participant(CODE, "Ann", new)
    old.close()
    assert registry.is_connected(CODE, "Ann")


def test_untrack_with_stale_channel_keeps_newer_mapping():
    """Closing an older tab does not untrack the participant's newer tab."""
    registry = ConnectionRegistry()
    old, new = Channel(), Channel()
    registry.track_participant(CODE, "Ann", old)
    registry.track_participant(CODE, "Ann", new)
    registry.untrack_participant(CODE, "Ann", old)
    assert registry.is_connected(CODE, "Ann")
    registry.untrack_participant(CODE, "Ann")
    assert not registry.is_connected(CODE, "Ann")


def test_unsubscribe_untracks_participants_on_that_channel():
    """Pruning a channel also drops participant mappings pointing at it."""
    registry = ConnectionRegistry()
    ch = Channel()
    registry.subscribe(CODE, ch)
    registry.track_participant(CODE, "Ann", ch)
    registry.unsubscribe(CODE, ch)
    assert registry.connected_participants() == set()


def test_close_session_closes_channels():
    """Closing a session hangs up every channel and forgets participants."""
    registry = ConnectionRegistry()
    a, b = Channel(), Channel()
    other = Channel()
    registry.subscribe(CODE, a)
    registry.subscribe(CODE, b)
    registry.subscribe("ZZZZ9999", other)
    registry.track_participant(CODE, "Ann", a)

    assert registry.close_session(CODE) == 2
    assert a.closed and b.closed
    assert not other.closed
    assert not registry.has_subscribers(CODE)
    assert registry.connected_participants() == set()
    assert registry.close_session(CODE) == 0
