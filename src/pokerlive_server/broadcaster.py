from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from .channel import Channel, WriteResult
from .logging_config import get_logger
from .models import SessionSnapshot
from .registry import ConnectionRegistry
from .sse import SESSION_UPDATE, format_event

logger = get_logger(__name__)


class SnapshotSource(Protocol):
    async def get_session(self, session_code: str) -> Optional[SessionSnapshot]: ...


class SessionBroadcaster:
    """Pushes the current session snapshot to every open channel of a session.

    Best-effort: channels that refuse a write are pruned, the rest still get
    the update, and nothing is raised back to the caller.
    """

    def __init__(self, store: SnapshotSource, registry: ConnectionRegistry):
        self._store = store
        self._registry = registry

    def build_envelope(self, snapshot: SessionSnapshot) -> Dict[str, Any]:
        code = snapshot.session_code
        body = snapshot.public()
        participants: List[Dict[str, Any]] = []
        for p, wire in zip(snapshot.participants, body["participants"]):
            wire["connected"] = p.is_host or self._registry.is_connected(code, p.name)
            participants.append(wire)
        return {
            "type": SESSION_UPDATE,
            "sessionCode": body["sessionCode"],
            "title": body["title"],
            "participants": participants,
            "votingState": body["votingState"],
            "storyPointScale": body["storyPointScale"],
            "lastUpdated": body["lastUpdated"],
        }

    async def _load(self, session_code: str) -> Optional[SessionSnapshot]:
        try:
            snapshot = await self._store.get_session(session_code)
        except Exception:
            logger.exception(f"Could not load session {session_code} for broadcast")
            return None
        if snapshot is None:
            logger.debug(f"Session {session_code} vanished before broadcast")
        return snapshot

    async def broadcast(self, session_code: str) -> int:
        """Fan the snapshot out; returns the number of successful writes."""
        if not self._registry.has_subscribers(session_code):
            return 0

        snapshot = await self._load(session_code)
        if snapshot is None:
            return 0
        message = format_event(self.build_envelope(snapshot))

        delivered = 0
        dead: List[Channel] = []
        for channel in self._registry.channels(session_code):
            try:
                result = channel.send(message)
            except Exception as ex:
                logger.debug(f"Write to {channel!r} in {session_code} raised: {ex}")
                result = WriteResult.FAILED
            if result is WriteResult.DELIVERED:
                delivered += 1
            else:
                dead.append(channel)

        for channel in dead:
            self._registry.unsubscribe(session_code, channel)

        if dead:
            logger.debug(f"Pruned {len(dead)} dead channels from session {session_code}")
        if delivered:
            logger.info(f"Broadcasted update to {delivered} clients in session {session_code}")
        return delivered

    async def send_snapshot(self, session_code: str, channel: Channel) -> Optional[WriteResult]:
        """Unicast the current snapshot to one channel (initial paint).

        Returns ``None`` when there is no snapshot to send.
        """
        snapshot = await self._load(session_code)
        if snapshot is None:
            return None
        return channel.send(format_event(self.build_envelope(snapshot)))
