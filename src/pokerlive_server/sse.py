"""Server-Sent Events framing and the per-client session event stream."""
from __future__ import annotations

import asyncio
import enum
import json
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, Optional

from .channel import Channel, ChannelClosed, WriteResult
from .logging_config import get_logger

if TYPE_CHECKING:
    from .broadcaster import SessionBroadcaster
    from .registry import ConnectionRegistry

logger = get_logger(__name__)

SESSION_UPDATE = "session-update"
HEARTBEAT = "heartbeat"

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_event(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


HEARTBEAT_EVENT = format_event({"type": HEARTBEAT})


class StreamState(str, enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class SessionEventStream:
    """One client's live view of a session.

    ``CONNECTING -> OPEN -> CLOSED``. Opening registers the channel and sends
    the current snapshot straight away; while open, a heartbeat goes out every
    ``keepalive_interval`` seconds. Any failed write or a client disconnect
    ends in ``close()``, which runs its cleanup once. Closed is terminal.
    """

    def __init__(
        self,
        session_code: str,
        registry: "ConnectionRegistry",
        broadcaster: "SessionBroadcaster",
        *,
        participant: Optional[str] = None,
        keepalive_interval: float = 60.0,
        queue_size: int = 100,
    ):
        self.session_code = session_code
        self.participant = participant or None
        self.keepalive_interval = keepalive_interval
        self.channel = Channel(queue_size=queue_size, participant=self.participant)
        self.state = StreamState.CONNECTING
        self._registry = registry
        self._broadcaster = broadcaster

    async def open(self) -> None:
        if self.state is not StreamState.CONNECTING:
            return
        self._registry.subscribe(self.session_code, self.channel)
        if self.participant:
            self._registry.track_participant(self.session_code, self.participant, self.channel)
        self.state = StreamState.OPEN
        logger.debug(
            f"Client connected to session {self.session_code}"
            + (f" as {self.participant}" if self.participant else "")
        )
        result = await self._broadcaster.send_snapshot(self.session_code, self.channel)
        if result is WriteResult.FAILED:
            self.close()

    def close(self) -> None:
        if self.state is StreamState.CLOSED:
            return
        self.state = StreamState.CLOSED
        self.channel.close()
        self._registry.unsubscribe(self.session_code, self.channel)
        if self.participant:
            self._registry.untrack_participant(self.session_code, self.participant, self.channel)
        logger.debug(f"Client disconnected from session {self.session_code}")

    async def events(self) -> AsyncIterator[str]:
        """Response body: SSE frames until the stream closes."""
        loop = asyncio.get_running_loop()
        try:
            yield ":ok\n\n"
            await self.open()
            next_keepalive = loop.time() + self.keepalive_interval
            while self.state is StreamState.OPEN:
                try:
                    message = await self.channel.receive(
                        timeout=max(0.0, next_keepalive - loop.time())
                    )
                except ChannelClosed:
                    break
                if message is not None:
                    yield message
                if loop.time() >= next_keepalive:
                    if self.channel.send(HEARTBEAT_EVENT) is WriteResult.FAILED:
                        logger.debug(f"Heartbeat failed for {self.session_code}, closing")
                        break
                    next_keepalive = loop.time() + self.keepalive_interval
        finally:
            self.close()
