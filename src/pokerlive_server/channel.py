from __future__ import annotations

import asyncio
import enum
import itertools
from typing import List, Optional


class WriteResult(str, enum.Enum):
    DELIVERED = "delivered"
    FAILED = "failed"


class ChannelClosed(Exception):
    """Raised by :meth:`Channel.receive` once the channel is closed."""


_CLOSED = object()
_ids = itertools.count(1)


class Channel:
    """Outbound notification conduit for one connected client.

    Writes never block: a closed channel or a full buffer is a failed write,
    and a full buffer also closes the channel since that client is not
    keeping up.
    """

    def __init__(self, queue_size: int = 100, participant: Optional[str] = None):
        self.id = next(_ids)
        self.participant = participant
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size + 1)
        self._queue_size = queue_size
        self._closed = False

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<Channel {self.id} {state} participant={self.participant!r}>"

    @property
    def writable(self) -> bool:
        return not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, message: str) -> WriteResult:
        if self._closed:
            return WriteResult.FAILED
        # one slot stays reserved for the close marker
        if self._queue.qsize() >= self._queue_size:
            self.close()
            return WriteResult.FAILED
        self._queue.put_nowait(message)
        return WriteResult.DELIVERED

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.drain()
        self._queue.put_nowait(_CLOSED)

    def drain(self) -> List[str]:
        """Remove and return everything buffered, without waiting."""
        out: List[str] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is _CLOSED:
                # keep the reader's wake-up marker in place
                self._queue.put_nowait(_CLOSED)
                break
            out.append(item)
        return out

    async def receive(self, timeout: Optional[float] = None) -> Optional[str]:
        """Next buffered message, or ``None`` if ``timeout`` elapses first."""
        if self._closed and self._queue.empty():
            raise ChannelClosed()
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            raise ChannelClosed()
        return item
