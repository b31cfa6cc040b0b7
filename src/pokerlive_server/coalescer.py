from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Set

from .logging_config import get_logger

logger = get_logger(__name__)

BroadcastFn = Callable[[str], Awaitable[Any]]


class UpdateCoalescer:
    """Trailing-edge debounce of broadcasts, one pending timer per session.

    Every ``schedule_broadcast`` call restarts the session's window, so a
    burst of triggers yields a single broadcast ``delay`` seconds after the
    last one. Must be called from the event loop thread.
    """

    def __init__(self, broadcast: BroadcastFn, delay: float = 1.0):
        self._broadcast = broadcast
        self.delay = delay
        self._pending: Dict[str, asyncio.Task] = {}
        self._inflight: Set[asyncio.Task] = set()

    def schedule_broadcast(self, session_code: str) -> None:
        # No await between cancel and replace.
        previous = self._pending.pop(session_code, None)
        if previous is not None:
            previous.cancel()
        task = asyncio.get_running_loop().create_task(
            self._fire_later(session_code), name=f"broadcast:{session_code}"
        )
        self._pending[session_code] = task
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _fire_later(self, session_code: str) -> None:
        await asyncio.sleep(self.delay)
        # Past this point the timer is spent; a newer trigger starts its own.
        if self._pending.get(session_code) is asyncio.current_task():
            del self._pending[session_code]
        try:
            await self._broadcast(session_code)
        except Exception:
            logger.exception(f"Broadcast failed for session {session_code}")

    def is_pending(self, session_code: str) -> bool:
        return session_code in self._pending

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def aclose(self) -> None:
        """Cancel timers that have not fired and wait for running broadcasts."""
        for task in self._pending.values():
            task.cancel()
        self._pending.clear()
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
