from __future__ import annotations

import time
from typing import Awaitable, Callable, Optional, TypeVar

from .logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class LazyCleanup:
    """Runs a housekeeping job at most once per ``interval`` seconds.

    Meant to be poked from request handlers. The clock is advanced before the
    job runs so overlapping calls skip; a failure rewinds it so the next call
    retries.
    """

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self._clock = clock
        self._last_run: Optional[float] = None

    def due(self) -> bool:
        if self._last_run is None:
            return True
        return self._clock() - self._last_run >= self.interval

    async def maybe_run(self, job: Callable[[], Awaitable[T]]) -> Optional[T]:
        if not self.due():
            return None
        previous = self._last_run
        self._last_run = self._clock()
        try:
            return await job()
        except Exception:
            logger.exception("Lazy cleanup failed")
            self._last_run = previous
            return None

    async def force(self, job: Callable[[], Awaitable[T]]) -> T:
        result = await job()
        self._last_run = self._clock()
        return result
