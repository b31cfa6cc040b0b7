"""Middleware components for the PokerLive server."""
from __future__ import annotations

import time
from typing import Callable, Dict, List

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .logging_config import get_logger

logger = get_logger(__name__)

WINDOW_SECONDS = 60.0


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP sliding one-minute window on API calls.

    Health checks and event streams are exempt: a stream is one long request
    and reconnecting tabs must not be locked out.
    """

    def __init__(self, app, requests_per_minute: int = 120):
        super().__init__(app)
        self.requests_per_minute = requests_per_minute
        self.requests: Dict[str, List[float]] = {}
        self._last_sweep = time.time()

    def _sweep(self, now: float) -> None:
        """Forget clients with no request inside the window."""
        self.requests = {
            ip: stamps for ip, stamps in self.requests.items()
            if stamps and now - stamps[-1] < WINDOW_SECONDS
        }
        self._last_sweep = now

    @staticmethod
    def _exempt(path: str) -> bool:
        return path == "/healthz" or path.endswith("/events")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if self._exempt(request.url.path):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        if "x-forwarded-for" in request.headers:
            client_ip = request.headers["x-forwarded-for"].split(",")[0].strip()

        now = time.time()
        if now - self._last_sweep >= WINDOW_SECONDS:
            self._sweep(now)
        recent = [t for t in self.requests.get(client_ip, ()) if now - t < WINDOW_SECONDS]
        if len(recent) >= self.requests_per_minute:
            self.requests[client_ip] = recent
            logger.warning(f"Rate limit exceeded for IP: {client_ip}")
            return JSONResponse(
                {"detail": "Too many requests. Please try again later."},
                status_code=429,
            )

        recent.append(now)
        self.requests[client_ip] = recent
        return await call_next(request)
