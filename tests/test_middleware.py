"""Tests for the rate limiting middleware."""
from __future__ import annotations

from pokerlive_server.middleware import RateLimitMiddleware


def test_sweep_forgets_idle_clients():
    """Clients with nothing inside the window are dropped from the table."""
    mw = RateLimitMiddleware(None, requests_per_minute=5)
    mw.requests = {
        "10.0.0.1": [1000.0],
        "10.0.0.2": [1000.0, 1050.0],
        "10.0.0.3": [],
    }
    mw._sweep(1070.0)
    assert mw.requests == {"10.0.0.2": [1000.0, 1050.0]}
    assert mw._last_sweep == 1070.0


def test_exempt_paths():
    assert RateLimitMiddleware._exempt("/healthz")
    assert RateLimitMiddleware._exempt("/api/sessions/ABCD2345/events")
    assert not RateLimitMiddleware._exempt("/api/sessions")
