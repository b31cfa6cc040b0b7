"""Shared fixtures and fakes for the PokerLive test suite."""
from __future__ import annotations

import json
from typing import List, Optional

import pytest

from pokerlive_server.models import Participant, SessionSnapshot, VotingState

CODE = "ABCD2345"


def make_snapshot(code: str = CODE, last_updated: str = "2026-01-01T00:00:00.000000+00:00") -> SessionSnapshot:
    return SessionSnapshot(
        session_code=code,
        title="Sprint 42",
        participants=[
            Participant(name="Hana", is_host=True, last_seen=1),
            Participant(name="Ann", voted=True, vote="5", last_seen=2),
            Participant(name="Bob", is_observer=True, last_seen=3),
        ],
        voting_state=VotingState(voting_in_progress=True),
        last_updated=last_updated,
    )


def decode(message: str) -> dict:
    """Payload of one ``data: ...`` SSE frame."""
    assert message.startswith("data: ")
    assert message.endswith("\n\n")
    return json.loads(message[len("data: "):])


class FakeStore:
    """Stands in for SessionStore on the read path."""

    def __init__(self, snapshot: Optional[SessionSnapshot] = None, error: Optional[Exception] = None):
        self.snapshot = snapshot
        self.error = error
        self.calls: List[str] = []

    async def get_session(self, session_code: str) -> Optional[SessionSnapshot]:
        self.calls.append(session_code)
        if self.error is not None:
            raise self.error
        return self.snapshot


@pytest.fixture
def snapshot() -> SessionSnapshot:
    return make_snapshot()
