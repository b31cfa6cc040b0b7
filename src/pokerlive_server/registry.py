"""Per-session bookkeeping of open event-stream channels.

Maps session code -> set of channels (one per connected tab) and
(session code, participant name) -> the most recent channel opened for that
participant. The latter only feeds the derived ``connected`` flag.
"""
from __future__ import annotations

import threading
from typing import Dict, List, Optional, Set, Tuple

from .channel import Channel
from .logging_config import get_logger

logger = get_logger(__name__)

ParticipantKey = Tuple[str, str]


class ConnectionRegistry:
    def __init__(self) -> None:
        self._sessions: Dict[str, Set[Channel]] = {}
        self._participants: Dict[ParticipantKey, Channel] = {}
        # Coarse lock; never held across an await.
        self._lock = threading.Lock()

    def subscribe(self, session_code: str, channel: Channel) -> None:
        with self._lock:
            self._sessions.setdefault(session_code, set()).add(channel)

    def unsubscribe(self, session_code: str, channel: Channel) -> None:
        with self._lock:
            channels = self._sessions.get(session_code)
            if channels is not None:
                channels.discard(channel)
                if not channels:
                    del self._sessions[session_code]
            stale = [
                key for key, ch in self._participants.items()
                if ch is channel and key[0] == session_code
            ]
            for key in stale:
                del self._participants[key]

    def track_participant(self, session_code: str, name: str, channel: Channel) -> None:
        with self._lock:
            self._participants[(session_code, name)] = channel

    def untrack_participant(
        self, session_code: str, name: str, channel: Optional[Channel] = None
    ) -> None:
        """Forget the participant mapping.

        With ``channel`` given, the mapping is only removed while it still
        points at that channel, so closing an older tab leaves a newer one
        tracked.
        """
        key = (session_code, name)
        with self._lock:
            current = self._participants.get(key)
            if current is None:
                return
            if channel is None or current is channel:
                del self._participants[key]

    def is_connected(self, session_code: str, name: str) -> bool:
        with self._lock:
            channel = self._participants.get((session_code, name))
        return channel is not None and channel.writable

    def has_subscribers(self, session_code: str) -> bool:
        with self._lock:
            return session_code in self._sessions

    def channels(self, session_code: str) -> List[Channel]:
        with self._lock:
            return list(self._sessions.get(session_code, ()))

    def connected_participants(self) -> Set[ParticipantKey]:
        with self._lock:
            return {key for key, ch in self._participants.items() if ch.writable}

    def close_session(self, session_code: str) -> int:
        """Close and drop every channel of a session. Returns how many."""
        with self._lock:
            channels = self._sessions.pop(session_code, set())
            for key in [k for k in self._participants if k[0] == session_code]:
                del self._participants[key]
        for channel in channels:
            channel.close()
        if channels:
            logger.info(f"Closed {len(channels)} channels for session {session_code}")
        return len(channels)

    def close_all(self) -> None:
        with self._lock:
            codes = list(self._sessions)
        for code in codes:
            self.close_session(code)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return sum(len(chs) for chs in self._sessions.values())

    @property
    def session_count(self) -> int:
        with self._lock:
            return len(self._sessions)
