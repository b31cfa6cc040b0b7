from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import aiosqlite

from .models import (
    DEFAULT_SCALE,
    DEFAULT_TITLE,
    Participant,
    ParticipantUpdate,
    RecentSession,
    Round,
    SessionSnapshot,
    VotingState,
    VotingStateUpdate,
)


CREATE_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
  session_code TEXT PRIMARY KEY,
  title TEXT NOT NULL,
  voting_in_progress INTEGER NOT NULL DEFAULT 0,
  votes_revealed INTEGER NOT NULL DEFAULT 0,
  vote_average TEXT NOT NULL DEFAULT '',
  final_estimate TEXT NOT NULL DEFAULT '',
  current_round INTEGER NOT NULL DEFAULT 1,
  current_round_description TEXT NOT NULL DEFAULT 'Round 1',
  story_point_scale TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS participants (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  session_code TEXT NOT NULL REFERENCES sessions(session_code) ON DELETE CASCADE,
  name TEXT NOT NULL,
  user_id TEXT NOT NULL DEFAULT '',
  voted INTEGER NOT NULL DEFAULT 0,
  vote TEXT,
  is_host INTEGER NOT NULL DEFAULT 0,
  is_observer INTEGER NOT NULL DEFAULT 0,
  last_seen INTEGER NOT NULL,
  UNIQUE(session_code, name)
);
CREATE TABLE IF NOT EXISTS voting_rounds (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  session_code TEXT NOT NULL REFERENCES sessions(session_code) ON DELETE CASCADE,
  round_number INTEGER NOT NULL,
  description TEXT NOT NULL,
  vote_average TEXT NOT NULL DEFAULT '',
  final_estimate TEXT NOT NULL DEFAULT '',
  created_at INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS round_votes (
  round_id INTEGER NOT NULL REFERENCES voting_rounds(id) ON DELETE CASCADE,
  participant_name TEXT NOT NULL,
  vote TEXT NOT NULL,
  UNIQUE(round_id, participant_name)
);
CREATE TABLE IF NOT EXISTS participant_sessions (
  user_id TEXT NOT NULL,
  session_code TEXT NOT NULL REFERENCES sessions(session_code) ON DELETE CASCADE,
  participant_name TEXT NOT NULL,
  is_host INTEGER NOT NULL DEFAULT 0,
  first_joined INTEGER NOT NULL,
  last_active INTEGER NOT NULL,
  UNIQUE(user_id, session_code, participant_name)
);
CREATE INDEX IF NOT EXISTS idx_participants_session_code ON participants(session_code);
CREATE INDEX IF NOT EXISTS idx_participants_last_seen ON participants(last_seen);
CREATE INDEX IF NOT EXISTS idx_sessions_updated_at ON sessions(updated_at);
CREATE INDEX IF NOT EXISTS idx_voting_rounds_session ON voting_rounds(session_code);
CREATE INDEX IF NOT EXISTS idx_participant_sessions_user ON participant_sessions(user_id, last_active);
"""

SESSION_COLUMNS = """
  session_code, title, voting_in_progress, votes_revealed,
  vote_average, final_estimate, current_round, current_round_description,
  story_point_scale, created_at, updated_at
"""

RECENT_SESSIONS_LIMIT = 10
# How far back terminate pushes last_seen; past any sane participant timeout.
TERMINATE_AGE_MS = 10 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


def next_stamp(previous: Optional[str]) -> str:
    """UTC ISO timestamp strictly later than ``previous``."""
    now = datetime.now(timezone.utc)
    if previous:
        prev = datetime.fromisoformat(previous)
        if now <= prev:
            now = prev + timedelta(microseconds=1)
    return now.isoformat(timespec="microseconds")


@dataclass
class CleanupResult:
    removed_participants: List[Tuple[str, str]] = field(default_factory=list)
    removed_sessions: List[str] = field(default_factory=list)

    @property
    def touched_sessions(self) -> Set[str]:
        """Sessions that still exist but lost participants."""
        gone = set(self.removed_sessions)
        return {code for code, _ in self.removed_participants if code not in gone}


class SessionStore:
    """Session state on a single aiosqlite connection.

    Every public method holds ``_lock`` for its whole duration, reads
    included: a write transaction spans several awaited statements and a
    read slipping in between would see it half applied. Methods prefixed
    with an underscore run unlocked and are only called with the lock held.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        self.db = await aiosqlite.connect(self.db_path)
        await self.db.execute("PRAGMA foreign_keys=ON;")
        await self.db.execute("PRAGMA journal_mode=WAL;")
        await self.db.execute("PRAGMA synchronous=NORMAL;")
        await self.db.executescript(CREATE_SQL)
        await self.db.commit()

    async def close(self) -> None:
        if self.db:
            await self.db.close()
            self.db = None

    async def _touch(self, session_code: str) -> None:
        assert self.db is not None, "DB not connected"
        cur = await self.db.execute(
            "SELECT updated_at FROM sessions WHERE session_code = ?", (session_code,)
        )
        row = await cur.fetchone()
        if row is None:
            return
        await self.db.execute(
            "UPDATE sessions SET updated_at = ? WHERE session_code = ?",
            (next_stamp(row[0]), session_code),
        )

    async def _exists(self, session_code: str) -> bool:
        assert self.db is not None, "DB not connected"
        cur = await self.db.execute(
            "SELECT 1 FROM sessions WHERE session_code = ?", (session_code,)
        )
        return await cur.fetchone() is not None

    async def session_exists(self, session_code: str) -> bool:
        async with self._lock:
            return await self._exists(session_code)

    async def create_session(
        self,
        session_code: str,
        host_name: str,
        user_id: str,
        title: Optional[str] = None,
        story_point_scale: Optional[List[str]] = None,
    ) -> SessionSnapshot:
        """Insert a session with its host.

        Raises:
            sqlite3.IntegrityError: if the session code is already taken
        """
        assert self.db is not None, "DB not connected"
        stamp = next_stamp(None)
        scale = story_point_scale or DEFAULT_SCALE
        async with self._lock:
            try:
                await self.db.execute(
                    """
                    INSERT INTO sessions (session_code, title, story_point_scale, created_at, updated_at)
                    VALUES (?,?,?,?,?)
                    """,
                    (session_code, title or DEFAULT_TITLE, json.dumps(scale), stamp, stamp),
                )
                await self.db.execute(
                    """
                    INSERT INTO participants (session_code, name, user_id, is_host, last_seen)
                    VALUES (?,?,?,1,?)
                    """,
                    (session_code, host_name, user_id, now_ms()),
                )
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
            snapshot = await self._get_session(session_code)
        assert snapshot is not None
        return snapshot

    async def get_session(self, session_code: str) -> Optional[SessionSnapshot]:
        async with self._lock:
            return await self._get_session(session_code)

    async def _get_session(self, session_code: str) -> Optional[SessionSnapshot]:
        assert self.db is not None, "DB not connected"
        cur = await self.db.execute(
            f"SELECT {SESSION_COLUMNS} FROM sessions WHERE session_code = ?",
            (session_code,),
        )
        row = await cur.fetchone()
        if row is None:
            return None
        participants = await self._participants(session_code)
        return self._snapshot(row, participants)

    async def _participants(self, session_code: str) -> List[Participant]:
        assert self.db is not None, "DB not connected"
        cur = await self.db.execute(
            """
            SELECT name, voted, vote, is_host, is_observer, last_seen
            FROM participants
            WHERE session_code = ?
            ORDER BY id ASC
            """,
            (session_code,),
        )
        rows = await cur.fetchall()
        return [
            Participant(
                name=name,
                voted=bool(voted),
                vote=vote,
                is_host=bool(is_host),
                is_observer=bool(is_observer),
                last_seen=last_seen,
            )
            for name, voted, vote, is_host, is_observer, last_seen in rows
        ]

    @staticmethod
    def _snapshot(row: Iterable[Any], participants: List[Participant]) -> SessionSnapshot:
        (
            code,
            title,
            voting_in_progress,
            votes_revealed,
            vote_average,
            final_estimate,
            current_round,
            current_round_description,
            scale_json,
            created_at,
            updated_at,
        ) = row
        try:
            scale = json.loads(scale_json) if scale_json else list(DEFAULT_SCALE)
        except json.JSONDecodeError:
            scale = list(DEFAULT_SCALE)
        return SessionSnapshot(
            session_code=code,
            title=title,
            participants=participants,
            voting_state=VotingState(
                voting_in_progress=bool(voting_in_progress),
                votes_revealed=bool(votes_revealed),
                vote_average=vote_average or "",
                final_estimate=final_estimate or "",
                current_round=int(current_round),
                current_round_description=current_round_description,
            ),
            story_point_scale=scale,
            created_at=created_at,
            last_updated=updated_at,
        )

    async def join_session(
        self, session_code: str, player_name: str, user_id: str, is_observer: bool = False
    ) -> Optional[SessionSnapshot]:
        """Add or refresh a participant.

        The participant is host only if ``user_id`` already holds host in this
        session, so a returning host keeps control.
        """
        assert self.db is not None, "DB not connected"
        async with self._lock:
            if not await self._exists(session_code):
                return None
            cur = await self.db.execute(
                "SELECT 1 FROM participants WHERE session_code = ? AND user_id = ? AND is_host = 1",
                (session_code, user_id),
            )
            is_host = await cur.fetchone() is not None
            try:
                await self.db.execute(
                    """
                    INSERT INTO participants (session_code, name, user_id, is_host, is_observer, last_seen)
                    VALUES (?,?,?,?,?,?)
                    ON CONFLICT (session_code, name) DO UPDATE SET
                      user_id = excluded.user_id,
                      is_host = excluded.is_host,
                      is_observer = excluded.is_observer,
                      last_seen = excluded.last_seen
                    """,
                    (session_code, player_name, user_id, int(is_host), int(is_observer), now_ms()),
                )
                await self._touch(session_code)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
            return await self._get_session(session_code)

    async def update_participant(
        self, session_code: str, player_name: str, updates: ParticipantUpdate
    ) -> Optional[SessionSnapshot]:
        """Apply a partial participant update.

        Returns:
            The new snapshot, or None if the session or participant is unknown
        """
        assert self.db is not None, "DB not connected"
        sets: List[str] = []
        params: List[Any] = []
        if updates.voted is not None:
            sets.append("voted = ?")
            params.append(int(updates.voted))
        if updates.vote is not None:
            sets.append("vote = ?")
            params.append(updates.vote)
        if updates.is_observer is not None:
            sets.append("is_observer = ?")
            params.append(int(updates.is_observer))
        sets.append("last_seen = ?")
        params.append(updates.last_seen if updates.last_seen is not None else now_ms())

        async with self._lock:
            try:
                cur = await self.db.execute(
                    f"UPDATE participants SET {', '.join(sets)} WHERE session_code = ? AND name = ?",
                    (*params, session_code, player_name),
                )
                if not cur.rowcount:
                    await self.db.rollback()
                    return None
                await self._touch(session_code)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
            return await self._get_session(session_code)

    async def update_voting_state(
        self, session_code: str, updates: VotingStateUpdate
    ) -> Optional[SessionSnapshot]:
        sets: List[str] = []
        params: List[Any] = []
        if updates.voting_in_progress is not None:
            sets.append("voting_in_progress = ?")
            params.append(int(updates.voting_in_progress))
        if updates.votes_revealed is not None:
            sets.append("votes_revealed = ?")
            params.append(int(updates.votes_revealed))
        if updates.vote_average is not None:
            sets.append("vote_average = ?")
            params.append(updates.vote_average)
        if updates.final_estimate is not None:
            sets.append("final_estimate = ?")
            params.append(updates.final_estimate)

        if not sets:
            return await self.get_session(session_code)
        return await self._update_session_columns(session_code, sets, params)

    async def update_session(
        self,
        session_code: str,
        title: Optional[str] = None,
        story_point_scale: Optional[List[str]] = None,
    ) -> Optional[SessionSnapshot]:
        sets: List[str] = []
        params: List[Any] = []
        if title is not None:
            sets.append("title = ?")
            params.append(title)
        if story_point_scale is not None:
            sets.append("story_point_scale = ?")
            params.append(json.dumps(story_point_scale))

        if not sets:
            return await self.get_session(session_code)
        return await self._update_session_columns(session_code, sets, params)

    async def _update_session_columns(
        self, session_code: str, sets: List[str], params: List[Any]
    ) -> Optional[SessionSnapshot]:
        assert self.db is not None, "DB not connected"
        async with self._lock:
            try:
                cur = await self.db.execute(
                    f"UPDATE sessions SET {', '.join(sets)} WHERE session_code = ?",
                    (*params, session_code),
                )
                if not cur.rowcount:
                    await self.db.rollback()
                    return None
                await self._touch(session_code)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
            return await self._get_session(session_code)

    async def _clear_votes(self, session_code: str) -> None:
        assert self.db is not None, "DB not connected"
        await self.db.execute(
            "UPDATE participants SET voted = 0, vote = NULL, last_seen = ? WHERE session_code = ?",
            (now_ms(), session_code),
        )

    async def reset_votes(self, session_code: str) -> Optional[SessionSnapshot]:
        """Clear every vote and reopen voting."""
        assert self.db is not None, "DB not connected"
        async with self._lock:
            if not await self._exists(session_code):
                return None
            try:
                await self._clear_votes(session_code)
                await self.db.execute(
                    """
                    UPDATE sessions
                    SET voting_in_progress = 1, votes_revealed = 0,
                        vote_average = '', final_estimate = ''
                    WHERE session_code = ?
                    """,
                    (session_code,),
                )
                await self._touch(session_code)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
            return await self._get_session(session_code)

    async def _insert_round(
        self,
        session_code: str,
        round_number: int,
        description: str,
        votes: Dict[str, str],
        vote_average: str,
        final_estimate: str,
        created_at: int,
    ) -> int:
        assert self.db is not None, "DB not connected"
        cur = await self.db.execute(
            """
            INSERT INTO voting_rounds (session_code, round_number, description, vote_average, final_estimate, created_at)
            VALUES (?,?,?,?,?,?)
            """,
            (session_code, round_number, description, vote_average, final_estimate, created_at),
        )
        round_id = int(cur.lastrowid)
        await self.db.executemany(
            """
            INSERT INTO round_votes (round_id, participant_name, vote) VALUES (?,?,?)
            ON CONFLICT (round_id, participant_name) DO UPDATE SET vote = excluded.vote
            """,
            [(round_id, name, vote) for name, vote in votes.items()],
        )
        return round_id

    async def start_round(
        self,
        session_code: str,
        description: str = "",
        complete_current: bool = False,
        vote_average: Optional[str] = None,
        final_estimate: Optional[str] = None,
    ) -> Optional[Tuple[SessionSnapshot, Optional[Round]]]:
        """Move the session to its next round.

        When ``complete_current`` is set and the round has an average or any
        vote, the current round is archived first.

        Returns:
            Tuple of (new snapshot, archived round or None), or None if the
            session does not exist
        """
        assert self.db is not None, "DB not connected"
        async with self._lock:
            current = await self._get_session(session_code)
            if current is None:
                return None
            state = current.voting_state
            votes = {p.name: p.vote for p in current.participants if p.vote}
            completed: Optional[Round] = None
            next_round = state.current_round + 1
            next_description = description.strip() or f"Round {next_round}"
            try:
                if complete_current and (vote_average or votes):
                    completed = Round(
                        round_number=state.current_round,
                        description=state.current_round_description,
                        votes=votes,
                        vote_average=vote_average or "",
                        final_estimate=final_estimate or vote_average or "",
                        timestamp=now_ms(),
                    )
                    await self._insert_round(
                        session_code,
                        completed.round_number,
                        completed.description,
                        completed.votes,
                        completed.vote_average,
                        completed.final_estimate,
                        completed.timestamp,
                    )
                await self._clear_votes(session_code)
                await self.db.execute(
                    """
                    UPDATE sessions
                    SET voting_in_progress = 1, votes_revealed = 0,
                        vote_average = '', final_estimate = '',
                        current_round = ?, current_round_description = ?
                    WHERE session_code = ?
                    """,
                    (next_round, next_description, session_code),
                )
                await self._touch(session_code)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
            snapshot = await self._get_session(session_code)
        if snapshot is None:
            return None
        return snapshot, completed

    async def save_round(
        self,
        session_code: str,
        round_number: int,
        description: str,
        votes: Dict[str, str],
        vote_average: str = "",
        final_estimate: str = "",
    ) -> Optional[int]:
        """Record a finished round as-is. Returns its id, or None if no session."""
        assert self.db is not None, "DB not connected"
        async with self._lock:
            if not await self._exists(session_code):
                return None
            try:
                round_id = await self._insert_round(
                    session_code, round_number, description, votes,
                    vote_average, final_estimate, now_ms(),
                )
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
        return round_id

    async def list_rounds(self, session_code: str) -> List[Round]:
        assert self.db is not None, "DB not connected"
        async with self._lock:
            cur = await self.db.execute(
                """
                SELECT id, round_number, description, vote_average, final_estimate, created_at
                FROM voting_rounds
                WHERE session_code = ?
                ORDER BY round_number ASC, id ASC
                """,
                (session_code,),
            )
            rounds_rows = await cur.fetchall()
            rounds: List[Round] = []
            for round_id, number, description, average, estimate, created_at in rounds_rows:
                vcur = await self.db.execute(
                    "SELECT participant_name, vote FROM round_votes WHERE round_id = ? ORDER BY participant_name ASC",
                    (round_id,),
                )
                votes = {name: vote for name, vote in await vcur.fetchall()}
                rounds.append(
                    Round(
                        round_number=number,
                        description=description,
                        votes=votes,
                        vote_average=average or "",
                        final_estimate=estimate or "",
                        timestamp=created_at,
                    )
                )
        return rounds

    async def is_original_host(self, session_code: str, user_id: str, player_name: str) -> bool:
        assert self.db is not None, "DB not connected"
        async with self._lock:
            cur = await self.db.execute(
                """
                SELECT 1 FROM participants
                WHERE session_code = ? AND user_id = ? AND name = ? AND is_host = 1
                """,
                (session_code, user_id, player_name),
            )
            return await cur.fetchone() is not None

    async def track_participant_session(
        self, session_code: str, player_name: str, user_id: str, is_host: bool = False
    ) -> bool:
        """Remember that ``user_id`` took part in a session under ``player_name``.

        Feeds the per-user recent sessions list; session state is untouched.
        Returns False if the session does not exist.
        """
        assert self.db is not None, "DB not connected"
        now = now_ms()
        async with self._lock:
            if not await self._exists(session_code):
                return False
            try:
                await self.db.execute(
                    """
                    INSERT INTO participant_sessions
                      (user_id, session_code, participant_name, is_host, first_joined, last_active)
                    VALUES (?,?,?,?,?,?)
                    ON CONFLICT (user_id, session_code, participant_name) DO UPDATE SET
                      last_active = excluded.last_active,
                      is_host = excluded.is_host
                    """,
                    (user_id, session_code, player_name, int(is_host), now, now),
                )
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
        return True

    async def user_sessions(
        self, user_id: str, limit: int = RECENT_SESSIONS_LIMIT
    ) -> List[RecentSession]:
        """Sessions ``user_id`` was tracked in, most recently active first."""
        assert self.db is not None, "DB not connected"
        async with self._lock:
            cur = await self.db.execute(
                """
                SELECT ps.session_code, ps.participant_name, ps.is_host, ps.last_active, s.title
                FROM participant_sessions ps
                JOIN sessions s ON ps.session_code = s.session_code
                WHERE ps.user_id = ?
                ORDER BY ps.last_active DESC
                LIMIT ?
                """,
                (user_id, limit),
            )
            rows = await cur.fetchall()
        return [
            RecentSession(
                session_code=code,
                player_name=name,
                session_title=title,
                is_host=bool(is_host),
                last_accessed=last_active,
                user_id=user_id,
            )
            for code, name, is_host, last_active, title in rows
        ]

    async def list_sessions(self) -> List[SessionSnapshot]:
        """All sessions, most recently updated first."""
        assert self.db is not None, "DB not connected"
        async with self._lock:
            cur = await self.db.execute(
                f"SELECT {SESSION_COLUMNS} FROM sessions ORDER BY updated_at DESC"
            )
            rows = await cur.fetchall()
            return [self._snapshot(row, await self._participants(row[0])) for row in rows]

    async def terminate_session(self, session_code: str) -> Optional[SessionSnapshot]:
        """Mark every participant as long gone without deleting the session.

        The next cleanup then removes the non-host participants.
        """
        assert self.db is not None, "DB not connected"
        async with self._lock:
            if not await self._exists(session_code):
                return None
            try:
                await self.db.execute(
                    "UPDATE participants SET last_seen = ? WHERE session_code = ?",
                    (now_ms() - TERMINATE_AGE_MS, session_code),
                )
                await self._touch(session_code)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
            return await self._get_session(session_code)

    async def delete_session(self, session_code: str) -> bool:
        assert self.db is not None, "DB not connected"
        async with self._lock:
            try:
                cur = await self.db.execute(
                    "DELETE FROM sessions WHERE session_code = ?", (session_code,)
                )
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
        return bool(cur.rowcount)

    async def cleanup(
        self,
        participant_timeout_seconds: int,
        session_ttl_hours: int,
        keep: Iterable[Tuple[str, str]] = (),
    ) -> CleanupResult:
        """Delete idle non-host participants and expired sessions.

        Args:
            participant_timeout_seconds: Drop participants unseen this long
            session_ttl_hours: Drop sessions not updated within this window
            keep: (session code, name) pairs that must survive, typically
                participants with a live event stream

        Returns:
            What was removed
        """
        assert self.db is not None, "DB not connected"
        keep_set = set(keep)
        cutoff_ms = now_ms() - participant_timeout_seconds * 1000
        session_cutoff = (
            datetime.now(timezone.utc) - timedelta(hours=session_ttl_hours)
        ).isoformat(timespec="microseconds")
        result = CleanupResult()

        async with self._lock:
            try:
                cur = await self.db.execute(
                    "SELECT id, session_code, name FROM participants WHERE is_host = 0 AND last_seen < ?",
                    (cutoff_ms,),
                )
                stale = [
                    (pid, code, name) for pid, code, name in await cur.fetchall()
                    if (code, name) not in keep_set
                ]
                await self.db.executemany(
                    "DELETE FROM participants WHERE id = ?", [(pid,) for pid, _, _ in stale]
                )
                result.removed_participants = [(code, name) for _, code, name in stale]

                cur = await self.db.execute(
                    "SELECT session_code FROM sessions WHERE updated_at < ?", (session_cutoff,)
                )
                result.removed_sessions = [code for (code,) in await cur.fetchall()]
                await self.db.executemany(
                    "DELETE FROM sessions WHERE session_code = ?",
                    [(code,) for code in result.removed_sessions],
                )
                for code in result.touched_sessions:
                    await self._touch(code)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
        return result
