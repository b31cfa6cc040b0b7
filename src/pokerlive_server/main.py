from __future__ import annotations

import sqlite3
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse, StreamingResponse
from fastapi.middleware.cors import CORSMiddleware

from .settings import Settings
from .storage import CleanupResult, SessionStore, now_ms
from .registry import ConnectionRegistry
from .broadcaster import SessionBroadcaster
from .coalescer import UpdateCoalescer
from .maintenance import LazyCleanup
from .models import (
    CreateRoundIn,
    CreateSessionIn,
    JoinSessionIn,
    ParticipantUpdate,
    SaveRoundIn,
    STORY_POINT_SCALES,
    SessionUpdate,
    TrackParticipantIn,
    VerifyHostIn,
    VotingStateUpdate,
)
from .security import (
    clean_player_name,
    generate_session_code,
    verify_admin_token_or_404,
    verify_session_code_or_404,
)
from .sse import STREAM_HEADERS, SessionEventStream
from .middleware import RateLimitMiddleware
from .export import export_to_json, export_to_csv, export_to_ndjson
from .logging_config import get_logger, log_session_event, set_level

logger = get_logger(__name__)

VERSION = "0.1.0"
CODE_ATTEMPTS = 10
ACTIVE_WINDOW_MS = 5 * 60 * 1000


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()  # reads env
    set_level(settings.log_level)
    store = SessionStore(settings.db_path)
    registry = ConnectionRegistry()
    broadcaster = SessionBroadcaster(store, registry)
    coalescer = UpdateCoalescer(broadcaster.broadcast, delay=settings.broadcast_delay)
    lazy_cleanup = LazyCleanup(settings.cleanup_interval_seconds)
    start_time = time.time()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting PokerLive server", extra={"db_path": settings.db_path})
        await store.connect()
        app.state.settings = settings
        app.state.store = store
        app.state.registry = registry
        app.state.broadcaster = broadcaster
        app.state.coalescer = coalescer
        app.state.start_time = start_time
        yield
        logger.info("Shutting down PokerLive server")
        registry.close_all()
        await coalescer.aclose()
        await store.close()

    app = FastAPI(
        title="PokerLive",
        description="Planning poker sessions with live updates over Server-Sent Events",
        version=VERSION,
        lifespan=lifespan
    )

    if settings.enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins_list(),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    if settings.enable_rate_limit:
        app.add_middleware(RateLimitMiddleware, requests_per_minute=settings.rate_limit_per_minute)

    def session_changed(code: str, action: str, **fields: Any) -> None:
        # Called only after the write has committed.
        log_session_event(logger, action, code, **fields)
        coalescer.schedule_broadcast(code)

    async def run_cleanup() -> CleanupResult:
        result = await store.cleanup(
            settings.participant_timeout_seconds,
            settings.session_ttl_hours,
            keep=registry.connected_participants(),
        )
        for code in result.removed_sessions:
            registry.close_session(code)
        for code in result.touched_sessions:
            coalescer.schedule_broadcast(code)
        if result.removed_participants or result.removed_sessions:
            logger.info(
                f"Cleanup: removed {len(result.removed_participants)} inactive participants, "
                f"{len(result.removed_sessions)} old sessions"
            )
        return result

    @app.get("/healthz", tags=["Health"])
    async def healthz(request: Request):
        """Health check endpoint with service status."""
        uptime = time.time() - request.app.state.start_time
        return {
            "ok": True,
            "service": settings.service_name,
            "version": VERSION,
            "uptime_seconds": int(uptime),
            "subscribers": registry.subscriber_count,
            "live_sessions": registry.session_count,
            "pending_broadcasts": coalescer.pending_count,
        }

    # Sessions

    @app.post("/api/sessions", tags=["Sessions"])
    async def create_session(body: CreateSessionIn, background_tasks: BackgroundTasks):
        """Create a session with the caller as host."""
        background_tasks.add_task(lazy_cleanup.maybe_run, run_cleanup)
        host_name = clean_player_name(body.host_name)
        for _ in range(CODE_ATTEMPTS):
            code = generate_session_code()
            if await store.session_exists(code):
                continue
            try:
                snapshot = await store.create_session(
                    code, host_name, body.user_id, body.title, body.resolved_scale()
                )
            except sqlite3.IntegrityError:
                continue
            log_session_event(logger, "create", code, host=host_name)
            return snapshot.public()
        raise HTTPException(status_code=500, detail="Unable to generate unique session code")

    @app.get("/api/sessions", tags=["Sessions"])
    async def list_sessions(background_tasks: BackgroundTasks):
        """Session summaries, most recently updated first."""
        background_tasks.add_task(lazy_cleanup.maybe_run, run_cleanup)
        sessions = await store.list_sessions()
        return [
            {
                "sessionCode": s.session_code,
                "title": s.title,
                "participantCount": len(s.participants),
                "createdAt": s.created_at,
                "lastUpdated": s.last_updated,
            }
            for s in sessions
        ]

    @app.get("/api/scales", tags=["Sessions"])
    async def list_scales():
        """Named story point scales accepted as ``scaleName``."""
        return {"scales": STORY_POINT_SCALES}

    @app.get("/api/sessions/user/{user_id}", tags=["Sessions"])
    async def user_sessions(user_id: str):
        """The user's most recently active sessions."""
        sessions = await store.user_sessions(user_id)
        return {"sessions": [s.model_dump(by_alias=True) for s in sessions]}

    @app.get("/api/sessions/{session_code}", tags=["Sessions"])
    async def get_session(session_code: str):
        code = verify_session_code_or_404(session_code)
        snapshot = await store.get_session(code)
        if snapshot is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return snapshot.public()

    @app.patch("/api/sessions/{session_code}", tags=["Sessions"])
    async def update_session(session_code: str, body: SessionUpdate):
        """Change the title and/or the story point scale."""
        code = verify_session_code_or_404(session_code)
        scale = body.resolved_scale()
        if body.title is None and scale is None:
            raise HTTPException(status_code=400, detail="Invalid update data")
        snapshot = await store.update_session(code, title=body.title, story_point_scale=scale)
        if snapshot is None:
            raise HTTPException(status_code=404, detail="Session not found")
        session_changed(code, "update-session")
        return snapshot.public()

    @app.post("/api/sessions/{session_code}/join", tags=["Participants"])
    async def join_session(session_code: str, body: JoinSessionIn):
        code = verify_session_code_or_404(session_code)
        name = clean_player_name(body.player_name)
        snapshot = await store.join_session(code, name, body.user_id, body.is_observer)
        if snapshot is None:
            raise HTTPException(status_code=404, detail="Session not found")
        session_changed(code, "join", player=name, observer=body.is_observer)
        return snapshot.public()

    @app.patch("/api/sessions/{session_code}/participants/{player_name}", tags=["Participants"])
    async def update_participant(session_code: str, player_name: str, body: ParticipantUpdate):
        code = verify_session_code_or_404(session_code)
        name = clean_player_name(player_name)
        snapshot = await store.update_participant(code, name, body)
        if snapshot is None:
            raise HTTPException(status_code=404, detail="Session or participant not found")
        session_changed(code, "update-participant", player=name)
        return snapshot.public()

    @app.post("/api/sessions/{session_code}/verify-host", tags=["Participants"])
    async def verify_host(session_code: str, body: VerifyHostIn):
        """Whether this user id and name are the session's host."""
        code = verify_session_code_or_404(session_code)
        is_host = await store.is_original_host(code, body.user_id, clean_player_name(body.player_name))
        return {"isHost": is_host}

    @app.post("/api/sessions/{session_code}/participants/{player_name}/track", tags=["Participants"])
    async def track_participant(session_code: str, player_name: str, body: TrackParticipantIn):
        """Record the session in the user's recent sessions list."""
        code = verify_session_code_or_404(session_code)
        name = clean_player_name(player_name)
        if not await store.track_participant_session(code, name, body.user_id, body.is_host):
            raise HTTPException(status_code=404, detail="Session not found")
        log_session_event(logger, "track", code, player=name, host=body.is_host)
        return {"success": True}

    # Voting

    @app.patch("/api/sessions/{session_code}/voting", tags=["Voting"])
    async def update_voting(session_code: str, body: VotingStateUpdate):
        code = verify_session_code_or_404(session_code)
        snapshot = await store.update_voting_state(code, body)
        if snapshot is None:
            raise HTTPException(status_code=404, detail="Session not found")
        session_changed(code, "update-voting")
        return snapshot.public()

    @app.post("/api/sessions/{session_code}/voting/reset", tags=["Voting"])
    async def reset_voting(session_code: str):
        """Clear all votes and start voting again."""
        code = verify_session_code_or_404(session_code)
        snapshot = await store.reset_votes(code)
        if snapshot is None:
            raise HTTPException(status_code=404, detail="Session not found")
        session_changed(code, "reset-votes")
        return snapshot.public()

    # Rounds

    @app.get("/api/sessions/{session_code}/rounds", tags=["Rounds"])
    async def list_rounds(session_code: str):
        code = verify_session_code_or_404(session_code)
        rounds = await store.list_rounds(code)
        return {"rounds": [r.model_dump(by_alias=True) for r in rounds]}

    @app.post("/api/sessions/{session_code}/rounds", tags=["Rounds"])
    async def save_round(session_code: str, body: SaveRoundIn):
        """Record a finished round as given by the client."""
        code = verify_session_code_or_404(session_code)
        round_id = await store.save_round(
            code,
            body.round_number,
            body.description,
            body.votes,
            body.vote_average,
            body.final_estimate,
        )
        if round_id is None:
            raise HTTPException(status_code=404, detail="Session not found")
        log_session_event(logger, "save-round", code, round_number=body.round_number)
        return {"success": True, "roundId": round_id}

    @app.post("/api/sessions/{session_code}/rounds/create", tags=["Rounds"])
    async def create_round(session_code: str, body: CreateRoundIn):
        """Optionally archive the current round, then start the next one."""
        code = verify_session_code_or_404(session_code)
        result = await store.start_round(
            code,
            description=body.new_round_description,
            complete_current=body.complete_current_round,
            vote_average=body.vote_average,
            final_estimate=body.final_estimate,
        )
        if result is None:
            raise HTTPException(status_code=404, detail="Session not found")
        snapshot, completed = result
        new_round = snapshot.voting_state.current_round
        session_changed(code, "new-round", round_number=new_round)
        return {
            "success": True,
            "newRoundNumber": new_round,
            "completedRound": completed.model_dump(by_alias=True) if completed else None,
            "sessionData": snapshot.public(),
        }

    @app.get("/api/sessions/{session_code}/rounds/export", tags=["Rounds"])
    async def export_rounds(
        session_code: str,
        format: str = Query(default="json", pattern="^(json|csv|ndjson)$", description="Export format"),
    ):
        """Download the round history in various formats."""
        code = verify_session_code_or_404(session_code)
        if not await store.session_exists(code):
            raise HTTPException(status_code=404, detail="Session not found")
        rounds = [r.model_dump(by_alias=True) for r in await store.list_rounds(code)]

        if format == "csv":
            content = export_to_csv(rounds)
            media_type = "text/csv"
        elif format == "ndjson":
            content = export_to_ndjson(code, rounds)
            media_type = "application/x-ndjson"
        else:  # json
            content = export_to_json(code, rounds)
            media_type = "application/json"
        filename = f"pokerlive_{code}_rounds_{int(time.time())}.{format}"

        return PlainTextResponse(
            content=content,
            media_type=media_type,
            headers={"Content-Disposition": f"attachment; filename={filename}"}
        )

    # Live updates

    @app.get("/api/sessions/{session_code}/events", tags=["Live"])
    async def session_events(
        session_code: str,
        participant: Optional[str] = Query(default=None, max_length=100, description="Track this participant's connectivity"),
    ):
        """Server-Sent Events stream of session snapshots and heartbeats."""
        code = verify_session_code_or_404(session_code)
        if not await store.session_exists(code):
            raise HTTPException(status_code=404, detail="Session not found")
        name = " ".join(participant.split()) if participant else None
        stream = SessionEventStream(
            code,
            registry,
            broadcaster,
            participant=name,
            keepalive_interval=settings.keepalive_interval_seconds,
            queue_size=settings.channel_queue_size,
        )
        return StreamingResponse(stream.events(), media_type="text/event-stream", headers=STREAM_HEADERS)

    # Admin

    @app.get("/api/admin/{token}/sessions", tags=["Admin"])
    async def admin_sessions(token: str):
        """Every session with activity and live-connection figures."""
        verify_admin_token_or_404(token, settings)
        now = now_ms()
        sessions = []
        for s in await store.list_sessions():
            host = next((p.name for p in s.participants if p.is_host), "Unknown")
            active = any(p.last_seen and now - p.last_seen < ACTIVE_WINDOW_MS for p in s.participants)
            sessions.append(
                {
                    "sessionCode": s.session_code,
                    "title": s.title,
                    "hostName": host,
                    "participantCount": len(s.participants),
                    "connectedClients": len(registry.channels(s.session_code)),
                    "createdAt": s.created_at,
                    "lastActivity": s.last_updated,
                    "isActive": active,
                    "participants": s.public()["participants"],
                }
            )
        stats: Dict[str, int] = {
            "totalSessions": len(sessions),
            "activeSessions": sum(1 for s in sessions if s["isActive"]),
            "totalParticipants": sum(s["participantCount"] for s in sessions),
            "connectedClients": registry.subscriber_count,
        }
        return {"sessions": sessions, "stats": stats}

    @app.delete("/api/admin/{token}/sessions/{session_code}", tags=["Admin"])
    async def admin_delete_session(token: str, session_code: str):
        """Delete a session and hang up its live streams."""
        verify_admin_token_or_404(token, settings)
        code = verify_session_code_or_404(session_code)
        deleted = await store.delete_session(code)
        if not deleted:
            raise HTTPException(status_code=404, detail="Session not found")
        closed = registry.close_session(code)
        log_session_event(logger, "delete", code, closed_channels=closed)
        return {"success": True, "closedChannels": closed}

    @app.post("/api/admin/{token}/sessions/{session_code}/terminate", tags=["Admin"])
    async def admin_terminate_session(token: str, session_code: str):
        """Mark everyone in a session as gone and hang up its streams; the session stays."""
        verify_admin_token_or_404(token, settings)
        code = verify_session_code_or_404(session_code)
        snapshot = await store.terminate_session(code)
        if snapshot is None:
            raise HTTPException(status_code=404, detail="Session not found")
        closed = registry.close_session(code)
        session_changed(code, "terminate", closed_channels=closed)
        return {"success": True, "closedChannels": closed}

    @app.delete("/api/admin/{token}/cleanup", tags=["Admin"])
    async def admin_cleanup(token: str):
        """Run stale participant and session cleanup now."""
        verify_admin_token_or_404(token, settings)
        result = await lazy_cleanup.force(run_cleanup)
        return {
            "ok": True,
            "removedParticipants": len(result.removed_participants),
            "removedSessions": len(result.removed_sessions),
        }

    return app


app = create_app()
