from __future__ import annotations

import hmac
import re
import secrets

from fastapi import HTTPException
from .settings import Settings

SESSION_CODE_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZ"
SESSION_CODE_LENGTH = 8
_CODE_RE = re.compile(rf"[{SESSION_CODE_ALPHABET}]{{{SESSION_CODE_LENGTH}}}")


def generate_session_code() -> str:
    # No 0/O or I, easy to read out loud
    return "".join(secrets.choice(SESSION_CODE_ALPHABET) for _ in range(SESSION_CODE_LENGTH))


def is_valid_session_code(code: str) -> bool:
    return bool(code) and _CODE_RE.fullmatch(code) is not None


def verify_session_code_or_404(code: str) -> str:
    """Normalize a session code from the URL; malformed codes are simply not found."""
    normalized = (code or "").strip().upper()
    if not is_valid_session_code(normalized):
        raise HTTPException(status_code=404, detail="Session not found")
    return normalized


def verify_admin_token_or_404(token_in_path: str, settings: Settings) -> None:
    # Use 404 to reduce noise and avoid giving hints.
    tokens = settings.admin_tokens()
    given = (token_in_path or "").encode("utf-8")
    if not tokens or not any(hmac.compare_digest(given, t.encode("utf-8")) for t in tokens):
        raise HTTPException(status_code=404, detail="Not found")


def clean_player_name(name: str) -> str:
    """Collapse whitespace in a display name; empty names are rejected."""
    cleaned = " ".join((name or "").split())
    if not cleaned:
        raise HTTPException(status_code=400, detail="Player name is required")
    return cleaned
