from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List, Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="POKERLIVE_", extra="ignore")

    db_path: str = Field(default="pokerlive.sqlite3", description="SQLite DB file path.")
    service_name: str = Field(default="pokerlive", description="Display name.")
    log_level: str = Field(default="INFO", description="Root log level.")

    # Live updates
    broadcast_delay_ms: int = Field(default=1000, ge=0, description="Debounce window before a session broadcast.")
    keepalive_interval_seconds: float = Field(default=60.0, gt=0, description="Heartbeat interval on event streams.")
    channel_queue_size: int = Field(default=100, ge=1, description="Buffered messages per client before it is dropped.")

    # Housekeeping
    participant_timeout_seconds: int = Field(default=300, ge=1, description="Drop non-host participants unseen this long.")
    session_ttl_hours: int = Field(default=24, ge=1, description="Delete sessions not updated within this window.")
    cleanup_interval_seconds: int = Field(default=300, ge=0, description="Minimum gap between lazy cleanups.")

    # Comma-separated list supported (token rotation)
    admin_token: Optional[str] = Field(default=None, description="Token(s) for /api/admin/{token}. Unset disables admin routes.")

    enable_cors: bool = Field(default=False, description="Enable CORS middleware.")
    cors_origins: str = Field(default="*", description="Comma-separated allowed origins for CORS.")
    enable_rate_limit: bool = Field(default=True, description="Enable rate limiting middleware.")
    rate_limit_per_minute: int = Field(default=120, description="Max requests per minute per IP.")

    @property
    def broadcast_delay(self) -> float:
        return self.broadcast_delay_ms / 1000.0

    def admin_tokens(self) -> List[str]:
        if not self.admin_token:
            return []
        return [t.strip() for t in self.admin_token.split(",") if t.strip()]

    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
