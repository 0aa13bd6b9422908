# Health schemas.
# Created: 2026-10-08

from __future__ import annotations

from pydantic import BaseModel


class HealthStatus(BaseModel):
    """Liveness plus in-memory store counts."""

    status: str = "ok"
    version: str
    authorization_codes: int = 0
    access_tokens: int = 0
    refresh_tokens: int = 0
    pending_sessions: int = 0
    clients: int = 0
