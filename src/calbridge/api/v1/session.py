# Session router: who does this bearer token belong to.
# Created: 2026-10-08

from __future__ import annotations

from fastapi import APIRouter, Depends

from calbridge.api.deps import require_bearer_auth
from calbridge.api.oauth2.models import AuthInfo
from calbridge.api.v1.schemas.oauth2 import SessionInfo

router = APIRouter(tags=["Session"])


@router.get("/session", response_model=SessionInfo)
async def get_session(auth: AuthInfo = Depends(require_bearer_auth)):
    """Describe the caller's access token. Never echoes the token itself."""
    return SessionInfo(
        client_id=auth.client_id,
        account_id=auth.account_id,
        expires_at=auth.expires_at,
        scopes=auth.scopes,
    )
