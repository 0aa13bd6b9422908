# Health router: liveness and store counts.
# Created: 2026-10-08

from __future__ import annotations

import logging

from fastapi import APIRouter, Request

from calbridge import __version__
from calbridge.api.deps import get_oauth_server
from calbridge.api.v1.schemas.health import HealthStatus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthStatus)
async def get_health_status(request: Request):
    """Report liveness and how many codes, tokens and sessions are held in memory."""
    return HealthStatus(version=__version__, **get_oauth_server(request).stats())
