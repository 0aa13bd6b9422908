# Shared FastAPI dependencies for the API layer.
# Created: 2026-10-08

from __future__ import annotations

from fastapi import HTTPException, Request

from calbridge.api.oauth2.errors import InvalidOrExpiredCredentialError
from calbridge.api.oauth2.models import AuthInfo
from calbridge.api.oauth2.server import AuthorizationServer


def get_oauth_server(request: Request) -> AuthorizationServer:
    """The AuthorizationServer the app factory placed on ``app.state``."""
    return request.app.state.oauth_server


def _challenge(server: AuthorizationServer, error: str, description: str) -> dict[str, str]:
    return {
        "WWW-Authenticate": (
            f'Bearer error="{error}", error_description="{description}", '
            f'resource_metadata="{server.issuer_url}/.well-known/oauth-protected-resource"'
        )
    }


async def require_bearer_auth(request: Request) -> AuthInfo:
    """FastAPI dependency resolving ``Authorization: Bearer mcp_at_...``.

    Usage::

        @router.get("/session")
        async def whoami(auth: AuthInfo = Depends(require_bearer_auth)): ...

    Missing, unknown and expired tokens all produce a 401 with a
    ``WWW-Authenticate`` challenge pointing at the resource metadata.
    """
    server = get_oauth_server(request)
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(
            status_code=401,
            detail="Missing bearer token",
            headers=_challenge(server, "invalid_request", "Missing bearer token"),
        )

    try:
        return server.verify_access_token(token)
    except InvalidOrExpiredCredentialError as e:
        raise HTTPException(
            status_code=401,
            detail=e.message,
            headers=_challenge(server, e.error, e.message),
        ) from e
