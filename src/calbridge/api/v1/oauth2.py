# OAuth2 router: register, authorize, callback, token, revoke, metadata.
# Created: 2026-10-08
#
# Mounted at the issuer root, not under /api/v1, because clients discover the
# endpoints from /.well-known/oauth-authorization-server relative to the issuer.

from __future__ import annotations

import base64
import binascii
import html
import logging
from typing import Any
from urllib.parse import unquote

from fastapi import APIRouter, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from pydantic import ValidationError

from calbridge.api.deps import get_oauth_server
from calbridge.api.oauth2.errors import OAuthError, OAuthValidationError, StateIntegrityError
from calbridge.api.oauth2.models import RegisteredClient
from calbridge.api.oauth2.server import AuthorizationServer
from calbridge.api.v1.schemas.oauth2 import (
    AuthorizationServerMetadata,
    OAuthErrorResponse,
    ProtectedResourceMetadata,
    RevokeRequest,
    TokenRequest,
    TokenResponse,
)
from calbridge.integrations.oauth import CALLBACK_PATH
from calbridge.security.rate_limiter import RateLimiter, api_limiter, auth_limiter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["OAuth2"])

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}

_ERROR_HTML = """<!DOCTYPE html>
<html><head><title>Calendar Authorization</title>
<style>
body {{ font-family: system-ui; max-width: 480px; margin: 40px auto; padding: 20px; }}
h2 {{ margin-bottom: 8px; }}
.detail {{ background: #fef2f2; color: #991b1b; padding: 12px; border-radius: 8px; }}
</style></head><body>
<h2>Authorization failed</h2>
<p class="detail">{message}</p>
<p>Close this window and start the sign-in again from your client.</p>
</body></html>"""


async def oauth_error_handler(request: Request, exc: OAuthError) -> JSONResponse:
    """Render an OAuthError as an RFC 6749 error body."""
    if exc.status_code >= 500:
        logger.error("OAuth error on %s: %s", request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=_NO_STORE)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _rate_limited(limiter: RateLimiter, request: Request) -> JSONResponse | None:
    info = limiter.check(_client_ip(request))
    if info.allowed:
        return None
    return JSONResponse(
        status_code=429, content={"detail": "Too many requests"}, headers=info.headers()
    )


async def _read_body(request: Request) -> dict[str, Any]:
    """Form-encoded or JSON request body as a plain dict."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except ValueError as e:
            raise OAuthValidationError("Request body is not valid JSON") from e
        if not isinstance(data, dict):
            raise OAuthValidationError("Request body must be a JSON object")
        return data
    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}


def _client_credentials(request: Request, body: dict[str, Any]) -> tuple[str, str | None]:
    """Extract client credentials from HTTP Basic or the request body."""
    header = request.headers.get("authorization", "")
    scheme, _, encoded = header.partition(" ")
    if scheme.lower() == "basic" and encoded:
        try:
            decoded = base64.b64decode(encoded.strip(), validate=True).decode()
        except (binascii.Error, UnicodeDecodeError) as e:
            raise OAuthValidationError(
                "Malformed Basic authorization header", error="invalid_client"
            ) from e
        client_id, sep, client_secret = decoded.partition(":")
        if not sep or not client_id:
            raise OAuthValidationError(
                "Malformed Basic authorization header", error="invalid_client"
            )
        return unquote(client_id), unquote(client_secret)

    client_id = body.get("client_id")
    if not client_id:
        raise OAuthValidationError("client_id is required", error="invalid_client")
    return client_id, body.get("client_secret") or None


def _authenticate(
    server: AuthorizationServer, request: Request, body: dict[str, Any]
) -> RegisteredClient:
    client_id, client_secret = _client_credentials(request, body)
    return server.authenticate_client(client_id, client_secret)


def _validation_message(exc: ValidationError) -> str:
    err = exc.errors()[0]
    field = ".".join(str(p) for p in err.get("loc", ()))
    return f"{field}: {err.get('msg', 'invalid value')}" if field else "Invalid request"


# ---------------------------------------------------------------------------
# Registration (RFC 7591)
# ---------------------------------------------------------------------------


@router.post("/register", status_code=201)
async def register_client(request: Request):
    """Register a downstream client."""
    limited = _rate_limited(auth_limiter, request)
    if limited is not None:
        return limited

    try:
        payload = await request.json()
    except ValueError as e:
        raise OAuthValidationError(
            "Request body is not valid JSON", error="invalid_client_metadata"
        ) from e
    if not isinstance(payload, dict):
        raise OAuthValidationError(
            "Client metadata must be a JSON object", error="invalid_client_metadata"
        )

    client = get_oauth_server(request).register_client(payload)
    return JSONResponse(
        status_code=201,
        content=client.model_dump(mode="json", exclude_none=True),
        headers=_NO_STORE,
    )


# ---------------------------------------------------------------------------
# Authorization (both browser hops)
# ---------------------------------------------------------------------------


@router.get("/authorize")
async def authorize(
    request: Request,
    client_id: str = Query(...),
    response_type: str = Query("code"),
    code_challenge: str = Query(""),
    code_challenge_method: str = Query("S256"),
    redirect_uri: str | None = Query(None),
    state: str | None = Query(None),
    scope: str | None = Query(None),
    account: str | None = Query(None),
):
    """Start authorization: park the request and send the user to Google."""
    limited = _rate_limited(auth_limiter, request)
    if limited is not None:
        return limited

    server = get_oauth_server(request)
    client = server.get_client(client_id)
    if client is None:
        raise OAuthValidationError("Unknown client_id", error="invalid_client")
    if response_type != "code":
        raise OAuthValidationError(
            "Only response_type=code is supported", error="unsupported_response_type"
        )
    if code_challenge_method != "S256":
        raise OAuthValidationError("Only the S256 code_challenge_method is supported")

    url = server.authorize(
        client,
        code_challenge=code_challenge,
        redirect_uri=redirect_uri,
        state=state,
        account=account,
        scopes=scope.split() if scope else None,
    )
    return RedirectResponse(url, status_code=302)


@router.get(CALLBACK_PATH)
async def oauth2_callback(
    request: Request,
    code: str | None = Query(None),
    state: str | None = Query(None),
    error: str | None = Query(None),
    error_description: str | None = Query(None),
):
    """Google's redirect back to us. Ends in a redirect to the downstream client."""
    server = get_oauth_server(request)
    try:
        envelope = server.parse_state(state)
        if envelope is None:
            raise StateIntegrityError("Unrecognized authorization state")
        if error:
            url = server.abort_auth(envelope.session_id, error, error_description)
        elif not code:
            raise OAuthValidationError("Missing authorization code")
        else:
            url = await server.complete_auth(code, envelope.session_id, envelope.account)
    except OAuthError as e:
        logger.warning("OAuth callback rejected: %s", e.message)
        return HTMLResponse(
            _ERROR_HTML.format(message=html.escape(e.message)), status_code=e.status_code
        )
    return RedirectResponse(url, status_code=302)


# ---------------------------------------------------------------------------
# Token and revocation endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/token",
    response_model=TokenResponse,
    responses={400: {"model": OAuthErrorResponse}},
)
async def token_exchange(request: Request):
    """Exchange an authorization code or refresh token for an access token."""
    limited = _rate_limited(api_limiter, request)
    if limited is not None:
        return limited

    server = get_oauth_server(request)
    raw = await _read_body(request)
    try:
        body = TokenRequest.model_validate(raw)
    except ValidationError as e:
        raise OAuthValidationError(_validation_message(e)) from e

    client = _authenticate(server, request, raw)

    if body.grant_type == "authorization_code":
        if not body.code or not body.code_verifier:
            raise OAuthValidationError("code and code_verifier are required")
        result = server.exchange_authorization_code(
            client,
            body.code,
            code_verifier=body.code_verifier,
            redirect_uri=body.redirect_uri,
        )
    elif body.grant_type == "refresh_token":
        if not body.refresh_token:
            raise OAuthValidationError("refresh_token is required")
        result = server.exchange_refresh_token(
            client,
            body.refresh_token,
            scopes=body.scope.split() if body.scope else None,
        )
    else:
        raise OAuthValidationError(
            f"Unsupported grant_type: {body.grant_type}", error="unsupported_grant_type"
        )

    payload = TokenResponse.model_validate(result).model_dump(exclude_none=True)
    return JSONResponse(content=payload, headers=_NO_STORE)


@router.post("/revoke")
async def revoke_token(request: Request):
    """Revoke an access or refresh token. Always 200 for a valid request."""
    limited = _rate_limited(api_limiter, request)
    if limited is not None:
        return limited

    server = get_oauth_server(request)
    raw = await _read_body(request)
    try:
        body = RevokeRequest.model_validate(raw)
    except ValidationError as e:
        raise OAuthValidationError(_validation_message(e)) from e

    client = _authenticate(server, request, raw)
    server.revoke_token(client, body.token, body.token_type_hint)
    return JSONResponse(content={}, headers=_NO_STORE)


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


@router.get(
    "/.well-known/oauth-authorization-server",
    response_model=AuthorizationServerMetadata,
)
async def authorization_server_metadata(request: Request):
    issuer = get_oauth_server(request).issuer_url
    return AuthorizationServerMetadata(
        issuer=issuer,
        authorization_endpoint=f"{issuer}/authorize",
        token_endpoint=f"{issuer}/token",
        registration_endpoint=f"{issuer}/register",
        revocation_endpoint=f"{issuer}/revoke",
    )


@router.get(
    "/.well-known/oauth-protected-resource",
    response_model=ProtectedResourceMetadata,
)
async def protected_resource_metadata(request: Request):
    issuer = get_oauth_server(request).issuer_url
    return ProtectedResourceMetadata(resource=issuer, authorization_servers=[issuer])
