# OAuth2 authorization server for downstream clients.
# Created: 2026-10-08
#
# Double-hop flow: a downstream client authorizes against us with PKCE, we
# send the user to Google, Google calls back, and only then do we mint our
# own authorization code. Downstream clients never see Google tokens.

from __future__ import annotations

import asyncio
import base64
import contextlib
import hashlib
import hmac
import logging
import urllib.parse
from collections.abc import Callable
from datetime import timedelta
from typing import Any

import httpx
from pydantic import ValidationError

from calbridge.api.oauth2.clients import ClientsStore
from calbridge.api.oauth2.errors import (
    ClientMismatchError,
    InvalidOrExpiredCredentialError,
    OAuthValidationError,
    SessionExpiredError,
    StateIntegrityError,
)
from calbridge.api.oauth2.models import (
    ACCESS_TOKEN_PREFIX,
    REFRESH_TOKEN_PREFIX,
    AccessToken,
    AuthInfo,
    ClientMetadata,
    RefreshToken,
    RegisteredClient,
    redact_token,
)
from calbridge.api.oauth2.persistence import CLIENTS_FILENAME, get_storage_path
from calbridge.api.oauth2.sessions import PendingSessionStore
from calbridge.api.oauth2.state import encode_state, parse_state
from calbridge.api.oauth2.tokens import TokenStore
from calbridge.config import Settings, get_config_dir
from calbridge.integrations.oauth import UpstreamAuthError, UpstreamOAuthClient
from calbridge.integrations.token_store import (
    DEFAULT_ACCOUNT,
    TokenManager,
    UpstreamTokens,
    get_oauth_dir,
    validate_account_id,
)
from calbridge.security.audit import AuditLogger
from calbridge.security.rate_limiter import cleanup_all as cleanup_rate_limits

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL = 300.0  # seconds


def compute_code_challenge(code_verifier: str) -> str:
    """S256 PKCE challenge for *code_verifier* (RFC 7636 section 4.2)."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def _build_redirect(base: str, **params: str | None) -> str:
    """Append *params* to *base*, keeping any query it already has."""
    parts = urllib.parse.urlsplit(base)
    query = urllib.parse.parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(query)))


class AuthorizationServer:
    """Broker façade: client registry, pending sessions and token store behind one API.

    Errors are raised as :class:`~calbridge.api.oauth2.errors.OAuthError`
    subclasses; the HTTP layer turns them into responses. Methods that end a
    browser hop return the URL to redirect to.
    """

    def __init__(
        self,
        token_manager: TokenManager,
        upstream: UpstreamOAuthClient,
        *,
        clients: ClientsStore | None = None,
        tokens: TokenStore | None = None,
        sessions: PendingSessionStore | None = None,
        issuer_url: str = "http://localhost:3000",
        default_account: str = DEFAULT_ACCOUNT,
        rotate_refresh_tokens: bool = True,
        cleanup_interval: float = CLEANUP_INTERVAL,
        audit: AuditLogger | None = None,
        on_account_authorized: Callable[[str], None] | None = None,
    ):
        self.token_manager = token_manager
        self.upstream = upstream
        self.clients = clients if clients is not None else ClientsStore()
        self.tokens = tokens if tokens is not None else TokenStore()
        self.sessions = sessions if sessions is not None else PendingSessionStore()
        self.issuer_url = issuer_url.rstrip("/")
        self.default_account = validate_account_id(default_account)
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self.cleanup_interval = cleanup_interval
        self.audit = audit
        self.on_account_authorized = on_account_authorized
        self._cleanup_task: asyncio.Task | None = None

    parse_state = staticmethod(parse_state)

    # --- Lifecycle ---

    async def initialize(self) -> None:
        """Load persisted clients and start the expiry sweep."""
        self.clients.initialize()
        if self.cleanup_interval > 0 and self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("Authorization server ready (%d registered client(s))", len(self.clients))

    async def shutdown(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                removed = self.cleanup_expired()
                pruned = cleanup_rate_limits()
            except Exception:
                logger.exception("Expiry sweep failed")
                continue
            if removed or pruned:
                logger.debug(
                    "Expiry sweep removed %d record(s) and %d idle rate-limit bucket(s)",
                    removed,
                    pruned,
                )

    def cleanup_expired(self) -> int:
        return self.tokens.cleanup_expired() + self.sessions.cleanup_expired()

    def stats(self) -> dict[str, int]:
        return {
            **self.tokens.stats(),
            "pending_sessions": len(self.sessions),
            "clients": len(self.clients),
        }

    def _audit(
        self, action: str, actor: str, target: str, status: str = "success", **ctx: Any
    ) -> None:
        if self.audit is not None:
            self.audit.log_oauth_event(action, actor, target, status, **ctx)

    # --- Clients ---

    @property
    def clients_store(self) -> ClientsStore:
        return self.clients

    def register_client(self, metadata: ClientMetadata | dict[str, Any]) -> RegisteredClient:
        try:
            client = self.clients.register_client(metadata)
        except ValidationError as e:
            raise OAuthValidationError(
                _first_validation_message(e), error="invalid_client_metadata"
            ) from e
        self._audit(
            "client_registered",
            client.client_id,
            f"client:{client.client_id}",
            client_name=client.client_name,
            redirect_uris=client.redirect_uris,
        )
        return client

    def get_client(self, client_id: str) -> RegisteredClient | None:
        return self.clients.get_client(client_id)

    def authenticate_client(
        self, client_id: str, client_secret: str | None = None
    ) -> RegisteredClient:
        """Resolve and authenticate a client at the token/revocation endpoints."""
        client = self.clients.authenticate(client_id, client_secret)
        if client is None:
            raise OAuthValidationError("Client authentication failed", error="invalid_client")
        return client

    # --- Authorization (browser hops) ---

    def authorize(
        self,
        client: RegisteredClient,
        code_challenge: str,
        redirect_uri: str | None = None,
        state: str | None = None,
        account: str | None = None,
        scopes: list[str] | None = None,
    ) -> str:
        """Start the double hop. Returns the upstream consent URL.

        Creates a pending session correlated through the upstream ``state``
        parameter. Nothing is sent over the network here.
        """
        if redirect_uri is None:
            if len(client.redirect_uris) != 1:
                raise OAuthValidationError(
                    "redirect_uri is required when the client registered more than one"
                )
            redirect_uri = client.redirect_uris[0]
        elif redirect_uri not in client.redirect_uris:
            raise OAuthValidationError("Unregistered redirect_uri")

        if not code_challenge:
            raise OAuthValidationError("code_challenge is required")

        account = account or self.default_account
        try:
            validate_account_id(account)
        except ValueError as e:
            raise OAuthValidationError(str(e)) from e

        session_id = self.sessions.create(
            client_id=client.client_id,
            code_challenge=code_challenge,
            redirect_uri=redirect_uri,
            state=state,
            account_id=account,
            scopes=scopes,
        )
        logger.info("Authorization started for client %s (account %s)", client.client_id, account)
        self._audit("auth_started", client.client_id, f"account:{account}", session_id=session_id)
        return self.upstream.generate_auth_url(encode_state(session_id, account))

    async def complete_auth(self, upstream_code: str, session_id: str, account_id: str) -> str:
        """Finish the upstream hop and return the downstream client redirect.

        The pending session is consumed before the upstream round trip, so a
        replayed callback fails even while the first one is still in flight.
        Upstream failures are reported to the client as ``server_error``.
        """
        session = self.sessions.consume(session_id)
        if session is None:
            raise SessionExpiredError("Invalid or expired MCP auth session")
        if session.account_id != account_id:
            self._audit(
                "auth_failed",
                session.client_id,
                f"account:{account_id}",
                status="denied",
                reason="account_mismatch",
            )
            raise StateIntegrityError("Authorization state does not match the pending session")

        try:
            upstream_tokens = await self.upstream.exchange_code(upstream_code)
            email = await self.upstream.get_token_email(upstream_tokens.access_token)
            self._save_upstream_tokens(upstream_tokens, email, account_id)
        except (httpx.HTTPError, UpstreamAuthError, OSError) as e:
            logger.error("Upstream authorization failed for account %s: %s", account_id, e)
            self._audit(
                "auth_failed",
                session.client_id,
                f"account:{account_id}",
                status="error",
                reason=type(e).__name__,
            )
            return _build_redirect(
                session.redirect_uri,
                error="server_error",
                error_description="Failed to complete authorization with the upstream provider",
                state=session.state,
            )

        code = self.tokens.create_auth_code(
            client_id=session.client_id,
            code_challenge=session.code_challenge,
            redirect_uri=session.redirect_uri,
            session_id=session.session_id,
            account_id=account_id,
            scopes=session.scopes,
        )
        if self.on_account_authorized is not None:
            try:
                self.on_account_authorized(account_id)
            except Exception:
                logger.exception("on_account_authorized hook failed for account %s", account_id)

        logger.info(
            "Authorization completed for client %s (account %s%s)",
            session.client_id,
            account_id,
            f", {email}" if email else "",
        )
        self._audit("auth_completed", session.client_id, f"account:{account_id}", email=email)
        return _build_redirect(session.redirect_uri, code=code, state=session.state)

    def abort_auth(
        self, session_id: str, error: str, error_description: str | None = None
    ) -> str:
        """The user declined upstream. Returns the client redirect carrying *error*."""
        session = self.sessions.consume(session_id)
        if session is None:
            raise SessionExpiredError("Invalid or expired MCP auth session")
        logger.info("Authorization for client %s ended upstream: %s", session.client_id, error)
        self._audit(
            "auth_failed",
            session.client_id,
            f"account:{session.account_id}",
            status="denied",
            reason=error,
        )
        return _build_redirect(
            session.redirect_uri,
            error=error,
            error_description=error_description,
            state=session.state,
        )

    def _save_upstream_tokens(
        self, tokens: UpstreamTokens, email: str | None, account_id: str
    ) -> None:
        previous = self.token_manager.get_account_mode()
        self.token_manager.set_account_mode(account_id)
        try:
            self.token_manager.save_tokens(tokens, email)
        finally:
            self.token_manager.set_account_mode(previous)

    # --- Token endpoint ---

    def challenge_for_authorization_code(self, client: RegisteredClient, code: str) -> str:
        """Return the PKCE challenge stored with *code*, without consuming it."""
        record = self.tokens.get_auth_code(code)
        if record is None:
            raise InvalidOrExpiredCredentialError("Invalid or expired authorization code")
        if record.client_id != client.client_id:
            raise ClientMismatchError("Authorization code was not issued to this client")
        return record.code_challenge

    def exchange_authorization_code(
        self,
        client: RegisteredClient,
        code: str,
        code_verifier: str | None = None,
        redirect_uri: str | None = None,
    ) -> dict[str, Any]:
        """Redeem an authorization code for an access/refresh token pair.

        The code is consumed before any other check, so a failed attempt
        burns it as well.
        """
        record = self.tokens.consume_auth_code(code)
        if record is None:
            raise InvalidOrExpiredCredentialError("Invalid or expired authorization code")
        if record.client_id != client.client_id:
            logger.warning(
                "Client %s presented a code issued to %s", client.client_id, record.client_id
            )
            raise ClientMismatchError("Authorization code was not issued to this client")

        if code_verifier is not None and not hmac.compare_digest(
            compute_code_challenge(code_verifier), record.code_challenge
        ):
            raise InvalidOrExpiredCredentialError("PKCE verification failed")
        if redirect_uri is not None and redirect_uri != record.redirect_uri:
            raise InvalidOrExpiredCredentialError(
                "redirect_uri does not match the authorization request"
            )

        access, refresh = self.tokens.issue_token_pair(
            client.client_id, record.account_id, record.scopes
        )
        logger.info(
            "Issued %s to client %s", redact_token(access.token), client.client_id
        )
        self._audit(
            "token_issued",
            client.client_id,
            f"account:{record.account_id}",
            access_token=redact_token(access.token),
        )
        return self._token_response(access, refresh)

    def exchange_refresh_token(
        self,
        client: RegisteredClient,
        refresh_token: str,
        scopes: list[str] | None = None,
    ) -> dict[str, Any]:
        """Mint a new access token. With rotation on, *refresh_token* is replaced.

        *scopes* narrows the new access token only; widening raises
        ``invalid_scope``.
        """
        result = self.tokens.refresh(
            refresh_token,
            client.client_id,
            rotate=self.rotate_refresh_tokens,
            scopes=scopes,
        )
        if result is None:
            raise InvalidOrExpiredCredentialError("Invalid or expired refresh token")
        access, refresh = result

        self._audit(
            "token_refreshed",
            client.client_id,
            f"account:{refresh.account_id}",
            access_token=redact_token(access.token),
            rotated=self.rotate_refresh_tokens,
        )
        return self._token_response(access, refresh if self.rotate_refresh_tokens else None)

    def _token_response(
        self, access: AccessToken, refresh: RefreshToken | None
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "access_token": access.token,
            "token_type": "Bearer",
            "expires_in": int(self.tokens.access_token_ttl.total_seconds()),
        }
        if refresh is not None:
            body["refresh_token"] = refresh.token
        if access.scopes:
            body["scope"] = " ".join(access.scopes)
        return body

    # --- Resource side ---

    def verify_access_token(self, token: str) -> AuthInfo:
        record = self.tokens.get_access_token(token)
        if record is None:
            raise InvalidOrExpiredCredentialError(
                "Invalid or expired access token", error="invalid_token"
            )
        return AuthInfo(
            token=record.token,
            client_id=record.client_id,
            account_id=record.account_id,
            expires_at=int(record.expires_at.timestamp()),
            scopes=list(record.scopes),
        )

    # --- Revocation (RFC 7009) ---

    def revoke_token(
        self, client: RegisteredClient, token: str, token_type_hint: str | None = None
    ) -> None:
        """Revoke *token* if *client* owns it. Never raises for unknown tokens."""
        if token_type_hint == "access_token":
            revoked = self._revoke_access(client, token)
        elif token_type_hint == "refresh_token":
            revoked = self._revoke_refresh(client, token)
        elif token.startswith(ACCESS_TOKEN_PREFIX):
            revoked = self._revoke_access(client, token)
        elif token.startswith(REFRESH_TOKEN_PREFIX):
            revoked = self._revoke_refresh(client, token)
        else:
            revoked = self._revoke_access(client, token) or self._revoke_refresh(client, token)

        if revoked:
            self._audit("token_revoked", client.client_id, f"token:{redact_token(token)}")

    def _revoke_access(self, client: RegisteredClient, token: str) -> bool:
        record = self.tokens.get_access_token(token)
        if record is None or record.client_id != client.client_id:
            return False
        return self.tokens.revoke_access_token(token)

    def _revoke_refresh(self, client: RegisteredClient, token: str) -> bool:
        record = self.tokens.get_refresh_token(token)
        if record is None or record.client_id != client.client_id:
            return False
        return self.tokens.revoke_refresh_token(token)


def _first_validation_message(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid client metadata"
    err = errors[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    msg = err.get("msg", "invalid value")
    return f"{loc}: {msg}" if loc else msg


def build_oauth_server(settings: Settings) -> AuthorizationServer:
    """Wire an AuthorizationServer from settings. The only place config reaches the core."""
    oauth_dir = get_oauth_dir(settings)
    return AuthorizationServer(
        token_manager=TokenManager(oauth_dir, account=settings.default_account),
        upstream=UpstreamOAuthClient.from_settings(settings),
        clients=ClientsStore(get_storage_path(CLIENTS_FILENAME, oauth_dir)),
        tokens=TokenStore(
            access_token_ttl=timedelta(seconds=settings.access_token_ttl),
            auth_code_ttl=timedelta(seconds=settings.auth_code_ttl),
        ),
        sessions=PendingSessionStore(ttl=timedelta(seconds=settings.pending_session_ttl)),
        issuer_url=settings.public_issuer_url,
        default_account=settings.default_account,
        rotate_refresh_tokens=settings.rotate_refresh_tokens,
        cleanup_interval=settings.cleanup_interval,
        audit=AuditLogger(get_config_dir(settings) / "audit.jsonl"),
    )
