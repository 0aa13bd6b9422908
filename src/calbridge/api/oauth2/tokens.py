# Broker token and code store.
# Created: 2026-10-07
#
# In-memory only. Each table is keyed by the prefixed token string; every
# check-and-mutate runs under one lock so two concurrent redemptions of the
# same code cannot both observe it.

from __future__ import annotations

import logging
import secrets
import threading
from datetime import UTC, datetime, timedelta

from calbridge.api.oauth2.errors import OAuthValidationError
from calbridge.api.oauth2.models import (
    ACCESS_TOKEN_PREFIX,
    AUTH_CODE_PREFIX,
    REFRESH_TOKEN_PREFIX,
    AccessToken,
    AuthorizationCode,
    RefreshToken,
    redact_token,
)

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TTL = timedelta(hours=1)
AUTH_CODE_TTL = timedelta(minutes=10)


def _generate(prefix: str) -> str:
    return f"{prefix}{secrets.token_urlsafe(32)}"


class TokenStore:
    """Authorization codes, access tokens and refresh tokens."""

    def __init__(
        self,
        access_token_ttl: timedelta = ACCESS_TOKEN_TTL,
        auth_code_ttl: timedelta = AUTH_CODE_TTL,
    ):
        self.access_token_ttl = access_token_ttl
        self.auth_code_ttl = auth_code_ttl
        self._codes: dict[str, AuthorizationCode] = {}
        self._access_tokens: dict[str, AccessToken] = {}
        self._refresh_tokens: dict[str, RefreshToken] = {}
        self._lock = threading.RLock()

    # --- Authorization codes ---

    def create_auth_code(
        self,
        client_id: str,
        code_challenge: str,
        redirect_uri: str,
        session_id: str,
        account_id: str,
        scopes: list[str] | None = None,
    ) -> str:
        code = _generate(AUTH_CODE_PREFIX)
        record = AuthorizationCode(
            code=code,
            client_id=client_id,
            code_challenge=code_challenge,
            redirect_uri=redirect_uri,
            session_id=session_id,
            account_id=account_id,
            scopes=list(scopes or []),
            expires_at=datetime.now(UTC) + self.auth_code_ttl,
        )
        with self._lock:
            self._codes[code] = record
        return code

    def get_auth_code(self, code: str) -> AuthorizationCode | None:
        """Look up a code without consuming it."""
        if not code.startswith(AUTH_CODE_PREFIX):
            return None
        with self._lock:
            record = self._codes.get(code)
            if record is None:
                return None
            if record.is_expired():
                del self._codes[code]
                return None
            return record

    def consume_auth_code(self, code: str) -> AuthorizationCode | None:
        """Remove and return a live code. Used, expired and unknown all return None."""
        if not code.startswith(AUTH_CODE_PREFIX):
            return None
        with self._lock:
            record = self._codes.pop(code, None)
        if record is None or record.is_expired():
            return None
        return record

    # --- Access and refresh tokens ---

    def _new_access_token(
        self, client_id: str, account_id: str, scopes: list[str], refresh: RefreshToken | None
    ) -> AccessToken:
        token = AccessToken(
            token=_generate(ACCESS_TOKEN_PREFIX),
            client_id=client_id,
            account_id=account_id,
            scopes=list(scopes),
            expires_at=datetime.now(UTC) + self.access_token_ttl,
            refresh_token=refresh.token if refresh else None,
        )
        self._access_tokens[token.token] = token
        if refresh is not None:
            refresh.access_tokens.add(token.token)
        return token

    def issue_token_pair(
        self, client_id: str, account_id: str, scopes: list[str] | None = None
    ) -> tuple[AccessToken, RefreshToken]:
        """Mint a refresh token and its first access token."""
        scopes = list(scopes or [])
        with self._lock:
            refresh = RefreshToken(
                token=_generate(REFRESH_TOKEN_PREFIX),
                client_id=client_id,
                account_id=account_id,
                scopes=scopes,
            )
            self._refresh_tokens[refresh.token] = refresh
            access = self._new_access_token(client_id, account_id, scopes, refresh)
        return access, refresh

    def refresh(
        self,
        refresh_token: str,
        client_id: str,
        *,
        rotate: bool = True,
        scopes: list[str] | None = None,
    ) -> tuple[AccessToken, RefreshToken] | None:
        """Mint a new access token from *refresh_token*.

        *scopes* may narrow the new access token to a subset of the grant; the
        refresh token keeps the full grant. Asking for more raises
        ``OAuthValidationError(invalid_scope)``, checked only once the token is
        known to belong to *client_id*.

        With *rotate*, the presented refresh token is replaced by a new one
        that inherits its spawned access tokens, so cascade revocation of the
        successor still reaches them. Returns None if the token is unknown or
        belongs to another client.
        """
        if not refresh_token.startswith(REFRESH_TOKEN_PREFIX):
            return None
        with self._lock:
            current = self._refresh_tokens.get(refresh_token)
            if current is None or current.client_id != client_id:
                return None
            if scopes and not set(scopes) <= set(current.scopes):
                raise OAuthValidationError(
                    "Requested scope exceeds the original grant", error="invalid_scope"
                )
            granted = list(scopes) if scopes else list(current.scopes)

            if rotate:
                del self._refresh_tokens[refresh_token]
                successor = RefreshToken(
                    token=_generate(REFRESH_TOKEN_PREFIX),
                    client_id=current.client_id,
                    account_id=current.account_id,
                    scopes=list(current.scopes),
                    access_tokens=set(current.access_tokens),
                )
                for token in successor.access_tokens:
                    record = self._access_tokens.get(token)
                    if record is not None:
                        record.refresh_token = successor.token
                self._refresh_tokens[successor.token] = successor
                current = successor

            access = self._new_access_token(
                current.client_id, current.account_id, granted, current
            )
        return access, current

    def get_access_token(self, token: str) -> AccessToken | None:
        if not token.startswith(ACCESS_TOKEN_PREFIX):
            return None
        with self._lock:
            record = self._access_tokens.get(token)
            if record is None:
                return None
            if record.is_expired():
                self._drop_access_token(record)
                return None
            return record

    def get_refresh_token(self, token: str) -> RefreshToken | None:
        if not token.startswith(REFRESH_TOKEN_PREFIX):
            return None
        with self._lock:
            return self._refresh_tokens.get(token)

    def _drop_access_token(self, record: AccessToken) -> None:
        self._access_tokens.pop(record.token, None)
        if record.refresh_token:
            parent = self._refresh_tokens.get(record.refresh_token)
            if parent is not None:
                parent.access_tokens.discard(record.token)

    # --- Revocation ---

    def revoke_access_token(self, token: str) -> bool:
        """Revoke one access token. Its refresh token is untouched."""
        with self._lock:
            record = self._access_tokens.get(token)
            if record is None:
                return False
            self._drop_access_token(record)
        logger.info("Revoked access token %s", redact_token(token))
        return True

    def revoke_refresh_token(self, token: str) -> bool:
        """Revoke a refresh token and every access token it produced."""
        with self._lock:
            record = self._refresh_tokens.pop(token, None)
            if record is None:
                return False
            for access in record.access_tokens:
                self._access_tokens.pop(access, None)
        logger.info(
            "Revoked refresh token %s and %d access token(s)",
            redact_token(token),
            len(record.access_tokens),
        )
        return True

    # --- Maintenance ---

    def cleanup_expired(self) -> int:
        """Remove expired codes and access tokens. Returns the number removed."""
        now = datetime.now(UTC)
        with self._lock:
            expired_codes = [k for k, v in self._codes.items() if v.is_expired(now)]
            for k in expired_codes:
                del self._codes[k]

            expired_tokens = [v for v in self._access_tokens.values() if v.is_expired(now)]
            for record in expired_tokens:
                self._drop_access_token(record)

        return len(expired_codes) + len(expired_tokens)

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "authorization_codes": len(self._codes),
                "access_tokens": len(self._access_tokens),
                "refresh_tokens": len(self._refresh_tokens),
            }
