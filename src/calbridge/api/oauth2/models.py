# Broker OAuth2 data models.
# Created: 2026-10-07

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Every broker-issued string carries its kind, so a token presented to the
# wrong endpoint is rejected without consulting another table.
AUTH_CODE_PREFIX = "mcp_ac_"
ACCESS_TOKEN_PREFIX = "mcp_at_"
REFRESH_TOKEN_PREFIX = "mcp_rt_"
CLIENT_SECRET_PREFIX = "mcp_cs_"

AUTH_STATE_TYPE = "mcp_auth"


def _now() -> datetime:
    return datetime.now(UTC)


def redact_token(token: str) -> str:
    """Log-safe form of a broker token: its prefix plus a few characters."""
    for prefix in (AUTH_CODE_PREFIX, ACCESS_TOKEN_PREFIX, REFRESH_TOKEN_PREFIX):
        if token.startswith(prefix):
            return f"{token[: len(prefix) + 4]}..."
    return "<unrecognized>"


# ---------------------------------------------------------------------------
# Registered clients (persisted)
# ---------------------------------------------------------------------------


class ClientMetadata(BaseModel):
    """Dynamic client registration request (RFC 7591)."""

    model_config = ConfigDict(extra="allow")

    redirect_uris: list[str] = Field(..., min_length=1)
    client_name: str | None = None
    grant_types: list[str] = Field(default_factory=lambda: ["authorization_code", "refresh_token"])
    response_types: list[str] = Field(default_factory=lambda: ["code"])
    token_endpoint_auth_method: str = "client_secret_post"
    scope: str | None = None

    @field_validator("redirect_uris")
    @classmethod
    def _absolute_uris(cls, value: list[str]) -> list[str]:
        for uri in value:
            parts = urlsplit(uri)
            if not parts.scheme:
                raise ValueError(f"redirect_uri must be absolute: {uri}")
            if parts.fragment:
                raise ValueError(f"redirect_uri must not contain a fragment: {uri}")
            if parts.scheme in ("http", "https") and not parts.netloc:
                raise ValueError(f"redirect_uri is missing a host: {uri}")
        return value

    @field_validator("token_endpoint_auth_method")
    @classmethod
    def _known_auth_method(cls, value: str) -> str:
        if value not in ("none", "client_secret_post", "client_secret_basic"):
            raise ValueError(f"Unsupported token_endpoint_auth_method: {value}")
        return value


class RegisteredClient(ClientMetadata):
    """A registered downstream client. Immutable once stored."""

    model_config = ConfigDict(extra="allow", frozen=True)

    client_id: str
    client_secret: str | None = None
    client_id_issued_at: int
    client_secret_expires_at: int = 0  # never


# ---------------------------------------------------------------------------
# In-memory records
# ---------------------------------------------------------------------------


@dataclass
class AuthorizationCode:
    """Broker authorization code, minted once the upstream hop completes."""

    code: str
    client_id: str
    code_challenge: str
    redirect_uri: str
    session_id: str
    account_id: str
    expires_at: datetime
    scopes: list[str] = field(default_factory=list)
    issued_at: datetime = field(default_factory=_now)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or _now()) > self.expires_at


@dataclass
class AccessToken:
    token: str
    client_id: str
    account_id: str
    expires_at: datetime
    scopes: list[str] = field(default_factory=list)
    refresh_token: str | None = None
    issued_at: datetime = field(default_factory=_now)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or _now()) > self.expires_at


@dataclass
class RefreshToken:
    """Refresh token plus the access tokens it has spawned (for cascade revocation)."""

    token: str
    client_id: str
    account_id: str
    scopes: list[str] = field(default_factory=list)
    access_tokens: set[str] = field(default_factory=set)
    issued_at: datetime = field(default_factory=_now)


@dataclass
class PendingSession:
    """An authorization in flight between our redirect to Google and its callback."""

    session_id: str
    client_id: str
    code_challenge: str
    redirect_uri: str
    account_id: str
    expires_at: datetime
    state: str | None = None
    scopes: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_now)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or _now()) > self.expires_at


@dataclass(frozen=True)
class StateEnvelope:
    """Decoded upstream ``state`` parameter. Wire-only, never stored."""

    session_id: str
    account: str
    type: str = AUTH_STATE_TYPE

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.type, "sessionId": self.session_id, "account": self.account}


@dataclass(frozen=True)
class AuthInfo:
    """What a verified access token resolves to."""

    token: str
    client_id: str
    account_id: str
    expires_at: int  # epoch seconds
    scopes: list[str] = field(default_factory=list)
