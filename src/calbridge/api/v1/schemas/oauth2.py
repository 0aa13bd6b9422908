# OAuth2 schemas.
# Created: 2026-10-08

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class TokenRequest(BaseModel):
    """Token exchange or refresh request (form-encoded or JSON)."""

    model_config = ConfigDict(extra="ignore")

    grant_type: str
    code: str | None = None
    code_verifier: str | None = None
    redirect_uri: str | None = None
    refresh_token: str | None = None
    scope: str | None = None
    client_id: str | None = None
    client_secret: str | None = None


class TokenResponse(BaseModel):
    """OAuth2 token response."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: str | None = None
    scope: str | None = None


class RevokeRequest(BaseModel):
    """Token revocation request (RFC 7009)."""

    model_config = ConfigDict(extra="ignore")

    token: str
    token_type_hint: str | None = None
    client_id: str | None = None
    client_secret: str | None = None


class OAuthErrorResponse(BaseModel):
    error: str
    error_description: str | None = None


class AuthorizationServerMetadata(BaseModel):
    """RFC 8414 authorization server metadata."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str
    revocation_endpoint: str
    response_types_supported: list[str] = Field(default_factory=lambda: ["code"])
    grant_types_supported: list[str] = Field(
        default_factory=lambda: ["authorization_code", "refresh_token"]
    )
    code_challenge_methods_supported: list[str] = Field(default_factory=lambda: ["S256"])
    token_endpoint_auth_methods_supported: list[str] = Field(
        default_factory=lambda: ["client_secret_post", "client_secret_basic", "none"]
    )
    revocation_endpoint_auth_methods_supported: list[str] = Field(
        default_factory=lambda: ["client_secret_post", "client_secret_basic", "none"]
    )


class ProtectedResourceMetadata(BaseModel):
    """RFC 9728 protected resource metadata."""

    resource: str
    authorization_servers: list[str]
    bearer_methods_supported: list[str] = Field(default_factory=lambda: ["header"])


class SessionInfo(BaseModel):
    """What the presented bearer token resolves to."""

    client_id: str
    account_id: str
    expires_at: int
    scopes: list[str] = Field(default_factory=list)

