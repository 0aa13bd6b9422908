# Shared fixtures for the broker test suite.
# Created: 2026-10-09

import base64
import hashlib
import secrets
import time
from unittest.mock import AsyncMock

import pytest

from calbridge.api.oauth2.clients import ClientsStore
from calbridge.api.oauth2.server import AuthorizationServer
from calbridge.config import Settings
from calbridge.integrations.oauth import UpstreamOAuthClient
from calbridge.integrations.token_store import TokenManager, UpstreamTokens
from calbridge.security.audit import AuditLogger
from calbridge.security.rate_limiter import reset_all

CLIENT_REDIRECT = "https://client.example/cb"


def make_pkce_pair() -> tuple[str, str]:
    """Generate a PKCE code_verifier and code_challenge pair."""
    verifier = secrets.token_urlsafe(32)
    challenge = (
        base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
        .rstrip(b"=")
        .decode()
    )
    return verifier, challenge


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    reset_all()
    yield
    reset_all()


@pytest.fixture
def pkce_pair():
    return make_pkce_pair()


@pytest.fixture
def oauth_dir(tmp_path):
    d = tmp_path / "oauth"
    d.mkdir()
    return d


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        config_dir=tmp_path,
        issuer_url="http://localhost:3000",
        google_oauth_client_id="google-client-id",
        google_oauth_client_secret="google-client-secret",
        cleanup_interval=0,
    )


@pytest.fixture
def token_manager(oauth_dir):
    return TokenManager(oauth_dir)


@pytest.fixture
def upstream():
    """Upstream client whose network calls are replaced with AsyncMocks."""
    client = UpstreamOAuthClient(
        client_id="google-client-id",
        client_secret="google-client-secret",
        redirect_uri="http://localhost:3000/oauth2callback",
    )
    client.exchange_code = AsyncMock(
        return_value=UpstreamTokens(
            access_token="ya29.upstream-access",
            refresh_token="1//upstream-refresh",
            expires_at=time.time() + 3600,
            scopes=["https://www.googleapis.com/auth/calendar"],
        )
    )
    client.get_token_email = AsyncMock(return_value="user@example.com")
    return client


@pytest.fixture
def audit_path(tmp_path):
    return tmp_path / "audit.jsonl"


@pytest.fixture
def server(token_manager, upstream, oauth_dir, audit_path):
    return AuthorizationServer(
        token_manager,
        upstream,
        clients=ClientsStore(oauth_dir / "mcp-clients.json"),
        issuer_url="http://localhost:3000",
        cleanup_interval=0,
        audit=AuditLogger(audit_path),
    )


@pytest.fixture
def registered(server):
    """A confidential client registered with a single redirect URI."""
    return server.register_client(
        {"redirect_uris": [CLIENT_REDIRECT], "client_name": "Test Client"}
    )
