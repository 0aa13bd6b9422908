# Tests for integrations/oauth.py and integrations/token_store.py
# Created: 2026-10-09

import json
import stat
import time
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from calbridge.integrations.oauth import (
    CALENDAR_SCOPE,
    GOOGLE_AUTH_URL,
    GOOGLE_TOKEN_URL,
    GOOGLE_TOKENINFO_URL,
    TASKS_SCOPE,
    UpstreamAuthError,
    UpstreamOAuthClient,
    get_required_scopes,
)
from calbridge.integrations.token_store import TokenManager, UpstreamTokens, validate_account_id

# ---------------------------------------------------------------------------
# TokenManager
# ---------------------------------------------------------------------------


@pytest.fixture
def manager(tmp_path):
    return TokenManager(tmp_path)


class TestTokenManager:
    def test_save_and_load(self, manager):
        tokens = UpstreamTokens(
            access_token="access123",
            refresh_token="refresh456",
            expires_at=time.time() + 3600,
            scopes=[CALENDAR_SCOPE],
        )
        manager.save_tokens(tokens, email="user@example.com")

        loaded = manager.load_tokens()
        assert loaded is not None
        assert loaded.access_token == "access123"
        assert loaded.refresh_token == "refresh456"
        assert loaded.scopes == [CALENDAR_SCOPE]
        assert loaded.email == "user@example.com"

    def test_load_nonexistent(self, manager):
        assert manager.load_tokens("nope") is None

    def test_account_mode_selects_file(self, manager, tmp_path):
        manager.set_account_mode("work")
        manager.save_tokens(UpstreamTokens(access_token="work-token"))

        assert manager.get_account_mode() == "work"
        assert (tmp_path / "accounts" / "work.json").exists()
        assert manager.load_tokens("work").access_token == "work-token"
        assert manager.load_tokens("default") is None

    def test_list_and_delete(self, manager):
        for account in ("work", "personal"):
            manager.set_account_mode(account)
            manager.save_tokens(UpstreamTokens(access_token=account))

        assert manager.list_accounts() == ["personal", "work"]
        assert manager.delete_tokens("work") is True
        assert manager.delete_tokens("work") is False
        assert manager.list_accounts() == ["personal"]

    def test_file_permissions(self, manager):
        manager.save_tokens(UpstreamTokens(access_token="secret"))
        mode = manager.get_token_path().stat().st_mode
        assert mode & stat.S_IRUSR
        assert mode & stat.S_IWUSR
        assert not (mode & stat.S_IRGRP)
        assert not (mode & stat.S_IROTH)

    def test_save_replaces_atomically(self, manager, monkeypatch):
        manager.save_tokens(UpstreamTokens(access_token="old"))

        def fail_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("calbridge.integrations.token_store.os.replace", fail_replace)
        with pytest.raises(OSError):
            manager.save_tokens(UpstreamTokens(access_token="new"))

        assert manager.load_tokens().access_token == "old"
        assert manager.list_accounts() == ["default"]

    def test_corrupt_file(self, manager):
        path = manager.get_token_path()
        path.write_text("{broken")
        assert manager.load_tokens() is None

    @pytest.mark.parametrize("account", ["", "Work", "../etc", "a" * 65, "-leading"])
    def test_invalid_account_id(self, manager, account):
        with pytest.raises(ValueError):
            manager.set_account_mode(account)
        with pytest.raises(ValueError):
            validate_account_id(account)

    def test_valid_account_ids(self):
        for account in ("default", "work-2", "a", "team_cal"):
            assert validate_account_id(account) == account


# ---------------------------------------------------------------------------
# UpstreamOAuthClient
# ---------------------------------------------------------------------------


def _client(handler=None, **kwargs) -> UpstreamOAuthClient:
    transport = httpx.MockTransport(handler) if handler else None
    return UpstreamOAuthClient(
        client_id="google-client-id",
        client_secret="google-client-secret",
        redirect_uri="http://localhost:3000/oauth2callback",
        transport=transport,
        **kwargs,
    )


class TestScopes:
    def test_calendar_only(self):
        assert get_required_scopes() == [CALENDAR_SCOPE]

    def test_with_tasks(self):
        assert get_required_scopes(enable_tasks=True) == [CALENDAR_SCOPE, TASKS_SCOPE]


class TestGenerateAuthUrl:
    def test_url_parameters(self):
        url = _client().generate_auth_url("opaque-state")
        assert url.startswith(GOOGLE_AUTH_URL)

        params = parse_qs(urlsplit(url).query)
        assert params["client_id"] == ["google-client-id"]
        assert params["redirect_uri"] == ["http://localhost:3000/oauth2callback"]
        assert params["response_type"] == ["code"]
        assert params["scope"] == [CALENDAR_SCOPE]
        assert params["access_type"] == ["offline"]
        assert params["prompt"] == ["consent"]
        assert params["state"] == ["opaque-state"]

    def test_tasks_scope(self):
        url = _client(scopes=get_required_scopes(True)).generate_auth_url("s")
        assert parse_qs(urlsplit(url).query)["scope"] == [f"{CALENDAR_SCOPE} {TASKS_SCOPE}"]


class TestExchangeCode:
    async def test_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(
                200,
                json={
                    "access_token": "ya29.access",
                    "refresh_token": "1//refresh",
                    "expires_in": 3599,
                    "token_type": "Bearer",
                    "scope": CALENDAR_SCOPE,
                    "id_token": "header.payload.sig",
                },
            )

        tokens = await _client(handler).exchange_code("upstream-code")

        assert seen["url"] == GOOGLE_TOKEN_URL
        assert seen["form"]["code"] == ["upstream-code"]
        assert seen["form"]["grant_type"] == ["authorization_code"]
        assert seen["form"]["redirect_uri"] == ["http://localhost:3000/oauth2callback"]
        assert tokens.access_token == "ya29.access"
        assert tokens.refresh_token == "1//refresh"
        assert tokens.scopes == [CALENDAR_SCOPE]
        assert tokens.extra["id_token"] == "header.payload.sig"
        assert tokens.expires_at > time.time() + 3500

    async def test_error_status_raises(self):
        def handler(request):
            return httpx.Response(400, json={"error": "invalid_grant"})

        with pytest.raises(httpx.HTTPStatusError):
            await _client(handler).exchange_code("bad-code")

    async def test_missing_access_token(self):
        def handler(request):
            return httpx.Response(200, json={"token_type": "Bearer"})

        with pytest.raises(UpstreamAuthError):
            await _client(handler).exchange_code("code")

    async def test_transport_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(httpx.HTTPError):
            await _client(handler).exchange_code("code")


class TestGetTokenEmail:
    async def test_email(self):
        def handler(request):
            assert str(request.url).startswith(GOOGLE_TOKENINFO_URL)
            assert request.url.params["access_token"] == "ya29.access"
            return httpx.Response(200, json={"email": "user@example.com"})

        assert await _client(handler).get_token_email("ya29.access") == "user@example.com"

    async def test_failure_is_none(self):
        def handler(request):
            return httpx.Response(401, json={"error": "invalid_token"})

        assert await _client(handler).get_token_email("expired") is None

    async def test_non_json_is_none(self):
        def handler(request):
            return httpx.Response(200, content=b"<html>")

        assert await _client(handler).get_token_email("x") is None

    async def test_no_email_is_none(self):
        def handler(request):
            return httpx.Response(200, content=json.dumps({"scope": CALENDAR_SCOPE}))

        assert await _client(handler).get_token_email("x") is None
