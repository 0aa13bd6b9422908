# Tests for the broker token/code store.
# Created: 2026-10-09

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from calbridge.api.oauth2.errors import OAuthValidationError
from calbridge.api.oauth2.models import redact_token
from calbridge.api.oauth2.tokens import TokenStore


@pytest.fixture
def store():
    return TokenStore()


def _code(store, client_id="client-a", account_id="default", scopes=None):
    return store.create_auth_code(
        client_id=client_id,
        code_challenge="challenge",
        redirect_uri="https://client.example/cb",
        session_id="session-1",
        account_id=account_id,
        scopes=scopes,
    )


class TestAuthorizationCodes:
    def test_code_has_prefix(self, store):
        assert _code(store).startswith("mcp_ac_")

    def test_codes_are_unique(self, store):
        codes = {_code(store) for _ in range(50)}
        assert len(codes) == 50

    def test_get_does_not_consume(self, store):
        code = _code(store)
        assert store.get_auth_code(code) is not None
        assert store.get_auth_code(code) is not None
        assert store.consume_auth_code(code) is not None

    def test_consume_is_single_use(self, store):
        code = _code(store)
        record = store.consume_auth_code(code)
        assert record is not None
        assert record.client_id == "client-a"
        assert record.code_challenge == "challenge"
        assert store.consume_auth_code(code) is None
        assert store.get_auth_code(code) is None

    def test_expired_code_is_rejected(self):
        store = TokenStore(auth_code_ttl=timedelta(seconds=-1))
        code = _code(store)
        assert store.get_auth_code(code) is None
        assert store.consume_auth_code(code) is None
        assert store.stats()["authorization_codes"] == 0

    def test_wrong_prefix_is_rejected(self, store):
        code = _code(store)
        assert store.consume_auth_code(code.replace("mcp_ac_", "mcp_at_")) is None
        assert store.get_auth_code("") is None

    def test_concurrent_redemption_succeeds_once(self, store):
        code = _code(store)
        barrier = threading.Barrier(16)

        def redeem(_):
            barrier.wait()
            return store.consume_auth_code(code)

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(redeem, range(16)))

        assert sum(r is not None for r in results) == 1


class TestTokenPairs:
    def test_issue_pair(self, store):
        access, refresh = store.issue_token_pair("client-a", "work", ["calendar"])
        assert access.token.startswith("mcp_at_")
        assert refresh.token.startswith("mcp_rt_")
        assert access.refresh_token == refresh.token
        assert access.token in refresh.access_tokens
        assert access.account_id == "work"
        assert access.scopes == ["calendar"]

    def test_get_access_token(self, store):
        access, _ = store.issue_token_pair("client-a", "default")
        record = store.get_access_token(access.token)
        assert record is not None
        assert record.client_id == "client-a"

    def test_get_access_token_rejects_refresh_token(self, store):
        _, refresh = store.issue_token_pair("client-a", "default")
        assert store.get_access_token(refresh.token) is None

    def test_expired_access_token_is_evicted_on_read(self):
        store = TokenStore(access_token_ttl=timedelta(seconds=-1))
        access, refresh = store.issue_token_pair("client-a", "default")
        assert store.get_access_token(access.token) is None
        assert store.stats()["access_tokens"] == 0
        assert access.token not in store.get_refresh_token(refresh.token).access_tokens


class TestRefresh:
    def test_rotation_replaces_refresh_token(self, store):
        first_access, first_refresh = store.issue_token_pair("client-a", "default")
        result = store.refresh(first_refresh.token, "client-a")
        assert result is not None
        access, refresh = result

        assert access.token != first_access.token
        assert refresh.token != first_refresh.token
        assert store.get_refresh_token(first_refresh.token) is None
        # Earlier access tokens stay valid until their own expiry
        assert store.get_access_token(first_access.token) is not None

    def test_rotated_token_inherits_access_tokens(self, store):
        first_access, first_refresh = store.issue_token_pair("client-a", "default")
        access, refresh = store.refresh(first_refresh.token, "client-a")

        assert refresh.access_tokens == {first_access.token, access.token}
        assert store.get_access_token(first_access.token).refresh_token == refresh.token

        assert store.revoke_refresh_token(refresh.token) is True
        assert store.get_access_token(first_access.token) is None
        assert store.get_access_token(access.token) is None

    def test_without_rotation_refresh_token_is_reused(self, store):
        _, first_refresh = store.issue_token_pair("client-a", "default")
        access_1, refresh_1 = store.refresh(first_refresh.token, "client-a", rotate=False)
        access_2, refresh_2 = store.refresh(first_refresh.token, "client-a", rotate=False)

        assert refresh_1.token == refresh_2.token == first_refresh.token
        assert access_1.token != access_2.token

    def test_other_client_cannot_refresh(self, store):
        _, refresh = store.issue_token_pair("client-a", "default")
        assert store.refresh(refresh.token, "client-b") is None
        # Still usable by its owner
        assert store.refresh(refresh.token, "client-a") is not None

    def test_unknown_refresh_token(self, store):
        assert store.refresh("mcp_rt_nope", "client-a") is None
        assert store.refresh("mcp_at_nope", "client-a") is None

    def test_refresh_carries_account_and_scopes(self, store):
        _, refresh = store.issue_token_pair("client-a", "work", ["calendar"])
        access, _ = store.refresh(refresh.token, "client-a")
        assert access.account_id == "work"
        assert access.scopes == ["calendar"]

    def test_narrowed_scopes_apply_to_access_token_only(self, store):
        _, refresh = store.issue_token_pair("client-a", "default", ["calendar", "tasks"])
        access, successor = store.refresh(refresh.token, "client-a", scopes=["calendar"])
        assert access.scopes == ["calendar"]
        assert successor.scopes == ["calendar", "tasks"]

        access, _ = store.refresh(successor.token, "client-a")
        assert access.scopes == ["calendar", "tasks"]

    def test_widened_scopes_rejected_without_rotating(self, store):
        _, refresh = store.issue_token_pair("client-a", "default", ["calendar"])
        with pytest.raises(OAuthValidationError) as exc_info:
            store.refresh(refresh.token, "client-a", scopes=["calendar", "admin"])
        assert exc_info.value.error == "invalid_scope"
        assert store.get_refresh_token(refresh.token) is refresh

    def test_scopes_not_checked_for_other_client(self, store):
        _, refresh = store.issue_token_pair("client-a", "default", ["calendar"])
        assert store.refresh(refresh.token, "client-b", scopes=["admin"]) is None


class TestRevocation:
    def test_revoke_access_token_keeps_refresh(self, store):
        access, refresh = store.issue_token_pair("client-a", "default")
        assert store.revoke_access_token(access.token) is True
        assert store.get_access_token(access.token) is None
        assert store.get_refresh_token(refresh.token) is not None
        assert access.token not in store.get_refresh_token(refresh.token).access_tokens

    def test_revoke_refresh_token_cascades(self, store):
        access, refresh = store.issue_token_pair("client-a", "default")
        more, _ = store.refresh(refresh.token, "client-a", rotate=False)

        assert store.revoke_refresh_token(refresh.token) is True
        assert store.get_refresh_token(refresh.token) is None
        assert store.get_access_token(access.token) is None
        assert store.get_access_token(more.token) is None

    def test_revoke_unknown_returns_false(self, store):
        assert store.revoke_access_token("mcp_at_unknown") is False
        assert store.revoke_refresh_token("mcp_rt_unknown") is False

    def test_revoke_twice(self, store):
        access, refresh = store.issue_token_pair("client-a", "default")
        assert store.revoke_refresh_token(refresh.token) is True
        assert store.revoke_refresh_token(refresh.token) is False
        assert store.revoke_access_token(access.token) is False


class TestMaintenance:
    def test_cleanup_expired(self):
        store = TokenStore(
            access_token_ttl=timedelta(seconds=-1), auth_code_ttl=timedelta(seconds=-1)
        )
        _code(store)
        _code(store)
        store.issue_token_pair("client-a", "default")

        assert store.cleanup_expired() == 3
        stats = store.stats()
        assert stats["authorization_codes"] == 0
        assert stats["access_tokens"] == 0
        # Refresh tokens do not expire
        assert stats["refresh_tokens"] == 1

    def test_cleanup_keeps_live_records(self, store):
        _code(store)
        store.issue_token_pair("client-a", "default")
        assert store.cleanup_expired() == 0
        assert store.stats() == {
            "authorization_codes": 1,
            "access_tokens": 1,
            "refresh_tokens": 1,
        }


class TestRedaction:
    def test_redacts_known_prefixes(self):
        assert redact_token("mcp_at_abcdefghijkl") == "mcp_at_abcd..."
        assert redact_token("mcp_rt_zyxwvut") == "mcp_rt_zyxw..."

    def test_unknown_prefix(self):
        assert redact_token("ya29.secret") == "<unrecognized>"
