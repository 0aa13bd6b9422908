# Tests for the pending-session correlator.
# Created: 2026-10-09

from datetime import timedelta

import pytest

from calbridge.api.oauth2.sessions import PendingSessionStore


@pytest.fixture
def sessions():
    return PendingSessionStore()


def _create(sessions, **kwargs):
    params = {
        "client_id": "client-a",
        "code_challenge": "challenge",
        "redirect_uri": "https://client.example/cb",
    }
    params.update(kwargs)
    return sessions.create(**params)


class TestPendingSessionStore:
    def test_create_and_consume(self, sessions):
        session_id = _create(sessions, state="xyz", account_id="work", scopes=["calendar"])
        assert session_id in sessions

        session = sessions.consume(session_id)
        assert session is not None
        assert session.client_id == "client-a"
        assert session.state == "xyz"
        assert session.account_id == "work"
        assert session.scopes == ["calendar"]

    def test_defaults(self, sessions):
        session = sessions.consume(_create(sessions))
        assert session.state is None
        assert session.account_id == "default"
        assert session.scopes == []

    def test_consume_is_single_use(self, sessions):
        session_id = _create(sessions)
        assert sessions.consume(session_id) is not None
        assert sessions.consume(session_id) is None
        assert session_id not in sessions

    def test_unknown_session(self, sessions):
        assert sessions.consume("not-a-session") is None

    def test_expired_session_is_indistinguishable_from_unknown(self):
        sessions = PendingSessionStore(ttl=timedelta(seconds=-1))
        session_id = _create(sessions)
        assert sessions.consume(session_id) is None
        # Deleted by the lookup itself
        assert len(sessions) == 0

    def test_session_ids_are_unique(self, sessions):
        ids = {_create(sessions) for _ in range(100)}
        assert len(ids) == 100
        assert len(sessions) == 100

    def test_cleanup_expired(self):
        sessions = PendingSessionStore(ttl=timedelta(seconds=-1))
        _create(sessions)
        _create(sessions)
        assert sessions.cleanup_expired() == 2
        assert len(sessions) == 0

    def test_cleanup_keeps_live_sessions(self, sessions):
        session_id = _create(sessions)
        assert sessions.cleanup_expired() == 0
        assert session_id in sessions
