# Pending authorization sessions.
# Created: 2026-10-07
#
# Correlates a downstream /authorize call with the upstream provider's
# callback, across an arbitrary and untrusted delay.

from __future__ import annotations

import logging
import threading
import uuid
from datetime import UTC, datetime, timedelta

from calbridge.api.oauth2.models import PendingSession

logger = logging.getLogger(__name__)

PENDING_SESSION_TTL = timedelta(minutes=15)


class PendingSessionStore:
    """One-shot pending sessions with a fixed TTL."""

    def __init__(self, ttl: timedelta = PENDING_SESSION_TTL):
        self.ttl = ttl
        self._sessions: dict[str, PendingSession] = {}
        self._lock = threading.Lock()

    def create(
        self,
        client_id: str,
        code_challenge: str,
        redirect_uri: str,
        state: str | None = None,
        account_id: str = "default",
        scopes: list[str] | None = None,
    ) -> str:
        session_id = str(uuid.uuid4())
        session = PendingSession(
            session_id=session_id,
            client_id=client_id,
            code_challenge=code_challenge,
            redirect_uri=redirect_uri,
            state=state,
            account_id=account_id,
            scopes=list(scopes or []),
            expires_at=datetime.now(UTC) + self.ttl,
        )
        with self._lock:
            self._sessions[session_id] = session
        return session_id

    def consume(self, session_id: str) -> PendingSession | None:
        """Remove and return a live session.

        The entry is deleted on every lookup, so a replayed callback finds
        nothing. Unknown and expired sessions are indistinguishable.
        """
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None or session.is_expired():
            return None
        return session

    def cleanup_expired(self) -> int:
        now = datetime.now(UTC)
        with self._lock:
            expired = [k for k, v in self._sessions.items() if v.is_expired(now)]
            for k in expired:
                del self._sessions[k]
        if expired:
            logger.debug("Dropped %d expired pending session(s)", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions
