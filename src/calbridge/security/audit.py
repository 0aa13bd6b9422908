"""
Audit log for broker security events.
Created: 2026-10-08

Append-only JSONL record of client registrations, authorizations, token
issuance and revocation. Tokens are recorded in redacted form only.
"""

import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from calbridge.config import get_config_dir

logger = logging.getLogger("audit")


@dataclass
class AuditEvent:
    """A single audit log entry."""

    id: str
    timestamp: str
    actor: str  # client_id, or "broker" for internal events
    action: str  # e.g. "token_issued", "token_revoked"
    target: str  # e.g. "account:default", "token:mcp_at_abcd..."
    status: str  # "success", "denied", "error"
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        actor: str,
        action: str,
        target: str,
        status: str,
        **context: Any,
    ) -> "AuditEvent":
        return cls(
            id=str(uuid.uuid4()),
            timestamp=datetime.now(tz=UTC).isoformat(),
            actor=actor,
            action=action,
            target=target,
            status=status,
            context=context,
        )


class AuditLogger:
    """
    Append-only audit logger.
    Writes to <config_dir>/audit.jsonl.
    """

    def __init__(self, log_path: Path | None = None):
        self.log_path = log_path or get_config_dir() / "audit.jsonl"
        self._callbacks: list[Callable[[dict], None]] = []

    def on_log(self, callback: Callable[[dict], None]) -> None:
        """Register a callback to be called after each audit log write."""
        self._callbacks.append(callback)

    def log(self, event: AuditEvent) -> None:
        """Write an event. Failures go to the ``audit`` logger, never to the caller."""
        event_dict = asdict(event)
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(event_dict) + "\n")
        except OSError as e:
            logger.critical("FAILED TO WRITE AUDIT LOG: %s | Event: %s", e, event_dict)
            return

        for cb in self._callbacks:
            cb(event_dict)

    def log_oauth_event(
        self,
        action: str,
        actor: str,
        target: str,
        status: str = "success",
        **context: Any,
    ) -> str:
        """Helper for broker events. Returns the event id."""
        event = AuditEvent.create(
            actor=actor, action=action, target=target, status=status, **context
        )
        self.log(event)
        return event.id

