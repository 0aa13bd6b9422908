# Registered downstream clients.
# Created: 2026-10-07
#
# Dynamic client registration (RFC 7591). Records are persisted so restarts
# don't invalidate clients that registered earlier.

from __future__ import annotations

import hmac
import logging
import secrets
import threading
import time
import uuid
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from calbridge.api.oauth2.models import CLIENT_SECRET_PREFIX, ClientMetadata, RegisteredClient
from calbridge.api.oauth2.persistence import (
    CLIENTS_FILENAME,
    get_storage_path,
    load_json_file,
    save_json_file,
)

logger = logging.getLogger(__name__)

# Set by the broker, never taken from the registration request
_ISSUED_FIELDS = ("client_id", "client_secret", "client_id_issued_at", "client_secret_expires_at")


class ClientsStore:
    """Registered clients, in memory with a JSON file behind them."""

    def __init__(self, persist_path: Path | None = None):
        self._clients: dict[str, RegisteredClient] = {}
        self._persist_path = persist_path
        self._lock = threading.Lock()

    def _get_path(self) -> Path:
        if self._persist_path is not None:
            return self._persist_path
        return get_storage_path(CLIENTS_FILENAME)

    def initialize(self) -> None:
        """Load previously registered clients.

        A missing file means no clients yet. An unreadable or undecodable
        file raises, so a damaged store is never silently overwritten.
        """
        path = self._get_path()
        data = load_json_file(path)
        if data is None:
            return
        if not isinstance(data, dict):
            raise ValueError(f"Client registry at {path} is not a JSON object")

        loaded: dict[str, RegisteredClient] = {}
        for client_id, entry in data.items():
            try:
                loaded[client_id] = RegisteredClient.model_validate(entry)
            except ValidationError as exc:
                logger.warning("Skipping invalid client record %s: %s", client_id, exc)

        with self._lock:
            self._clients.update(loaded)
        logger.debug("Loaded %d registered client(s) from %s", len(loaded), path)

    def get_client(self, client_id: str) -> RegisteredClient | None:
        return self._clients.get(client_id)

    def register_client(self, metadata: ClientMetadata | dict[str, Any]) -> RegisteredClient:
        """Register a client and persist it. Raises pydantic.ValidationError on bad metadata."""
        if not isinstance(metadata, ClientMetadata):
            metadata = ClientMetadata.model_validate(metadata)

        fields = metadata.model_dump(exclude_none=True)
        for key in _ISSUED_FIELDS:
            fields.pop(key, None)

        client_secret = None
        if metadata.token_endpoint_auth_method != "none":
            client_secret = f"{CLIENT_SECRET_PREFIX}{secrets.token_urlsafe(32)}"

        client = RegisteredClient(
            **fields,
            client_id=str(uuid.uuid4()),
            client_secret=client_secret,
            client_id_issued_at=int(time.time()),
            client_secret_expires_at=0,
        )

        with self._lock:
            self._clients[client.client_id] = client
            snapshot = {
                k: v.model_dump(mode="json", exclude_none=True) for k, v in self._clients.items()
            }
            save_json_file(self._get_path(), snapshot)

        logger.info(
            "Registered client %s (%s)", client.client_id, client.client_name or "unnamed"
        )
        return client

    def authenticate(self, client_id: str, client_secret: str | None) -> RegisteredClient | None:
        """Return the client if the presented secret is acceptable, else None.

        Public clients (``token_endpoint_auth_method == "none"``) rely on PKCE
        alone and are accepted without a secret.
        """
        client = self._clients.get(client_id)
        if client is None:
            return None
        if client.token_endpoint_auth_method == "none" or not client.client_secret:
            return client
        if not client_secret or not hmac.compare_digest(client_secret, client.client_secret):
            return None
        return client

    def __len__(self) -> int:
        return len(self._clients)
