# Durable JSON records for the broker.
# Created: 2026-10-07
#
# Only client registrations are persisted. Codes, tokens and pending sessions
# are in-memory and do not survive a restart.

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from calbridge.integrations.token_store import get_oauth_dir, save_json_file

__all__ = ["CLIENTS_FILENAME", "get_storage_path", "load_json_file", "save_json_file"]

CLIENTS_FILENAME = "mcp-clients.json"


def get_storage_path(filename: str, base_dir: Path | None = None) -> Path:
    """Path for *filename* in the same owner-only directory as the upstream tokens."""
    return (base_dir if base_dir is not None else get_oauth_dir()) / filename


def load_json_file(path: Path) -> Any | None:
    """Read and decode *path*. A missing file is ``None``; any other failure raises."""
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    return json.loads(content)
