# Token Manager: upstream (Google) token persistence, one file per account.
# Created: 2026-10-06
#
# Layout: <config_dir>/oauth/accounts/{account}.json, written atomically 0600.
# The broker's own client registrations live next to it in <config_dir>/oauth/.

from __future__ import annotations

import json
import logging
import os
import re
import stat
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from calbridge.config import Settings, get_config_dir

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT = "default"

_ACCOUNT_ID_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")


@dataclass
class UpstreamTokens:
    """OAuth 2.0 token set issued by the upstream provider."""

    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_at: float | None = None  # Unix timestamp
    scopes: list[str] = field(default_factory=list)
    email: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


def validate_account_id(account_id: str) -> str:
    """Return *account_id* unchanged, or raise ValueError if it is not a safe file stem."""
    if not isinstance(account_id, str) or not _ACCOUNT_ID_RE.match(account_id):
        raise ValueError(
            f"Invalid account id {account_id!r}: use 1-64 lowercase letters, digits, '-' or '_'"
        )
    return account_id


def get_oauth_dir(settings: Settings | None = None) -> Path:
    """Get/create the owner-only OAuth directory."""
    d = get_config_dir(settings) / "oauth"
    d.mkdir(mode=0o700, exist_ok=True)
    return d


def save_json_file(path: Path, data: Any) -> None:
    """Write *data* as pretty-printed JSON, readable by the owner only.

    The temp file is created 0600 and renamed over the target so a crash
    mid-write never leaves a truncated record.
    """
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, stat.S_IRUSR | stat.S_IWUSR)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.chmod(tmp, stat.S_IRUSR | stat.S_IWUSR)
    os.replace(tmp, path)
    logger.debug("Wrote %s", path)


class TokenManager:
    """Stores upstream tokens per local account.

    The *account mode* selects which account ``save_tokens``/``load_tokens``
    operate on when no explicit account is given.
    """

    def __init__(self, base_dir: Path | None = None, account: str = DEFAULT_ACCOUNT):
        self._base_dir = base_dir
        self._account = validate_account_id(account)

    def _accounts_dir(self) -> Path:
        base = self._base_dir if self._base_dir is not None else get_oauth_dir()
        d = base / "accounts"
        d.mkdir(mode=0o700, parents=True, exist_ok=True)
        return d

    def get_account_mode(self) -> str:
        return self._account

    def set_account_mode(self, account_id: str) -> None:
        self._account = validate_account_id(account_id)

    def get_token_path(self, account: str | None = None) -> Path:
        account = validate_account_id(account or self._account)
        return self._accounts_dir() / f"{account}.json"

    def save_tokens(self, tokens: UpstreamTokens, email: str | None = None) -> None:
        """Save tokens for the current account mode."""
        if email:
            tokens.email = email
        save_json_file(self.get_token_path(), asdict(tokens))
        logger.info("Saved upstream tokens for account %s", self._account)

    def load_tokens(self, account: str | None = None) -> UpstreamTokens | None:
        """Load tokens for an account. Returns None if not found or unreadable."""
        path = self.get_token_path(account)
        if not path.exists():
            return None

        try:
            data = json.loads(path.read_text())
            return UpstreamTokens(**data)
        except (OSError, ValueError, TypeError) as e:
            logger.warning("Failed to load upstream tokens from %s: %s", path, e)
            return None

    def delete_tokens(self, account: str | None = None) -> bool:
        """Delete tokens for an account. Returns True if deleted."""
        path = self.get_token_path(account)
        if path.exists():
            path.unlink()
            logger.info("Deleted upstream tokens for account %s", account or self._account)
            return True
        return False

    def list_accounts(self) -> list[str]:
        """List all accounts with stored tokens."""
        return sorted(f.stem for f in self._accounts_dir().glob("*.json"))
