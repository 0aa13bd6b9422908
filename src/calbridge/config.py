# Settings: environment-driven configuration for the broker.
# Created: 2026-10-06
#
# Only this module (and the CLI) reads the environment. Everything else
# receives its values through constructors wired up by api/serve.py.

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG_DIR = Path.home() / ".calbridge"


class Settings(BaseSettings):
    """Broker settings, loaded from ``CALBRIDGE_*`` env vars or ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="CALBRIDGE_",
        env_file=".env",
        extra="ignore",
    )

    # Storage
    config_dir: Path | None = None

    # Server
    host: str = "127.0.0.1"
    port: int = 3000
    issuer_url: str = "http://localhost:3000"
    api_cors_allowed_origins: list[str] = Field(default_factory=list)

    # Upstream provider (Google)
    google_oauth_client_id: str | None = None
    google_oauth_client_secret: str | None = None
    enable_tasks: bool = False
    default_account: str = "default"

    # Broker lifetimes, in seconds
    access_token_ttl: int = 3600
    auth_code_ttl: int = 600
    pending_session_ttl: int = 900
    cleanup_interval: int = 300
    rotate_refresh_tokens: bool = True

    # Logging
    log_level: str = "INFO"

    @classmethod
    def load(cls) -> Settings:
        """Build a fresh settings object from the current environment."""
        return cls()

    @property
    def public_issuer_url(self) -> str:
        return self.issuer_url.rstrip("/")


@lru_cache
def get_settings() -> Settings:
    """Process-wide cached settings."""
    return Settings.load()


def get_config_dir(settings: Settings | None = None) -> Path:
    """Return the config directory, creating it owner-only if needed."""
    settings = settings or get_settings()
    d = settings.config_dir or _DEFAULT_CONFIG_DIR
    d.mkdir(mode=0o700, parents=True, exist_ok=True)
    return d
