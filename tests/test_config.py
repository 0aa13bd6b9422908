# Tests for settings loading and server wiring.
# Created: 2026-10-09

import stat
from datetime import timedelta

from calbridge.api.oauth2.server import build_oauth_server
from calbridge.config import Settings, get_config_dir
from calbridge.integrations.oauth import TASKS_SCOPE


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.port == 3000
        assert settings.access_token_ttl == 3600
        assert settings.auth_code_ttl == 600
        assert settings.pending_session_ttl == 900
        assert settings.rotate_refresh_tokens is True

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("CALBRIDGE_PORT", "4100")
        monkeypatch.setenv("CALBRIDGE_ENABLE_TASKS", "true")
        monkeypatch.setenv("CALBRIDGE_ISSUER_URL", "https://broker.example/")
        settings = Settings.load()
        assert settings.port == 4100
        assert settings.enable_tasks is True
        assert settings.public_issuer_url == "https://broker.example"

    def test_config_dir_is_owner_only(self, tmp_path):
        target = tmp_path / "cfg"
        d = get_config_dir(Settings(_env_file=None, config_dir=target))
        assert d == target
        mode = d.stat().st_mode
        assert mode & stat.S_IRWXU == stat.S_IRWXU
        assert not (mode & stat.S_IRWXO)


class TestBuildOAuthServer:
    def test_wires_settings_through(self, tmp_path):
        settings = Settings(
            _env_file=None,
            config_dir=tmp_path,
            issuer_url="https://broker.example/",
            enable_tasks=True,
            access_token_ttl=120,
            auth_code_ttl=30,
            pending_session_ttl=60,
            rotate_refresh_tokens=False,
            default_account="work",
        )
        server = build_oauth_server(settings)

        assert server.issuer_url == "https://broker.example"
        assert server.upstream.redirect_uri == "https://broker.example/oauth2callback"
        assert TASKS_SCOPE in server.upstream.scopes
        assert server.tokens.access_token_ttl == timedelta(seconds=120)
        assert server.tokens.auth_code_ttl == timedelta(seconds=30)
        assert server.sessions.ttl == timedelta(seconds=60)
        assert server.rotate_refresh_tokens is False
        assert server.default_account == "work"
        assert server.token_manager.get_account_mode() == "work"
        assert server.audit.log_path == tmp_path / "audit.jsonl"

    def test_registrations_stored_under_config_dir(self, tmp_path):
        server = build_oauth_server(Settings(_env_file=None, config_dir=tmp_path))
        client = server.register_client({"redirect_uris": ["https://client.example/cb"]})
        assert (tmp_path / "oauth" / "mcp-clients.json").exists()
        assert client.client_id in (tmp_path / "oauth" / "mcp-clients.json").read_text()
