# Upstream OAuth client for the Google authorization code flow for the calendar account.
# Created: 2026-10-06
#
# The broker never hands these tokens to downstream clients; it only builds
# the consent URL, redeems the callback code and stores the result.

from __future__ import annotations

import logging
import time
import urllib.parse

import httpx

from calbridge.config import Settings
from calbridge.integrations.token_store import UpstreamTokens

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"

CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"
TASKS_SCOPE = "https://www.googleapis.com/auth/tasks"

CALLBACK_PATH = "/oauth2callback"


def get_required_scopes(enable_tasks: bool = False) -> list[str]:
    """Scopes the calendar tool needs from the upstream provider."""
    scopes = [CALENDAR_SCOPE]
    if enable_tasks:
        scopes.append(TASKS_SCOPE)
    return scopes


class UpstreamAuthError(Exception):
    """The upstream provider returned something we cannot use."""


class UpstreamOAuthClient:
    """Google OAuth 2.0 client used for the upstream half of the flow.

    Args:
        client_id: Google OAuth client ID.
        client_secret: Google OAuth client secret.
        redirect_uri: The broker's callback, ``{issuer}/oauth2callback``.
        scopes: Scopes to request; defaults to the calendar scope.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: list[str] | None = None,
        timeout: float = 15,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = scopes or get_required_scopes()
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> UpstreamOAuthClient:
        if not settings.google_oauth_client_id or not settings.google_oauth_client_secret:
            logger.warning(
                "Google OAuth credentials are not configured; upstream authorization will fail"
            )
        return cls(
            client_id=settings.google_oauth_client_id or "",
            client_secret=settings.google_oauth_client_secret or "",
            redirect_uri=f"{settings.public_issuer_url}{CALLBACK_PATH}",
            scopes=get_required_scopes(settings.enable_tasks),
        )

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def generate_auth_url(self, state: str) -> str:
        """Build the consent URL the user-agent is redirected to."""
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urllib.parse.urlencode(params)}"

    async def exchange_code(self, code: str) -> UpstreamTokens:
        """Exchange the callback's authorization code for upstream tokens.

        Raises:
            httpx.HTTPError: transport failure or non-2xx response.
            UpstreamAuthError: the response carried no access token.
        """
        async with self._http() as client:
            resp = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "code": code,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "redirect_uri": self.redirect_uri,
                    "grant_type": "authorization_code",
                },
            )
            resp.raise_for_status()
            data = resp.json()

        if not isinstance(data, dict) or not data.get("access_token"):
            raise UpstreamAuthError("Upstream token response did not include an access token")

        expires_in = data.get("expires_in", 3600)
        scope = data.get("scope")
        tokens = UpstreamTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            token_type=data.get("token_type", "Bearer"),
            expires_at=time.time() + expires_in,
            scopes=scope.split() if scope else list(self.scopes),
        )
        if data.get("id_token"):
            tokens.extra["id_token"] = data["id_token"]

        logger.info("Upstream tokens obtained via Google")
        return tokens

    async def get_token_email(self, access_token: str) -> str | None:
        """Look up the account email for *access_token*. Returns None on any failure."""
        try:
            async with self._http() as client:
                resp = await client.get(
                    GOOGLE_TOKENINFO_URL, params={"access_token": access_token}
                )
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("Token info lookup failed: %s", e)
            return None

        if not isinstance(data, dict):
            return None
        return data.get("email") or None
