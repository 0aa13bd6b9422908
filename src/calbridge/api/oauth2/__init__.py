# Broker OAuth2 core: stores, state codec and the authorization-server façade.
# Created: 2026-10-07

from calbridge.api.oauth2.errors import (
    ClientMismatchError,
    InvalidOrExpiredCredentialError,
    OAuthError,
    OAuthValidationError,
    SessionExpiredError,
    StateIntegrityError,
)
from calbridge.api.oauth2.server import AuthorizationServer, build_oauth_server
from calbridge.api.oauth2.state import encode_state, parse_state

__all__ = [
    "AuthorizationServer",
    "ClientMismatchError",
    "InvalidOrExpiredCredentialError",
    "OAuthError",
    "OAuthValidationError",
    "SessionExpiredError",
    "StateIntegrityError",
    "build_oauth_server",
    "encode_state",
    "parse_state",
]
