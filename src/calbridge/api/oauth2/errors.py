# Broker error types.
# Created: 2026-10-07
#
# A closed set: the HTTP layer maps each class to a status code and an
# RFC 6749 error body via ``status_code`` and ``to_dict()``.

from __future__ import annotations


class OAuthError(Exception):
    """Base class for every error the broker reports to a caller."""

    error = "server_error"
    status_code = 500

    def __init__(self, message: str, *, error: str | None = None):
        super().__init__(message)
        self.message = message
        if error is not None:
            self.error = error

    def to_dict(self) -> dict[str, str]:
        return {"error": self.error, "error_description": self.message}


class OAuthValidationError(OAuthError):
    """Malformed or missing input, rejected before any state is created."""

    error = "invalid_request"
    status_code = 400


class InvalidOrExpiredCredentialError(OAuthError):
    """Unknown, expired or already-used code or token.

    The message never says which of those it was.
    """

    error = "invalid_grant"
    status_code = 400


class ClientMismatchError(OAuthError):
    """A credential was presented by a client that does not own it."""

    error = "invalid_grant"
    status_code = 400


class SessionExpiredError(OAuthError):
    """The pending authorization is gone by the time the upstream calls back."""

    error = "invalid_request"
    status_code = 400


class StateIntegrityError(OAuthError):
    """The upstream callback carried a state we did not mint or that does not match."""

    error = "access_denied"
    status_code = 403
