"""LibreView failure taxonomy.

Every failure the upstream client or token manager can produce is one of the
``LibreViewError`` subclasses below.  Each carries an ``ErrorKind`` so the sync
engine can report the outcome without inspecting exception types.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NO_CREDENTIALS = "no_credentials"
    INVALID_CREDENTIALS = "invalid_credentials"
    RATE_LIMITED = "rate_limited"
    SERVICE_UNAVAILABLE = "service_unavailable"
    NETWORK_ERROR = "network_error"
    AUTHENTICATION_FAILED = "authentication_failed"
    UNKNOWN = "unknown"


USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.NO_CREDENTIALS: "No credentials found. Please enter your LibreView credentials",
    ErrorKind.INVALID_CREDENTIALS: "Invalid username or password",
    ErrorKind.RATE_LIMITED: "Too many login attempts. Please try again in a few minutes",
    ErrorKind.SERVICE_UNAVAILABLE: "LibreView service is temporarily unavailable",
    ErrorKind.NETWORK_ERROR: "Network error occurred",
    ErrorKind.AUTHENTICATION_FAILED: "Authentication failed",
    ErrorKind.UNKNOWN: "An unknown error occurred",
}

# Kinds after which the caller must wait before trying again
BACKOFF_KINDS = frozenset({ErrorKind.RATE_LIMITED, ErrorKind.SERVICE_UNAVAILABLE})


class LibreViewError(Exception):
    """Base class for all LibreView failures."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail
        super().__init__(detail or self.user_message)

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self.kind]

    @property
    def requires_backoff(self) -> bool:
        return self.kind in BACKOFF_KINDS


class NoCredentialsError(LibreViewError):
    kind = ErrorKind.NO_CREDENTIALS


class InvalidCredentialsError(LibreViewError):
    kind = ErrorKind.INVALID_CREDENTIALS


class RateLimitedError(LibreViewError):
    kind = ErrorKind.RATE_LIMITED


class ServiceUnavailableError(LibreViewError):
    kind = ErrorKind.SERVICE_UNAVAILABLE


class NetworkError(LibreViewError):
    kind = ErrorKind.NETWORK_ERROR


class AuthenticationFailedError(LibreViewError):
    kind = ErrorKind.AUTHENTICATION_FAILED


class UnknownLibreViewError(LibreViewError):
    kind = ErrorKind.UNKNOWN


def error_for_status(status_code: int) -> LibreViewError:
    """Map a non-200 login response status to its failure.

    Args:
        status_code: HTTP status returned by the login endpoint.

    Returns:
        The matching LibreViewError instance (not raised).
    """
    if status_code == 401:
        return InvalidCredentialsError(f"Login rejected (HTTP {status_code})")
    if status_code == 429:
        return RateLimitedError(f"Login rate limited (HTTP {status_code})")
    if 500 <= status_code <= 599:
        return ServiceUnavailableError(f"LibreView unavailable (HTTP {status_code})")
    return UnknownLibreViewError(f"Unexpected login response (HTTP {status_code})")
