"""Public exception taxonomy for the LMS API client.

Only these exceptions cross the client boundary. The internal "refresh and
retry" signal is a classifier outcome, never an exception.
"""

from __future__ import annotations


class ApiError(RuntimeError):
    """Base class for every error raised by the client."""


class CredentialsInvalidError(ApiError):
    """Raised when a login-style call is rejected with 401."""


class SessionExpiredError(ApiError):
    """Raised when the session cannot be recovered by a token refresh."""

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class RequestFailedError(ApiError):
    """Raised when the API answers with a non-success status."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(message)


class TransportError(ApiError):
    """Raised when no response was received from the API."""
