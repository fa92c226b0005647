# =============================================================================
# Resilink -- Error Types
# =============================================================================

from __future__ import annotations

from typing import Any

# Fallback messages when the server gives none
MSG_NETWORK = "Network error. Check your connection."
MSG_TIMEOUT = "The server took too long to respond."
MSG_UNAUTHORIZED = "Authentication required."
MSG_FORBIDDEN = "Access denied."
MSG_NOT_FOUND = "Resource not found."
MSG_VALIDATION = "Validation failed."
MSG_TOO_MANY_REQUESTS = "Too many requests. Try again later."
MSG_SERVER = "Internal server error."
MSG_UNKNOWN = "An unknown error occurred."


class TransportError(Exception):
    """Base exception for all transport errors.

    Every error carries the normalized ``{message, status, details}`` shape
    handed to callers.
    """

    def __init__(
        self,
        message: str,
        *,
        status: int = 0,
        details: list[Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"message": self.message, "status": self.status}
        if self.details is not None:
            data["details"] = self.details
        return data


class NetworkError(TransportError):
    """No response was received."""


class TransportTimeoutError(TransportError):
    """The request or connection attempt timed out."""


class AuthExpiredError(TransportError):
    """401 on a protected call that could not be recovered by a refresh."""


class RefreshFailedError(TransportError):
    """The refresh call itself failed (401, 5xx, cooldown, no token)."""


class ServerError(TransportError):
    """5xx response."""


class ClientError(TransportError):
    """Non-retryable 4xx response."""


class TransportConnectionError(TransportError):
    """WebSocket could not be opened or was lost."""


def message_for_status(status: int) -> str:
    """Default human-readable message for an HTTP status."""
    if status == 401:
        return MSG_UNAUTHORIZED
    if status == 403:
        return MSG_FORBIDDEN
    if status == 404:
        return MSG_NOT_FOUND
    if status == 422:
        return MSG_VALIDATION
    if status == 429:
        return MSG_TOO_MANY_REQUESTS
    if status >= 500:
        return MSG_SERVER
    return MSG_UNKNOWN
