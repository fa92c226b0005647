# =============================================================================
# Resilink -- Type Definitions
# =============================================================================

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ConnectionState(str, Enum):
    """WebSocket connection lifecycle state.

    Typical flow: DISCONNECTED -> CONNECTING -> CONNECTED. RECONNECTING is
    transient; DISCONNECTED is terminal once reconnect attempts run out.
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class RefreshPhase(str, Enum):
    """Token refresh state machine.

    IDLE -- no refresh running, refresh allowed.
    REFRESHING -- one refresh call in flight, callers share its result.
    COOLING_DOWN -- too many consecutive failures, refresh suppressed.
    """

    IDLE = "idle"
    REFRESHING = "refreshing"
    COOLING_DOWN = "cooling-down"


class FailureKind(str, Enum):
    """Request outcomes that carry no HTTP status."""

    TIMEOUT = "timeout"
    NETWORK = "network"


class RetryAction(str, Enum):
    RETRY = "retry"
    GIVE_UP = "give-up"


@dataclass(frozen=True, slots=True)
class RetryDecision:
    """Result of :meth:`RetryPolicy.decide`.

    Attributes:
        action: Retry or give up.
        delay: Seconds to wait before the retry (0 when giving up).
    """

    action: RetryAction
    delay: float = 0.0

    @property
    def should_retry(self) -> bool:
        return self.action == RetryAction.RETRY


@dataclass(frozen=True, slots=True)
class Credential:
    """Tokens and user snapshot for the signed-in user.

    Attributes:
        access_token: Bearer token for protected calls and the socket.
        refresh_token: Token accepted by the refresh endpoint.
        user: User snapshot as returned by the server.
        last_refresh_at: Epoch milliseconds of the last login/refresh.
    """

    access_token: str
    refresh_token: str | None = None
    user: dict[str, Any] | None = None
    last_refresh_at: int | None = None


@dataclass
class RequestContext:
    """Per-call bookkeeping for one outbound HTTP request."""

    method: str
    url: str
    retry_attempts: int = 0
    auth_retried: bool = False

    def mark_auth_retry(self) -> None:
        """Flip ``auth_retried`` once; a second call is a bug."""
        if self.auth_retried:
            raise RuntimeError(f"{self.method} {self.url} already replayed for auth")
        self.auth_retried = True


@dataclass(frozen=True, slots=True)
class Envelope:
    """A frame on the socket, in either direction.

    Attributes:
        type: Message type, e.g. ``"room_updated"``.
        data: Opaque payload.
        timestamp: Epoch milliseconds set by the sender.
    """

    type: str
    data: Any = field(default_factory=dict)
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))
