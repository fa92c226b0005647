# =============================================================================
# Resilink -- Configuration
# =============================================================================

from __future__ import annotations

import os
from dataclasses import dataclass, field

from .constants import (
    AUTH_FAILURE_REARM_DELAY,
    CONNECTION_TIMEOUT,
    HEARTBEAT_INTERVAL,
    RECONNECT_BASE_DELAY,
    RECONNECT_MAX_ATTEMPTS,
    RECONNECT_MAX_DELAY,
    REFRESH_COOLDOWN,
    REFRESH_MAX_ATTEMPTS,
    REFRESH_TIMEOUT,
    REQUEST_TIMEOUT,
    RETRY_BASE_DELAY,
    RETRY_MAX_RETRIES,
    RETRY_MULTIPLIER,
    RETRYABLE_STATUSES,
)


@dataclass
class RetryConfig:
    """HTTP retry schedule for transient server failures.

    Attributes:
        max_retries: Retries after the first attempt before giving up.
        base_delay: Delay in seconds before the first retry.
        multiplier: Growth factor per retry.
        retryable_statuses: HTTP statuses worth retrying.
        retry_timeouts: Whether request timeouts are retried.
    """

    max_retries: int = RETRY_MAX_RETRIES
    base_delay: float = RETRY_BASE_DELAY
    multiplier: float = RETRY_MULTIPLIER
    retryable_statuses: frozenset[int] = RETRYABLE_STATUSES
    retry_timeouts: bool = True


@dataclass
class RefreshConfig:
    """Token refresh limits.

    Attributes:
        max_attempts: Consecutive failures before the cooldown engages.
        cooldown: Seconds during which refresh is suppressed.
        rearm_delay: Seconds before the auth failure latch accepts a new
            failure episode.
        timeout: Timeout for the refresh call itself.
    """

    max_attempts: int = REFRESH_MAX_ATTEMPTS
    cooldown: float = REFRESH_COOLDOWN
    rearm_delay: float = AUTH_FAILURE_REARM_DELAY
    timeout: float = REFRESH_TIMEOUT


@dataclass
class ReconnectConfig:
    """Automatic reconnection after a connection drop.

    Delay for attempt *k* is ``min(base_delay * 2 ** (k - 1), max_delay)``.

    Attributes:
        base_delay: Delay in seconds before the first reconnect.
        max_delay: Cap on any single delay.
        max_attempts: Reconnects before giving up for good.
    """

    base_delay: float = RECONNECT_BASE_DELAY
    max_delay: float = RECONNECT_MAX_DELAY
    max_attempts: int = RECONNECT_MAX_ATTEMPTS


@dataclass
class ConnectionConfig:
    """Socket timings.

    Attributes:
        connect_timeout: Seconds allowed for the socket to open.
        heartbeat_interval: Seconds between heartbeat frames.
        max_queue_size: Outbound queue bound, ``None`` for unbounded.
    """

    connect_timeout: float = CONNECTION_TIMEOUT
    heartbeat_interval: float = HEARTBEAT_INTERVAL
    max_queue_size: int | None = None


@dataclass
class TransportConfig:
    """Everything a :class:`~resilink.client.Transport` needs.

    Attributes:
        api_url: Base URL for HTTP calls, e.g. ``"https://host/api/v1"``.
        ws_url: WebSocket URL, e.g. ``"wss://host/ws"``.
        storage_path: File for persisted credentials, ``None`` keeps them
            in memory.
        request_timeout: Default per-request timeout in seconds.
    """

    api_url: str
    ws_url: str
    storage_path: str | None = None
    request_timeout: float = REQUEST_TIMEOUT
    retry: RetryConfig = field(default_factory=RetryConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)

    @classmethod
    def from_env(cls, prefix: str = "RESILINK_") -> TransportConfig:
        """Build a config from ``<prefix>API_URL``, ``<prefix>WS_URL``,
        ``<prefix>STORAGE_PATH`` and ``<prefix>REQUEST_TIMEOUT``.

        Raises:
            KeyError: If a URL variable is missing.
        """
        timeout = os.environ.get(f"{prefix}REQUEST_TIMEOUT")
        return cls(
            api_url=os.environ[f"{prefix}API_URL"],
            ws_url=os.environ[f"{prefix}WS_URL"],
            storage_path=os.environ.get(f"{prefix}STORAGE_PATH") or None,
            request_timeout=float(timeout) if timeout else REQUEST_TIMEOUT,
        )
