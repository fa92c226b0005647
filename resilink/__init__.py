"""Resilink: resilient client transport for HTTP APIs and WebSocket streams.

Usage::

    from resilink import Transport, TransportConfig

    config = TransportConfig(api_url="https://host/api/v1", ws_url="wss://host/ws")
    async with Transport(config) as transport:
        await transport.login("ada", "secret")

        @transport.on("room_updated")
        def handle(data):
            print(data)

        await transport.connect()
        await transport.send("join_room", {"room_id": 7})
        rooms = (await transport.get("/rooms")).json()

Protected HTTP calls refresh the access token once on 401 and retry 5xx
and timeouts with exponential backoff.  The socket reconnects on its own
and queues outgoing frames while it is down.
"""

from ._version import __version__
from .auth import AuthFailureHandler, AuthTokenCoordinator
from .client import Transport
from .config import (
    ConnectionConfig,
    ReconnectConfig,
    RefreshConfig,
    RetryConfig,
    TransportConfig,
)
from .connection import ConnectionManager
from .credentials import CredentialStore, FileStorage, MemoryStorage
from .dispatcher import RequestDispatcher
from .errors import (
    AuthExpiredError,
    ClientError,
    NetworkError,
    RefreshFailedError,
    ServerError,
    TransportConnectionError,
    TransportError,
    TransportTimeoutError,
)
from .event_bus import EventBus, Subscription
from .retry_policy import RetryPolicy
from .types import ConnectionState, Credential, Envelope, RefreshPhase

__all__ = [
    "__version__",
    # Entry point
    "Transport",
    # Components
    "AuthFailureHandler",
    "AuthTokenCoordinator",
    "ConnectionManager",
    "CredentialStore",
    "EventBus",
    "FileStorage",
    "MemoryStorage",
    "RequestDispatcher",
    "RetryPolicy",
    "Subscription",
    # Config
    "ConnectionConfig",
    "ReconnectConfig",
    "RefreshConfig",
    "RetryConfig",
    "TransportConfig",
    # Types
    "ConnectionState",
    "Credential",
    "Envelope",
    "RefreshPhase",
    # Errors
    "AuthExpiredError",
    "ClientError",
    "NetworkError",
    "RefreshFailedError",
    "ServerError",
    "TransportConnectionError",
    "TransportError",
    "TransportTimeoutError",
]
