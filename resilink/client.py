# =============================================================================
# Resilink -- Transport
# =============================================================================
#
# Composition root: one credential store, event bus, refresh coordinator,
# request dispatcher and connection manager per process.
# =============================================================================

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable

import httpx

from ._logging import logger
from .auth import AuthFailureHandler, AuthTokenCoordinator
from .config import TransportConfig
from .connection import ConnectionManager
from .constants import EVENT_LOGOUT, LOGIN_PATH, LOGOUT_PATH
from .credentials import CredentialStore, FileStorage, KeyValueStorage
from .dispatcher import RequestDispatcher
from .errors import ClientError
from .event_bus import Callback, EventBus, Subscription
from .retry_policy import RetryPolicy
from .types import ConnectionState, Credential


class Transport:
    """Authenticated HTTP plus a self-healing WebSocket, behind one object.

    Args:
        config: URLs, timeouts and retry/refresh/reconnect schedules.
        storage: Credential storage.  Defaults to a :class:`FileStorage` at
            ``config.storage_path`` if set, otherwise in-memory.
        http_client: Pre-built ``httpx.AsyncClient``; its ``base_url``
            must point at the API.  Closed by :meth:`aclose` only when the
            transport created it.
        ws_connect: Socket opener, for tests or custom TLS settings.
        on_logout: Called with the reason when authentication is lost
            for good.

    Example::

        config = TransportConfig(api_url="https://host/api/v1", ws_url="wss://host/ws")
        async with Transport(config) as transport:
            await transport.login("ada", "secret")
            transport.on("room_updated", lambda data: print(data))
            await transport.connect()
            rooms = (await transport.get("/rooms")).json()
    """

    def __init__(
        self,
        config: TransportConfig,
        *,
        storage: KeyValueStorage | None = None,
        http_client: httpx.AsyncClient | None = None,
        ws_connect: Callable[..., Any] | None = None,
        on_logout: Callable[[str], Any] | None = None,
    ) -> None:
        self._config = config
        self._on_logout = on_logout

        if storage is None and config.storage_path:
            storage = FileStorage(config.storage_path)
        self.store = CredentialStore(storage)
        self.bus = EventBus()

        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=config.api_url, timeout=config.request_timeout
        )

        self.failure_handler = AuthFailureHandler(
            self.store,
            on_logout=self._handle_auth_failure,
            notify=self._notify_logout,
            rearm_delay=config.refresh.rearm_delay,
        )
        self.coordinator = AuthTokenCoordinator(
            self.store,
            self._http,
            config=config.refresh,
            failure_handler=self.failure_handler,
        )
        self.dispatcher = RequestDispatcher(
            self.store,
            self.coordinator,
            self._http,
            retry_policy=RetryPolicy(config.retry),
        )
        self.connection = ConnectionManager(
            config.ws_url,
            self.store,
            self.bus,
            config=config.connection,
            reconnect=config.reconnect,
            ws_connect=ws_connect,
        )

        self._background_tasks: set[asyncio.Task[Any]] = set()

    # -- Context manager ------------------------------------------------------

    async def __aenter__(self) -> Transport:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Disconnect the socket and release the HTTP client."""
        await self.connection.disconnect()
        for task in self._background_tasks:
            task.cancel()
        self._background_tasks.clear()
        if self._owns_client:
            await self._http.aclose()

    # -- Properties -----------------------------------------------------------

    @property
    def is_authenticated(self) -> bool:
        return self.store.is_authenticated

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    # -- Session --------------------------------------------------------------

    async def login(self, username: str, password: str) -> Credential:
        """Exchange credentials for tokens and store them.

        Raises:
            ClientError: Rejected credentials or a malformed response.
            TransportError: Any other transport failure.
        """
        response = await self.dispatcher.post(
            LOGIN_PATH, json={"username": username, "password": password}, auth=False
        )
        try:
            body = response.json()
        except ValueError as exc:
            raise ClientError("Malformed login response", status=response.status_code) from exc
        data = body.get("data") if isinstance(body, dict) and body.get("success") else None
        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not isinstance(access_token, str) or not access_token:
            raise ClientError("Login response carried no access token", status=response.status_code)

        user = data.get("user")
        credential = Credential(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or None,
            user=user if isinstance(user, dict) else None,
            last_refresh_at=int(time.time() * 1000),
        )
        self.store.set(credential)
        self.coordinator.reset()
        self.failure_handler.reset()
        logger.info("Logged in as %s", username)
        return credential

    async def logout(self) -> None:
        """Sign out: tell the server (best effort), forget tokens, close the socket."""
        credential = self.store.get()
        if credential is not None:
            await self._notify_logout(credential)
        self.store.clear()
        self.coordinator.reset()
        await self.connection.disconnect()
        self.bus.emit(EVENT_LOGOUT, {"reason": "user"})
        logger.info("Logged out")

    # -- HTTP -----------------------------------------------------------------

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        return await self.dispatcher.execute(method, url, **kwargs)

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.dispatcher.get(url, **kwargs)

    async def post(self, url: str, json: Any = None, **kwargs: Any) -> httpx.Response:
        return await self.dispatcher.post(url, json=json, **kwargs)

    async def put(self, url: str, json: Any = None, **kwargs: Any) -> httpx.Response:
        return await self.dispatcher.put(url, json=json, **kwargs)

    async def patch(self, url: str, json: Any = None, **kwargs: Any) -> httpx.Response:
        return await self.dispatcher.patch(url, json=json, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.dispatcher.delete(url, **kwargs)

    async def check_health(self, **kwargs: Any) -> dict[str, Any]:
        return await self.dispatcher.check_health(**kwargs)

    # -- WebSocket ------------------------------------------------------------

    async def connect(self) -> bool:
        return await self.connection.connect()

    async def disconnect(self) -> None:
        await self.connection.disconnect()

    async def send(self, type: str, payload: Any = None) -> bool:
        return await self.connection.send(type, payload)

    # -- Events ---------------------------------------------------------------

    def on(
        self, event: str, callback: Callback | None = None
    ) -> Subscription | Callable[[Callback], Callback]:
        """Subscribe to *event*.

        With a callback, returns its :class:`Subscription`.  Without one,
        works as a decorator.

        Example::

            @transport.on("room_updated")
            def handle(data):
                print(data)
        """
        if callback is not None:
            return self.bus.on(event, callback)

        def decorator(fn: Callback) -> Callback:
            self.bus.on(event, fn)
            return fn

        return decorator

    def off(self, event: str, callback: Callback | None = None) -> None:
        self.bus.off(event, callback)

    # -- Stats ----------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        return {
            "authenticated": self.store.is_authenticated,
            "connection": self.connection.get_state(),
            "refresh": self.coordinator.get_stats(),
            "auth_failure_latched": self.failure_handler.latched,
        }

    # -- Internal -------------------------------------------------------------

    def _handle_auth_failure(self, reason: str) -> None:
        self.bus.emit(EVENT_LOGOUT, {"reason": reason})
        self._fire_task(self.connection.disconnect())
        if self._on_logout is not None:
            result = self._on_logout(reason)
            if asyncio.iscoroutine(result):
                self._fire_task(result)

    async def _notify_logout(self, credential: Credential) -> None:
        """Tell the server the session is over.  Failures are logged only."""
        try:
            await self._http.post(
                LOGOUT_PATH,
                headers={"Authorization": f"Bearer {credential.access_token}"},
                timeout=self._config.refresh.timeout,
            )
        except httpx.HTTPError as exc:
            logger.debug("Logout notification failed: %s", exc)

    def _fire_task(self, coro: Any) -> None:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
