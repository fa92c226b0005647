# =============================================================================
# Resilink -- Connection Manager
# =============================================================================
#
# WebSocket lifecycle: connect, heartbeat, reconnect with backoff, FIFO
# outbound queue, inbound dispatch to the event bus.
# =============================================================================

from __future__ import annotations

import asyncio
from typing import Any, Callable
from urllib.parse import urlencode

import websockets.asyncio.client
from websockets.exceptions import ConnectionClosed, ConnectionClosedError

from . import protocol
from ._logging import logger
from .config import ConnectionConfig, ReconnectConfig
from .constants import (
    EVENT_CONNECTED,
    EVENT_DISCONNECTED,
    EVENT_ERROR,
    EVENT_RECONNECT_FAILED,
    EVENT_RECONNECTING,
    GENERIC_MESSAGE_EVENT,
    HEARTBEAT_TYPE,
    MAX_MESSAGE_SIZE,
    WS_CLOSE_ABNORMAL,
    WS_CLOSE_NORMAL,
)
from .credentials import CredentialStore
from .errors import TransportConnectionError, TransportTimeoutError
from .event_bus import EventBus
from .offline_queue import OutboundQueue
from .types import ConnectionState, Credential, Envelope


def reconnect_delay(attempt: int, config: ReconnectConfig) -> float:
    """Delay before reconnect *attempt* (1-based): doubling, capped."""
    return min(config.base_delay * 2 ** (attempt - 1), config.max_delay)


class ConnectionManager:
    """Keeps one WebSocket session alive and routes its frames.

    Frames sent while the socket is down are queued and flushed in order
    once it opens.  Inbound frames go to *bus* under their ``type`` and
    under ``"message"``.  Lifecycle events (``connected``,
    ``disconnected``, ``reconnecting``, ``reconnect_failed``, ``error``)
    go to the same bus.

    Args:
        url: WebSocket URL; the access token is appended as ``?token=``.
        store: Credential store, re-read on every (re)connect.
        bus: Event bus for frames and lifecycle events.
        config: Connect timeout, heartbeat interval, queue bound.
        reconnect: Backoff schedule.
        ws_connect: Socket opener, ``websockets.asyncio.client.connect``
            by default.
        on_state_change: Called with each new :class:`ConnectionState`.
    """

    def __init__(
        self,
        url: str,
        store: CredentialStore,
        bus: EventBus,
        *,
        config: ConnectionConfig | None = None,
        reconnect: ReconnectConfig | None = None,
        ws_connect: Callable[..., Any] | None = None,
        on_state_change: Callable[[ConnectionState], Any] | None = None,
    ) -> None:
        self._url = url
        self._store = store
        self._bus = bus
        self._config = config or ConnectionConfig()
        self._reconnect_cfg = reconnect or ReconnectConfig()
        self._ws_connect = ws_connect or websockets.asyncio.client.connect
        self._on_state_change = on_state_change

        # State
        self._ws: Any | None = None
        self._state = ConnectionState.DISCONNECTED
        self._reconnect_attempts = 0
        self._queue = OutboundQueue(max_size=self._config.max_queue_size)
        self._send_lock = asyncio.Lock()

        # Tasks
        self._recv_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._connect_task: asyncio.Task[bool] | None = None

    # -- Properties -----------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and self._state == ConnectionState.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def queued(self) -> int:
        return self._queue.size

    def get_state(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "is_connected": self.is_connected,
            "is_connecting": self._state == ConnectionState.CONNECTING,
            "reconnect_attempts": self._reconnect_attempts,
            "queued_messages": self._queue.size,
        }

    # -- Connect / Disconnect -------------------------------------------------

    async def connect(self, credential: Credential | None = None) -> bool:
        """Open the socket.

        Returns True once open, or when another open is already in
        progress; False when this attempt failed.  A failed attempt is
        handed to the reconnect policy, so this never raises for network
        reasons.
        """
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return True

        self._cancel_reconnect()
        if self._state == ConnectionState.DISCONNECTED:
            # A caller-initiated connect starts a fresh backoff episode.
            self._reconnect_attempts = 0
        return await self._open(credential)

    async def disconnect(self) -> None:
        """Close deliberately.  Cancels every timer and drops queued frames."""
        self._cancel_reconnect()
        if self._connect_task is not None:
            self._connect_task.cancel()
            self._connect_task = None

        ws = self._ws
        self._ws = None
        await self._stop_session_tasks()

        if ws is not None:
            try:
                await ws.close(WS_CLOSE_NORMAL, "Client disconnect")
            except Exception as exc:
                logger.debug("Close failed: %s", exc)

        self._reconnect_attempts = 0
        dropped = self._queue.clear()
        if dropped:
            logger.info("Discarded %d queued messages on disconnect", dropped)

        was_active = self._state != ConnectionState.DISCONNECTED
        self._set_state(ConnectionState.DISCONNECTED)
        if was_active:
            self._bus.emit(
                EVENT_DISCONNECTED, {"code": WS_CLOSE_NORMAL, "reason": "Client disconnect"}
            )

    # -- Send -----------------------------------------------------------------

    async def send(self, type: str, payload: Any = None) -> bool:
        """Send a frame now, or queue it until the socket is open.

        Returns True if the frame went out immediately.
        """
        envelope = Envelope(type, payload if payload is not None else {})
        if self.is_connected and not self._queue.size:
            async with self._send_lock:
                if await self._transmit(envelope):
                    return True

        self._queue.enqueue(envelope)
        logger.debug("Queued '%s' (%d waiting)", type, self._queue.size)
        if self._state == ConnectionState.DISCONNECTED:
            self._ensure_connecting()
        return False

    # -- Internal: open -------------------------------------------------------

    async def _open(self, credential: Credential | None = None) -> bool:
        await self._teardown_session()
        self._set_state(ConnectionState.CONNECTING)

        credential = credential or self._store.get()
        url = self._build_url(credential.access_token if credential else None)
        timeout = self._config.connect_timeout

        try:
            ws = await asyncio.wait_for(self._open_socket(url), timeout=timeout)
        except asyncio.TimeoutError:
            error: Exception = TransportTimeoutError(
                f"Connection timed out after {timeout}s"
            )
            self._report_error(error)
            self._handle_close(WS_CLOSE_ABNORMAL, "connect timeout")
            return False
        except asyncio.CancelledError:
            self._set_state(ConnectionState.DISCONNECTED)
            raise
        except Exception as exc:
            error = TransportConnectionError(f"Failed to connect: {exc}")
            self._report_error(error)
            self._handle_close(WS_CLOSE_ABNORMAL, str(exc))
            return False

        self._ws = ws
        self._reconnect_attempts = 0
        self._set_state(ConnectionState.CONNECTED)
        logger.info("WebSocket connected")

        self._recv_task = asyncio.create_task(self._recv_loop(ws))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws))
        await self._flush_queue()
        self._bus.emit(EVENT_CONNECTED)
        return True

    async def _open_socket(self, url: str) -> Any:
        return await self._ws_connect(url, max_size=MAX_MESSAGE_SIZE, open_timeout=None)

    def _ensure_connecting(self) -> None:
        if self._connect_task is not None and not self._connect_task.done():
            return
        self._connect_task = asyncio.ensure_future(self.connect())

    # -- Internal: send -------------------------------------------------------

    async def _transmit(self, envelope: Envelope) -> bool:
        """Write one frame.  Caller holds ``_send_lock``."""
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(protocol.encode(envelope))
            return True
        except ConnectionClosed:
            logger.debug("Send failed: connection closed")
            return False
        except Exception as exc:
            logger.debug("Send failed: %s", exc)
            return False

    async def _flush_queue(self) -> None:
        """Send queued frames oldest first; stop at the first failure."""
        if not self._queue.size:
            return
        logger.info("Flushing %d queued messages", self._queue.size)
        async with self._send_lock:
            while self._queue.size and self.is_connected:
                queued = self._queue.peek()
                assert queued is not None
                if not await self._transmit(queued.envelope):
                    logger.warning(
                        "Queue flush interrupted, %d messages kept", self._queue.size
                    )
                    return
                self._queue.pop()

    # -- Internal: receive loop -----------------------------------------------

    async def _recv_loop(self, ws: Any) -> None:
        """Read frames from *ws* until it closes."""
        try:
            async for message in ws:
                self._handle_raw_message(message)
        except ConnectionClosedError as exc:
            code = exc.rcvd.code if exc.rcvd is not None else WS_CLOSE_ABNORMAL
            reason = exc.rcvd.reason if exc.rcvd is not None else ""
            self._on_socket_closed(ws, code, reason)
            return
        except asyncio.CancelledError:
            return
        except Exception as exc:
            logger.warning("Receive loop error: %s", exc)
            self._report_error(exc)
            self._on_socket_closed(ws, WS_CLOSE_ABNORMAL, str(exc))
            return

        code = getattr(ws, "close_code", None) or WS_CLOSE_NORMAL
        reason = getattr(ws, "close_reason", None) or ""
        self._on_socket_closed(ws, code, reason)

    def _on_socket_closed(self, ws: Any, code: int, reason: str) -> None:
        if ws is not self._ws:
            # Superseded session; its replacement owns the state now.
            return
        self._ws = None
        self._recv_task = None
        self._handle_close(code, reason)

    def _handle_raw_message(self, data: str | bytes) -> None:
        envelope = protocol.decode(data)
        if envelope is None:
            return
        if envelope.type == HEARTBEAT_TYPE:
            return
        self._bus.emit(envelope.type, envelope.data)
        self._bus.emit(GENERIC_MESSAGE_EVENT, envelope)

    # -- Internal: heartbeat --------------------------------------------------

    async def _heartbeat_loop(self, ws: Any) -> None:
        """Send a heartbeat frame every interval while *ws* is current."""
        while True:
            try:
                await asyncio.sleep(self._config.heartbeat_interval)
            except asyncio.CancelledError:
                return

            if ws is not self._ws or not self.is_connected:
                return

            async with self._send_lock:
                ok = await self._transmit(Envelope(HEARTBEAT_TYPE, {}))
            if not ok:
                logger.debug("Heartbeat send failed")

    # -- Internal: reconnection -----------------------------------------------

    def _handle_close(self, code: int, reason: str) -> None:
        """React to a closed or failed socket."""
        logger.debug("WebSocket closed: code=%d reason=%s", code, reason)
        self._cancel_heartbeat()
        self._bus.emit(EVENT_DISCONNECTED, {"code": code, "reason": reason})

        if code == WS_CLOSE_NORMAL:
            self._set_state(ConnectionState.DISCONNECTED)
            return

        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        cfg = self._reconnect_cfg
        if self._reconnect_attempts >= cfg.max_attempts:
            logger.error("Max reconnect attempts (%d) reached", cfg.max_attempts)
            self._set_state(ConnectionState.DISCONNECTED)
            self._bus.emit(EVENT_RECONNECT_FAILED, {"attempts": self._reconnect_attempts})
            return

        self._reconnect_attempts += 1
        delay = reconnect_delay(self._reconnect_attempts, cfg)
        self._set_state(ConnectionState.RECONNECTING)
        logger.info(
            "Reconnecting in %.1fs (attempt %d/%d)",
            delay,
            self._reconnect_attempts,
            cfg.max_attempts,
        )
        self._bus.emit(
            EVENT_RECONNECTING, {"attempt": self._reconnect_attempts, "delay": delay}
        )

        self._cancel_reconnect()
        self._reconnect_task = asyncio.ensure_future(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        """Wait, then try to reconnect."""
        try:
            await asyncio.sleep(delay)
            await self._open()
        except asyncio.CancelledError:
            return
        finally:
            # A failed open may already have scheduled the next attempt.
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _cancel_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    async def _stop_session_tasks(self) -> None:
        """Cancel heartbeat and receive tasks and wait for them to finish."""
        tasks: list[asyncio.Task[None]] = []
        for task in (self._heartbeat_task, self._recv_task):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
                tasks.append(task)
        self._heartbeat_task = None
        self._recv_task = None
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _teardown_session(self) -> None:
        """Drop whatever is left of the previous session before reopening."""
        ws = self._ws
        self._ws = None
        await self._stop_session_tasks()
        if ws is not None:
            try:
                await ws.close(WS_CLOSE_NORMAL, "Superseded")
            except Exception as exc:
                logger.debug("Close of superseded socket failed: %s", exc)

    # -- State management -----------------------------------------------------

    def _set_state(self, new_state: ConnectionState) -> None:
        if new_state == self._state:
            return
        old = self._state
        self._state = new_state
        logger.debug("State: %s -> %s", old.value, new_state.value)
        if self._on_state_change:
            try:
                self._on_state_change(new_state)
            except Exception:
                logger.exception("State change callback failed")

    def _report_error(self, error: Exception) -> None:
        logger.warning("WebSocket error: %s", error)
        self._bus.emit(EVENT_ERROR, error)

    # -- URL building ---------------------------------------------------------

    def _build_url(self, token: str | None) -> str:
        if not token:
            return self._url
        sep = "&" if "?" in self._url else "?"
        return self._url + sep + urlencode({"token": token})
