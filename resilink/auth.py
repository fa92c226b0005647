# =============================================================================
# Resilink -- Auth Token Coordinator
# =============================================================================
#
# Single-flight token refresh with attempt limiting and cooldown, plus the
# latched auth failure handler that signs the user out once per episode.
# =============================================================================

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable

import httpx

from ._logging import logger
from .config import RefreshConfig
from .constants import AUTH_FAILURE_REARM_DELAY, REFRESH_PATH
from .credentials import CredentialStore
from .errors import RefreshFailedError
from .types import Credential, RefreshPhase


class AuthFailureHandler:
    """Signs the user out when authentication cannot be recovered.

    Latched: N concurrent failures produce one sign-out.  The latch
    re-arms *rearm_delay* seconds after the sign-out was dispatched.

    Args:
        store: Credential store to clear.
        on_logout: Called with the failure reason (sync or async).
        notify: Best-effort server notification, called with the credential
            that was cleared.  Its errors are logged, never raised.
        rearm_delay: Seconds before a new failure episode is accepted.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        on_logout: Callable[[str], Any] | None = None,
        notify: Callable[[Credential], Awaitable[Any]] | None = None,
        rearm_delay: float = AUTH_FAILURE_REARM_DELAY,
    ) -> None:
        self._store = store
        self._on_logout = on_logout
        self._notify = notify
        self._rearm_delay = rearm_delay
        self._handled = False
        self._rearm_handle: asyncio.TimerHandle | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()

    @property
    def latched(self) -> bool:
        return self._handled

    def trigger(self, reason: str) -> bool:
        """Sign out unless this episode was already handled.

        Must be called from a running event loop.  Returns True if the
        sign-out was dispatched by this call.
        """
        if self._handled:
            logger.debug("Auth failure already handled, ignoring (%s)", reason)
            return False
        self._handled = True
        loop = asyncio.get_running_loop()
        self._rearm_handle = loop.call_later(self._rearm_delay, self._rearm)

        credential = self._store.get()
        try:
            self._store.clear()
        except OSError as exc:
            logger.error("Could not clear stored credentials: %s", exc)
        logger.warning("Authentication lost (%s), signing out", reason)

        if self._notify is not None and credential is not None:
            self._fire_task(self._notify_quietly(credential))

        if self._on_logout is not None:
            try:
                result = self._on_logout(reason)
                if asyncio.iscoroutine(result):
                    self._fire_task(result)
            except Exception:
                logger.exception("Logout callback failed")
        return True

    def reset(self) -> None:
        """Re-arm immediately and drop the pending re-arm timer."""
        if self._rearm_handle is not None:
            self._rearm_handle.cancel()
        self._rearm()

    def _rearm(self) -> None:
        self._handled = False
        self._rearm_handle = None

    async def _notify_quietly(self, credential: Credential) -> None:
        assert self._notify is not None
        try:
            await self._notify(credential)
        except Exception as exc:
            logger.debug("Logout notification failed: %s", exc)

    def _fire_task(self, coro: Any) -> None:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)


class AuthTokenCoordinator:
    """Refreshes the access token, at most one network call at a time.

    Concurrent callers of :meth:`refresh` share the in-flight call and its
    outcome.  After *max_attempts* consecutive failures, refresh is
    suppressed for *cooldown* seconds and the failure handler fires.

    The refresh call goes straight through *client*, never through the
    request dispatcher, so it cannot recurse into another refresh.

    Args:
        store: Credential store read for the refresh token and updated on
            success.
        client: HTTP client whose ``base_url`` points at the API.
        config: Attempt and cooldown limits.
        failure_handler: Fired on terminal failure.
        refresh_path: Path of the refresh endpoint.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        store: CredentialStore,
        client: httpx.AsyncClient,
        *,
        config: RefreshConfig | None = None,
        failure_handler: AuthFailureHandler | None = None,
        refresh_path: str = REFRESH_PATH,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._client = client
        self._config = config or RefreshConfig()
        self._failure_handler = failure_handler
        self._refresh_path = refresh_path
        self._clock = clock

        self._task: asyncio.Task[Credential] | None = None
        self._attempts = 0
        self._cooldown_until: float | None = None
        self._reset_handle: asyncio.TimerHandle | None = None
        self._refresh_calls = 0

    # -- Properties -----------------------------------------------------------

    @property
    def phase(self) -> RefreshPhase:
        if self._task is not None:
            return RefreshPhase.REFRESHING
        if self._cooldown_until is not None and self._clock() < self._cooldown_until:
            return RefreshPhase.COOLING_DOWN
        return RefreshPhase.IDLE

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def in_flight(self) -> bool:
        return self._task is not None

    @property
    def cooldown_remaining(self) -> float:
        if self._cooldown_until is None:
            return 0.0
        return max(0.0, self._cooldown_until - self._clock())

    # -- Refresh --------------------------------------------------------------

    async def refresh(self) -> Credential:
        """Return a fresh credential.

        Raises:
            RefreshFailedError: Cooling down, no refresh token, or the
                refresh endpoint rejected or failed the call.
        """
        if self._cooldown_until is not None:
            if self._clock() < self._cooldown_until:
                logger.debug(
                    "Refresh suppressed, cooling down for %.1fs", self.cooldown_remaining
                )
                raise RefreshFailedError(
                    "Token refresh suspended after repeated failures", status=401
                )
            self._end_cooldown()

        if self._task is None:
            self._task = asyncio.ensure_future(self._run_refresh())
            self._task.add_done_callback(_consume_result)
        return await asyncio.shield(self._task)

    def reset(self) -> None:
        """Forget failures and any cooldown, e.g. after a fresh login."""
        self._end_cooldown()

    def get_stats(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "attempts": self._attempts,
            "max_attempts": self._config.max_attempts,
            "cooldown_remaining": self.cooldown_remaining,
            "refresh_calls": self._refresh_calls,
        }

    async def _run_refresh(self) -> Credential:
        # A new attempt owns the counter; a pending reset must not zero it.
        self._cancel_reset_timer()
        try:
            current = self._store.get()
            refresh_token = current.refresh_token if current else None
            if not refresh_token:
                self._fail_terminally("no refresh token")
                raise RefreshFailedError("No refresh token available", status=401)

            self._attempts += 1
            try:
                credential = await self._request_tokens(current, refresh_token)
            except RefreshFailedError as exc:
                logger.warning(
                    "Token refresh failed (attempt %d/%d): %s",
                    self._attempts,
                    self._config.max_attempts,
                    exc.message,
                )
                if self._attempts >= self._config.max_attempts:
                    self._start_cooldown()
                    self._fail_terminally("refresh attempts exhausted")
                raise

            self._attempts = 0
            self._cooldown_until = None
            self._store.set(credential)
            logger.info("Access token refreshed")
            return credential
        finally:
            self._task = None

    async def _request_tokens(
        self, current: Credential | None, refresh_token: str
    ) -> Credential:
        self._refresh_calls += 1
        try:
            response = await self._client.post(
                self._refresh_path,
                headers={"Authorization": f"Bearer {refresh_token}"},
                timeout=self._config.timeout,
            )
        except httpx.HTTPError as exc:
            raise RefreshFailedError(f"Refresh request failed: {exc}") from exc

        status = response.status_code
        if not response.is_success:
            raise RefreshFailedError(f"Refresh rejected with HTTP {status}", status=status)

        try:
            body = response.json()
        except ValueError as exc:
            raise RefreshFailedError("Malformed refresh response", status=status) from exc

        data = body.get("data") if isinstance(body, dict) and body.get("success") else None
        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not isinstance(access_token, str) or not access_token:
            raise RefreshFailedError("Refresh response carried no access token", status=status)

        user = data.get("user")
        return Credential(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or refresh_token,
            user=user if isinstance(user, dict) else (current.user if current else None),
            last_refresh_at=int(time.time() * 1000),
        )

    # -- Cooldown -------------------------------------------------------------

    def _start_cooldown(self) -> None:
        cooldown = self._config.cooldown
        self._cooldown_until = self._clock() + cooldown
        self._cancel_reset_timer()
        loop = asyncio.get_running_loop()
        self._reset_handle = loop.call_later(cooldown, self._end_cooldown)
        logger.error(
            "Token refresh failed %d times, suspending refresh for %.1fs",
            self._attempts,
            cooldown,
        )

    def _end_cooldown(self) -> None:
        self._cancel_reset_timer()
        self._attempts = 0
        self._cooldown_until = None

    def _cancel_reset_timer(self) -> None:
        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None

    def _fail_terminally(self, reason: str) -> None:
        if self._failure_handler is not None:
            self._failure_handler.trigger(reason)


def _consume_result(task: asyncio.Task[Any]) -> None:
    # Every waiter may have been cancelled; mark the exception as seen.
    if not task.cancelled():
        task.exception()
