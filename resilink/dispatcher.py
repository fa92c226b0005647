# =============================================================================
# Resilink -- Request Dispatcher
# =============================================================================
#
# Wraps outbound HTTP calls: attaches the bearer token at send time, replays
# once after a token refresh on 401, retries transient failures with
# backoff, and normalizes everything else into TransportError subclasses.
# =============================================================================

from __future__ import annotations

import asyncio
import secrets
import time
from typing import Any, Awaitable, Callable

import httpx

from ._logging import logger
from .auth import AuthTokenCoordinator
from .constants import HEALTH_PATH
from .credentials import CredentialStore
from .errors import (
    MSG_NETWORK,
    MSG_TIMEOUT,
    AuthExpiredError,
    ClientError,
    NetworkError,
    RefreshFailedError,
    ServerError,
    TransportError,
    TransportTimeoutError,
    message_for_status,
)
from .retry_policy import RetryPolicy
from .types import FailureKind, RequestContext

Sleep = Callable[[float], Awaitable[Any]]


class RequestDispatcher:
    """Sends HTTP requests with auth recovery and transient-failure retry.

    Args:
        store: Source of the access token.
        coordinator: Consulted once per request on 401.
        client: HTTP client; relative URLs resolve against its ``base_url``.
        retry_policy: Backoff schedule for 5xx and timeouts.
        sleep: Awaitable delay, injectable for tests.

    Example::

        dispatcher = RequestDispatcher(store, coordinator, client)
        response = await dispatcher.get("/rooms", params={"page": 1})
        rooms = response.json()["data"]
    """

    def __init__(
        self,
        store: CredentialStore,
        coordinator: AuthTokenCoordinator,
        client: httpx.AsyncClient,
        *,
        retry_policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._coordinator = coordinator
        self._client = client
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def execute(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        auth: bool = True,
    ) -> httpx.Response:
        """Send a request and return its successful response.

        Args:
            method: HTTP verb.
            url: Path relative to the API base URL, or an absolute URL.
            json: JSON body.
            params: Query parameters.
            headers: Extra headers.
            timeout: Per-request timeout in seconds; client default if None.
            auth: Attach the bearer token and recover from 401.

        Raises:
            AuthExpiredError: 401 that a refresh could not fix.
            ServerError: 5xx after the retry budget.
            TransportTimeoutError: Timed out after the retry budget.
            ClientError: Any other 4xx.
            NetworkError: No response received.
        """
        ctx = RequestContext(method.upper(), url)
        token_override: str | None = None

        while True:
            outcome: int | FailureKind
            timed_out: httpx.TimeoutException | None = None
            try:
                response = await self._send(
                    ctx,
                    json=json,
                    params=params,
                    headers=headers,
                    timeout=timeout,
                    auth=auth,
                    token=token_override,
                )
            except httpx.TimeoutException as exc:
                outcome = FailureKind.TIMEOUT
                timed_out = exc
            except httpx.RequestError as exc:
                raise NetworkError(MSG_NETWORK) from exc
            else:
                if response.is_success:
                    return response

                outcome = response.status_code
                if outcome == 401 and auth:
                    token_override = await self._recover_auth(ctx, response)
                    continue

            decision = self._retry_policy.decide(outcome, ctx.retry_attempts + 1)
            if not decision.should_retry:
                if timed_out is not None:
                    raise TransportTimeoutError(MSG_TIMEOUT) from timed_out
                raise _error_from_response(response)

            ctx.retry_attempts += 1
            logger.warning(
                "Retrying %s %s after %s (%d/%d) in %.1fs",
                ctx.method,
                ctx.url,
                outcome.value if isinstance(outcome, FailureKind) else outcome,
                ctx.retry_attempts,
                self._retry_policy.max_retries,
                decision.delay,
            )
            await self._sleep(decision.delay)

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.execute("GET", url, **kwargs)

    async def post(self, url: str, json: Any = None, **kwargs: Any) -> httpx.Response:
        return await self.execute("POST", url, json=json, **kwargs)

    async def put(self, url: str, json: Any = None, **kwargs: Any) -> httpx.Response:
        return await self.execute("PUT", url, json=json, **kwargs)

    async def patch(self, url: str, json: Any = None, **kwargs: Any) -> httpx.Response:
        return await self.execute("PATCH", url, json=json, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.execute("DELETE", url, **kwargs)

    async def check_health(
        self, path: str = HEALTH_PATH, *, timeout: float = 5.0
    ) -> dict[str, Any]:
        """Probe the API without raising."""
        try:
            response = await self.execute("GET", path, timeout=timeout, auth=False)
        except TransportError as exc:
            return {"status": "unhealthy", "error": exc.message}
        try:
            data: Any = response.json()
        except ValueError:
            data = response.text
        return {"status": "healthy", "data": data}

    # -- Internal -------------------------------------------------------------

    async def _send(
        self,
        ctx: RequestContext,
        *,
        json: Any,
        params: dict[str, Any] | None,
        headers: dict[str, str] | None,
        timeout: float | None,
        auth: bool,
        token: str | None,
    ) -> httpx.Response:
        request_headers = dict(headers or {})
        request_headers["X-Request-ID"] = _request_id()
        if auth:
            if token is None:
                credential = self._store.get()
                token = credential.access_token if credential else None
            if token:
                request_headers["Authorization"] = f"Bearer {token}"

        extra: dict[str, Any] = {}
        if timeout is not None:
            extra["timeout"] = timeout

        started = time.monotonic()
        response = await self._client.request(
            ctx.method,
            ctx.url,
            json=json,
            params=params,
            headers=request_headers,
            **extra,
        )
        logger.debug(
            "%s %s -> %d (%.0fms, id=%s)",
            ctx.method,
            ctx.url,
            response.status_code,
            (time.monotonic() - started) * 1000,
            request_headers["X-Request-ID"],
        )
        return response

    async def _recover_auth(self, ctx: RequestContext, response: httpx.Response) -> str:
        """Refresh once per request; return the token to replay with."""
        if ctx.auth_retried:
            raise AuthExpiredError(_message_from(response, 401), status=401)
        ctx.mark_auth_retry()
        try:
            credential = await self._coordinator.refresh()
        except RefreshFailedError as exc:
            raise AuthExpiredError(_message_from(response, 401), status=401) from exc
        logger.debug("Replaying %s %s with refreshed token", ctx.method, ctx.url)
        return credential.access_token


def _request_id() -> str:
    return f"req_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def _body(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _message_from(response: httpx.Response, status: int) -> str:
    body = _body(response)
    for key in ("error", "message"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return message_for_status(status)


def _error_from_response(response: httpx.Response) -> TransportError:
    status = response.status_code
    details = _body(response).get("details")
    error_cls = ServerError if status >= 500 else ClientError
    return error_cls(
        _message_from(response, status),
        status=status,
        details=details if isinstance(details, list) else None,
    )
