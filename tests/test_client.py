"""Tests for the Transport composition root."""

import asyncio
import json
from unittest.mock import MagicMock

import httpx
import pytest
from fakes import (
    API_URL,
    WS_URL,
    FakeConnector,
    json_response,
    make_http_client,
    token_response,
    wait_until,
)

from resilink.client import Transport
from resilink.config import TransportConfig
from resilink.credentials import FileStorage
from resilink.errors import AuthExpiredError, ClientError
from resilink.types import ConnectionState


class Server:
    """Fake backend with login, refresh, logout and one protected route."""

    def __init__(self, *, refresh_status=200, logout_error=False):
        self.refresh_status = refresh_status
        self.logout_error = logout_error
        self.valid_token = "access-1"
        self.requests: list[httpx.Request] = []

    def calls_to(self, suffix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix)]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/auth/login"):
            body = json.loads(request.content)
            if body["password"] != "secret":
                return json_response(401, {"error": "Invalid credentials"})
            return token_response("access-1", refresh="refresh-1")
        if path.endswith("/auth/refresh"):
            if self.refresh_status != 200:
                return json_response(self.refresh_status, {})
            self.valid_token = "access-2"
            return token_response("access-2")
        if path.endswith("/auth/logout"):
            if self.logout_error:
                raise httpx.ConnectError("down", request=request)
            return json_response(200, {"success": True})
        if request.headers.get("Authorization") != f"Bearer {self.valid_token}":
            return json_response(401, {"error": "Token expired"})
        return json_response(200, {"success": True, "data": []})


@pytest.fixture
def config():
    return TransportConfig(api_url=API_URL, ws_url=WS_URL)


def make_transport(config, server, **kwargs):
    return Transport(config, http_client=make_http_client(server), **kwargs)


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_stores_credential(self, config):
        server = Server()
        transport = make_transport(config, server)

        credential = await transport.login("ada", "secret")

        assert credential.access_token == "access-1"
        assert credential.refresh_token == "refresh-1"
        assert credential.user == {"id": 1, "name": "Ada"}
        assert transport.is_authenticated is True
        request = server.calls_to("/auth/login")[0]
        assert "Authorization" not in request.headers
        assert json.loads(request.content) == {"username": "ada", "password": "secret"}

    @pytest.mark.asyncio
    async def test_bad_password(self, config):
        transport = make_transport(config, Server())

        with pytest.raises(ClientError) as exc_info:
            await transport.login("ada", "wrong")

        assert exc_info.value.status == 401
        assert exc_info.value.message == "Invalid credentials"
        assert transport.is_authenticated is False

    @pytest.mark.asyncio
    async def test_login_without_token_in_body(self, config):
        async def handler(request):
            return json_response(200, {"success": True, "data": {}})

        transport = Transport(config, http_client=make_http_client(handler))
        with pytest.raises(ClientError):
            await transport.login("ada", "secret")

    @pytest.mark.asyncio
    async def test_login_with_non_json_body(self, config):
        async def handler(request):
            return httpx.Response(200, text="<html>maintenance</html>")

        transport = Transport(config, http_client=make_http_client(handler))
        with pytest.raises(ClientError) as exc_info:
            await transport.login("ada", "secret")

        assert exc_info.value.status == 200
        assert exc_info.value.message == "Malformed login response"
        assert transport.is_authenticated is False

    @pytest.mark.asyncio
    async def test_login_persists_to_storage_path(self, tmp_path):
        path = tmp_path / "creds.json"
        config = TransportConfig(api_url=API_URL, ws_url=WS_URL, storage_path=str(path))
        transport = make_transport(config, Server())

        await transport.login("ada", "secret")

        assert path.exists()
        reloaded = make_transport(config, Server())
        assert reloaded.store.get().access_token == "access-1"

    @pytest.mark.asyncio
    async def test_explicit_storage_wins(self, config, tmp_path):
        storage = FileStorage(tmp_path / "explicit.json")
        transport = make_transport(config, Server(), storage=storage)

        await transport.login("ada", "secret")
        assert storage.path.exists()


class TestAuthenticatedRequests:
    @pytest.mark.asyncio
    async def test_refreshes_and_replays(self, config):
        server = Server()
        transport = make_transport(config, server)
        await transport.login("ada", "secret")
        server.valid_token = "rotated"

        # Refresh issues access-2, which the server then accepts.
        response = await transport.get("/rooms")

        assert response.status_code == 200
        assert len(server.calls_to("/auth/refresh")) == 1
        assert transport.store.get().access_token == "access-2"

    @pytest.mark.asyncio
    async def test_repeated_refresh_failure_logs_out_once(self, config):
        server = Server(refresh_status=401)
        on_logout = MagicMock()
        transport = make_transport(config, server, on_logout=on_logout)
        logouts = []
        transport.on("logout", logouts.append)
        await transport.login("ada", "secret")
        server.valid_token = "rotated"

        for _ in range(3):
            with pytest.raises(AuthExpiredError):
                await transport.get("/rooms")
        await asyncio.sleep(0)

        assert logouts == [{"reason": "refresh attempts exhausted"}]
        on_logout.assert_called_once_with("refresh attempts exhausted")
        assert transport.is_authenticated is False
        assert len(server.calls_to("/auth/refresh")) == 3

        with pytest.raises(AuthExpiredError):
            await transport.get("/rooms")
        assert len(server.calls_to("/auth/refresh")) == 3
        assert len(logouts) == 1

    @pytest.mark.asyncio
    async def test_forced_logout_notifies_server(self, config):
        server = Server(refresh_status=401)
        transport = make_transport(config, server)
        await transport.login("ada", "secret")
        server.valid_token = "rotated"

        for _ in range(3):
            with pytest.raises(AuthExpiredError):
                await transport.get("/rooms")
        await wait_until(lambda: server.calls_to("/auth/logout"))

        request = server.calls_to("/auth/logout")[0]
        assert request.headers["Authorization"] == "Bearer access-1"

    @pytest.mark.asyncio
    async def test_login_clears_cooldown(self, config):
        server = Server(refresh_status=401)
        transport = make_transport(config, server)
        await transport.login("ada", "secret")
        server.valid_token = "rotated"
        for _ in range(3):
            with pytest.raises(AuthExpiredError):
                await transport.get("/rooms")

        await transport.login("ada", "secret")

        assert transport.coordinator.attempts == 0
        assert transport.failure_handler.latched is False

    @pytest.mark.asyncio
    async def test_health_check(self, config):
        async def handler(request):
            return json_response(200, {"status": "ok"})

        transport = Transport(config, http_client=make_http_client(handler))
        assert await transport.check_health() == {"status": "healthy", "data": {"status": "ok"}}


class TestLogout:
    @pytest.mark.asyncio
    async def test_logout(self, config):
        server = Server()
        transport = make_transport(config, server)
        logouts = []
        transport.on("logout", logouts.append)
        await transport.login("ada", "secret")

        await transport.logout()

        assert server.calls_to("/auth/logout")[0].headers["Authorization"] == "Bearer access-1"
        assert transport.is_authenticated is False
        assert logouts == [{"reason": "user"}]

    @pytest.mark.asyncio
    async def test_logout_survives_server_failure(self, config):
        transport = make_transport(config, Server(logout_error=True))
        await transport.login("ada", "secret")

        await transport.logout()
        assert transport.is_authenticated is False


class TestRealtime:
    @pytest.mark.asyncio
    async def test_connect_send_receive(self, config):
        connector = FakeConnector()
        transport = make_transport(config, Server(), ws_connect=connector)
        await transport.login("ada", "secret")
        received = []
        transport.on("room_updated", received.append)

        assert await transport.connect() is True
        assert await transport.send("join_room", {"room_id": 7}) is True
        connector.last_socket.feed('{"type":"room_updated","data":{"id":7}}')
        await wait_until(lambda: received)

        assert connector.urls == [WS_URL + "?token=access-1"]
        assert connector.last_socket.sent_types() == ["join_room"]
        assert received == [{"id": 7}]
        await transport.disconnect()
        assert transport.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_forced_logout_closes_socket(self, config):
        connector = FakeConnector()
        server = Server(refresh_status=401)
        transport = make_transport(config, server, ws_connect=connector)
        await transport.login("ada", "secret")
        await transport.connect()
        server.valid_token = "rotated"

        for _ in range(3):
            with pytest.raises(AuthExpiredError):
                await transport.get("/rooms")
        await wait_until(lambda: transport.state == ConnectionState.DISCONNECTED)

        assert connector.last_socket.close_code == 1000

    @pytest.mark.asyncio
    async def test_decorator_subscription(self, config):
        transport = make_transport(config, Server())

        @transport.on("ping")
        def handler(data):
            pass

        assert transport.bus.listener_count("ping") == 1
        transport.off("ping", handler)
        assert transport.bus.listener_count("ping") == 0


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_context_manager_leaves_injected_client_open(self, config):
        client = make_http_client(Server())
        async with Transport(config, http_client=client) as transport:
            await transport.login("ada", "secret")
        assert client.is_closed is False
        await client.aclose()

    @pytest.mark.asyncio
    async def test_owned_client_closed(self, config):
        transport = Transport(config)
        await transport.aclose()
        assert transport._http.is_closed is True

    @pytest.mark.asyncio
    async def test_stats(self, config):
        transport = make_transport(config, Server())
        await transport.login("ada", "secret")

        stats = transport.get_stats()

        assert stats["authenticated"] is True
        assert stats["connection"]["state"] == "disconnected"
        assert stats["refresh"]["phase"] == "idle"
        assert stats["auth_failure_latched"] is False
