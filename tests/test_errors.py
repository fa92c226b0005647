"""Tests for the error hierarchy."""

import pytest

from resilink.errors import (
    AuthExpiredError,
    ClientError,
    NetworkError,
    RefreshFailedError,
    ServerError,
    TransportConnectionError,
    TransportError,
    TransportTimeoutError,
    message_for_status,
)


class TestTransportError:
    @pytest.mark.parametrize(
        "cls",
        [
            AuthExpiredError,
            ClientError,
            NetworkError,
            RefreshFailedError,
            ServerError,
            TransportConnectionError,
            TransportTimeoutError,
        ],
    )
    def test_subclasses(self, cls):
        assert issubclass(cls, TransportError)

    def test_to_dict_without_details(self):
        err = ServerError("boom", status=502)
        assert err.to_dict() == {"message": "boom", "status": 502}
        assert str(err) == "boom"

    def test_to_dict_with_details(self):
        err = ClientError("bad", status=422, details=[{"field": "name"}])
        assert err.to_dict()["details"] == [{"field": "name"}]

    def test_default_status(self):
        assert NetworkError("offline").status == 0


class TestMessageForStatus:
    @pytest.mark.parametrize(
        "status, expected",
        [
            (401, "Authentication required."),
            (403, "Access denied."),
            (404, "Resource not found."),
            (422, "Validation failed."),
            (429, "Too many requests. Try again later."),
            (503, "Internal server error."),
            (418, "An unknown error occurred."),
        ],
    )
    def test_messages(self, status, expected):
        assert message_for_status(status) == expected
