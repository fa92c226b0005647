"""Shared fixtures for resilink tests."""

import pytest
from fakes import FakeConnector

from resilink.credentials import CredentialStore
from resilink.event_bus import EventBus
from resilink.types import Credential


@pytest.fixture
def credential():
    return Credential(access_token="access-1", refresh_token="refresh-1", user={"id": 1})


@pytest.fixture
def store(credential):
    s = CredentialStore()
    s.set(credential)
    return s


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def connector():
    return FakeConnector()
