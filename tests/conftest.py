import pytest

from workshop_relay.core import SessionStore, TunnelRegistry


@pytest.fixture
def registry():
    return TunnelRegistry()


@pytest.fixture
def session_store():
    return SessionStore()
