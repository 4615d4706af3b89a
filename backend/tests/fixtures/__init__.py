"""Test fixtures and sample data."""
import pytest

from integrations.provider_protocol import ProviderSession
from models import Connection
from services.connection_registry import ConnectionRegistry


def make_session(
    external_identity: str = "identity-1",
    email: str | None = "user@example.com",
) -> ProviderSession:
    """Build a handshake result without going through a provider.

    This is a helper function (not a fixture) for tests that need several
    distinct logins.
    """
    return ProviderSession(
        external_identity=external_identity,
        display_identity=email,
        access_token="access-token",
        refresh_token="refresh-token",
    )


@pytest.fixture
def connection(registry: ConnectionRegistry) -> Connection:
    """Create a connected Connection for the default test user."""
    return registry.create("user-1", "acme", make_session())
