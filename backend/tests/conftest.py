"""Pytest configuration and fixtures."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from api.connections import get_service
from database import Base, build_engine
from main import app
from services.connection_registry import ConnectionRegistry
from services.connection_service import ConnectionService
from services.credential_store import CredentialStore
from services.sync_dispatcher import ProviderSyncRunner, SyncDispatcher
# Pytest fixtures - imported to make them available to tests
from tests.fixtures import connection  # noqa: F401
from tests.fixtures.mocks import FakeKeyring, MockProviderClient, MockProviderRegistry


@pytest.fixture(name="session_factory")
def session_factory_fixture(tmp_path):
    """Create a file-backed SQLite database for testing.

    Sync jobs write from worker threads, so each test gets a real file
    rather than a single shared in-memory connection.
    """
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)

    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(name="fake_keyring")
def fake_keyring_fixture(monkeypatch):
    """Replace the keychain used by the credential store with a dict."""
    fake = FakeKeyring()
    monkeypatch.setattr("services.credential_store.keyring", fake)
    return fake


@pytest.fixture(name="mock_provider")
def mock_provider_fixture():
    return MockProviderClient()


@pytest.fixture(name="provider_registry")
def provider_registry_fixture(mock_provider):
    return MockProviderRegistry({"acme": mock_provider})


@pytest.fixture(name="credential_store")
def credential_store_fixture(provider_registry, fake_keyring):
    return CredentialStore(provider_registry, service_name="test-connections")


@pytest.fixture(name="registry")
def registry_fixture(session_factory):
    return ConnectionRegistry(session_factory, retry_attempts=2)


@pytest.fixture(name="dispatcher")
def dispatcher_fixture(registry, credential_store, provider_registry):
    dispatcher = SyncDispatcher(
        registry,
        ProviderSyncRunner(credential_store, provider_registry),
        timeout_seconds=5,
        max_workers=4,
    )
    yield dispatcher
    dispatcher.shutdown(wait=True)


@pytest.fixture(name="service")
def service_fixture(registry, credential_store, dispatcher):
    return ConnectionService(registry, credential_store, dispatcher)


@pytest.fixture(name="client")
def client_fixture(service):
    """Create a test client wired to the test service."""
    app.dependency_overrides[get_service] = lambda: service
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
