"""Connection lifecycle service - the single entry point for the API layer.

Coordinates the credential store (handshakes), the registry (records and
status), and the sync dispatcher (background jobs). It never retries an
``AuthError``; retrying is a user action.
"""

import logging
from dataclasses import dataclass
from functools import lru_cache

from integrations.provider_protocol import InteractiveCredentials
from models import Connection, SyncFrequency
from services.connection_registry import ConnectionRegistry
from services.credential_store import CredentialCheck, CredentialStore
from services.exceptions import (
    ConnectionConflictError,
    ConnectionNotFoundError,
    InternalStoreError,
)
from services.sync_dispatcher import SyncDispatcher, SyncJob, SyncTriggerResult

logger = logging.getLogger(__name__)


@dataclass
class SyncStatus:
    """Cheap status poll: the stored Connection, any live job and the last finished one."""

    connection: Connection
    active_job: SyncJob | None = None
    last_job: SyncJob | None = None


class ConnectionService:
    """Connect, reconnect, sync, edit and disconnect provider Connections."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        credential_store: CredentialStore,
        dispatcher: SyncDispatcher,
    ):
        self.registry = registry
        self.credentials = credential_store
        self.dispatcher = dispatcher

    def _owned(self, connection_id: str, user_id: str | None) -> Connection:
        """Fetch a Connection, hiding other users' Connections as not found."""
        connection = self.registry.get(connection_id)
        if user_id is not None and connection.user_id != user_id:
            raise ConnectionNotFoundError(connection_id)
        return connection

    def connect(
        self,
        user_id: str,
        provider: str,
        credentials: InteractiveCredentials,
        name: str | None = None,
        merge: bool = False,
    ) -> Connection:
        """Interactive connect: handshake, then create the Connection.

        Args:
            merge: When the login is already linked, refresh its stored
                credential and return the existing Connection instead of
                raising ``ConnectionConflictError``.

        Raises:
            AuthError: The provider refused the handshake.
            ConnectionConflictError: Already linked and ``merge`` is false.
            ProviderNotFoundError: Unknown provider.
        """
        session = self.credentials.authenticate(user_id, provider, credentials)

        try:
            connection = self.registry.create(user_id, provider, session, name=name)
        except ConnectionConflictError as exc:
            if not merge:
                logger.info(
                    "%s login %s already linked as %s",
                    provider, session.external_identity, exc.existing_id,
                )
                raise
            self.credentials.save(user_id, provider, session, credentials)
            logger.info("Merged %s login into existing connection %s", provider, exc.existing_id)
            return self.registry.get(exc.existing_id)

        try:
            self.credentials.save(user_id, provider, session, credentials)
        except InternalStoreError:
            logger.error(
                "Could not store credentials for new connection %s; rolling back",
                connection.id,
            )
            self.registry.delete(connection.id)
            raise
        return connection

    def reconnect(self, user_id: str, provider: str) -> Connection:
        """Quick connect with the stored credential.

        Returns the existing Connection for the stored login, creating it if
        it was disconnected earlier.

        Raises:
            CredentialsNotFoundError: Nothing stored; use ``connect``.
            AuthError: The stored credential no longer works.
        """
        session = self.credentials.reauthenticate(user_id, provider)

        existing = self.registry.find(user_id, provider, session.external_identity)
        if existing is not None:
            logger.info("Reconnected %s to existing connection %s", provider, existing.id)
            return existing

        try:
            connection = self.registry.create(user_id, provider, session)
        except ConnectionConflictError as exc:
            return self.registry.get(exc.existing_id)
        logger.info("Reconnected %s as new connection %s", provider, connection.id)
        return connection

    def sync_now(self, connection_id: str, user_id: str | None = None) -> SyncTriggerResult:
        """Start a background sync; ``already_in_progress`` is not an error."""
        self._owned(connection_id, user_id)
        return self.dispatcher.trigger_sync(connection_id)

    def disconnect(self, connection_id: str, user_id: str | None = None) -> None:
        """Delete the Connection. Synced accounts and stored credentials stay."""
        self._owned(connection_id, user_id)
        # A failed delete leaves the running job in charge of the row
        self.registry.delete(connection_id)
        self.dispatcher.discard(connection_id)

    def list_for_user(self, user_id: str) -> list[Connection]:
        return self.registry.list_for_user(user_id)

    def get_connection(self, connection_id: str, user_id: str | None = None) -> Connection:
        return self._owned(connection_id, user_id)

    def get_sync_status(self, connection_id: str, user_id: str | None = None) -> SyncStatus:
        connection = self._owned(connection_id, user_id)
        return SyncStatus(
            connection,
            self.dispatcher.active_job(connection_id),
            self.dispatcher.last_job(connection_id),
        )

    def update_connection(
        self,
        connection_id: str,
        user_id: str | None = None,
        name: str | None = None,
        sync_frequency: SyncFrequency | None = None,
    ) -> Connection:
        """Rename a Connection or change its sync frequency."""
        self._owned(connection_id, user_id)
        return self.registry.update_settings(
            connection_id, name=name, sync_frequency=sync_frequency
        )

    def check_credentials(self, user_id: str, provider: str) -> CredentialCheck:
        return self.credentials.has_stored_credentials(user_id, provider)

    def forget_credentials(self, user_id: str, provider: str) -> bool:
        """Delete the stored credential; existing Connections are untouched."""
        return self.credentials.forget(user_id, provider)

    def shutdown(self) -> None:
        self.dispatcher.shutdown(wait=False)


@lru_cache
def get_connection_service() -> ConnectionService:
    """Build the process-wide service from settings."""
    from database import get_session_local
    from integrations.provider_registry import get_provider_registry
    from services.sync_dispatcher import ProviderSyncRunner

    providers = get_provider_registry()
    registry = ConnectionRegistry(get_session_local())
    credential_store = CredentialStore(providers)
    dispatcher = SyncDispatcher(registry, ProviderSyncRunner(credential_store, providers))
    return ConnectionService(registry, credential_store, dispatcher)
