"""Connection registry - owns Connection records and their status.

Every public method runs in its own short transaction. Status changes are
conditional ``UPDATE ... WHERE status IN (...)`` statements issued first in
their transaction, so two callers racing for the same Connection are
serialized by the database rather than by a registry-wide lock, and a
rejected guard leaves nothing written.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from integrations.provider_protocol import ProviderAccount, ProviderSession
from models import Connection, ConnectionStatus, SyncedAccount, SyncFrequency
from services.exceptions import (
    ConnectionConflictError,
    ConnectionNotFoundError,
    InternalStoreError,
    InvalidStatusTransitionError,
    SyncAlreadyInProgressError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Statuses a sync may start from
SYNCABLE_STATUSES = (ConnectionStatus.CONNECTED, ConnectionStatus.ERROR)

INTERRUPTED_SYNC_ERROR = "Sync interrupted"

# Columns update_status() may write besides status/updated_at
_STATUS_FIELDS = frozenset(
    {"last_sync_at", "last_sync_error", "account_count", "sync_generation"}
)

_RETRY_BACKOFF_SECONDS = 0.05


@dataclass
class AccountUpsertCounts:
    """How a recorded sync changed the Connection's accounts."""

    created: int = 0
    updated: int = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionRegistry:
    """Persistent set of Connections with atomic status transitions."""

    def __init__(self, session_factory: sessionmaker, retry_attempts: int | None = None):
        """Initialize the registry.

        Args:
            session_factory: Sessionmaker used to open one session per operation.
            retry_attempts: How many times a transaction is attempted when the
                store reports a transient OperationalError (defaults to settings).
        """
        if retry_attempts is None:
            from config import settings

            retry_attempts = settings.STORE_RETRY_ATTEMPTS
        self._session_factory = session_factory
        self._retry_attempts = retry_attempts

    def _run(self, operation: Callable[[Session], T]) -> T:
        """Run ``operation`` in a transaction, committing on success.

        Transient ``OperationalError`` (e.g. a locked SQLite file) is retried
        from the start of the transaction. Anything else is rolled back;
        store failures surface as ``InternalStoreError``.
        """
        attempt = 0
        while True:
            attempt += 1
            session = self._session_factory()
            session.expire_on_commit = False
            try:
                result = operation(session)
                session.commit()
                return result
            except OperationalError as exc:
                session.rollback()
                if attempt >= self._retry_attempts:
                    logger.error(
                        "Store operation failed after %d attempts", attempt, exc_info=True
                    )
                    raise InternalStoreError("Connection store unavailable") from exc
                logger.warning(
                    "Store operation failed (attempt %d/%d), retrying",
                    attempt, self._retry_attempts,
                )
                time.sleep(_RETRY_BACKOFF_SECONDS * attempt)
            except IntegrityError:
                session.rollback()
                raise
            except SQLAlchemyError as exc:
                session.rollback()
                logger.error("Store operation failed", exc_info=True)
                raise InternalStoreError("Connection store error") from exc
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    @staticmethod
    def _guarded_update(
        session: Session,
        connection_id: str,
        values: dict,
        expected: Iterable[ConnectionStatus] | None = None,
        generation: int | None = None,
    ) -> int:
        """Apply ``values`` only if the guards hold. Returns the rowcount."""
        stmt = update(Connection).where(Connection.id == connection_id)
        if expected is not None:
            stmt = stmt.where(Connection.status.in_([s.value for s in expected]))
        if generation is not None:
            stmt = stmt.where(Connection.sync_generation == generation)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)
        return session.execute(stmt).rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_for_user(self, user_id: str) -> list[Connection]:
        """All of a user's Connections in creation order."""

        def op(session: Session) -> list[Connection]:
            return list(
                session.scalars(
                    select(Connection)
                    .where(Connection.user_id == user_id)
                    .order_by(Connection.created_at, Connection.id)
                )
            )

        return self._run(op)

    def get(self, connection_id: str) -> Connection:
        """Fetch a Connection.

        Raises:
            ConnectionNotFoundError: No such Connection.
        """

        def op(session: Session) -> Connection:
            conn = session.get(Connection, connection_id)
            if conn is None:
                raise ConnectionNotFoundError(connection_id)
            return conn

        return self._run(op)

    def find(self, user_id: str, provider: str, external_identity: str) -> Connection | None:
        """Look up the Connection for an identity tuple, or ``None``."""

        def op(session: Session) -> Connection | None:
            return session.scalars(
                select(Connection).where(
                    Connection.user_id == user_id,
                    Connection.provider == provider,
                    Connection.external_identity == external_identity,
                )
            ).first()

        return self._run(op)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        user_id: str,
        provider: str,
        session: ProviderSession,
        name: str | None = None,
    ) -> Connection:
        """Create a ``connected`` Connection from a handshake result.

        Raises:
            ConnectionConflictError: The (user, provider, identity) tuple exists.
        """
        existing = self.find(user_id, provider, session.external_identity)
        if existing is not None:
            raise ConnectionConflictError(existing.id)

        label = name or f"{provider} - {session.display_identity or session.external_identity}"

        def op(db: Session) -> Connection:
            now = _utcnow()
            conn = Connection(
                user_id=user_id,
                provider=provider,
                external_identity=session.external_identity,
                name=label,
                status=ConnectionStatus.CONNECTED.value,
                sync_frequency=SyncFrequency.DAILY.value,
                account_count=0,
                sync_generation=0,
                created_at=now,
                updated_at=now,
            )
            db.add(conn)
            db.flush()
            return conn

        try:
            conn = self._run(op)
        except IntegrityError as exc:
            # Lost a race with a concurrent create for the same identity
            existing = self.find(user_id, provider, session.external_identity)
            if existing is None:
                raise InternalStoreError("Could not create connection") from exc
            raise ConnectionConflictError(existing.id) from None

        logger.info("Created connection %s (%s) for user %s", conn.id, provider, user_id)
        return conn

    def update_status(
        self,
        connection_id: str,
        new_status: ConnectionStatus,
        *,
        expected: Iterable[ConnectionStatus] | None = None,
        generation: int | None = None,
        **fields,
    ) -> Connection | None:
        """Atomically set ``status`` (and sync fields) if the guards hold.

        Args:
            connection_id: Connection to update.
            new_status: Target status.
            expected: Statuses the Connection must currently be in.
            generation: Required current ``sync_generation``.
            **fields: Extra columns among last_sync_at, last_sync_error,
                account_count and sync_generation.

        Returns:
            The updated Connection, or ``None`` if a guard rejected the write.

        Raises:
            ConnectionNotFoundError: No such Connection.
        """
        unknown = set(fields) - _STATUS_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields via update_status: {sorted(unknown)}")

        expected = tuple(expected) if expected is not None else None

        def op(session: Session) -> Connection | None:
            values = {"status": new_status.value, "updated_at": _utcnow(), **fields}
            rowcount = self._guarded_update(
                session, connection_id, values, expected=expected, generation=generation
            )
            conn = session.get(Connection, connection_id)
            if conn is None:
                raise ConnectionNotFoundError(connection_id)
            return conn if rowcount else None

        return self._run(op)

    def begin_sync(self, connection_id: str) -> Connection:
        """Move ``connected|error -> syncing`` and take the next job sequence.

        The returned Connection's ``sync_generation`` is the new job's
        sequence number.

        Raises:
            ConnectionNotFoundError: No such Connection.
            SyncAlreadyInProgressError: The Connection is already syncing.
            InvalidStatusTransitionError: The Connection is in a status a sync
                cannot start from.
        """

        def op(session: Session) -> Connection:
            rowcount = self._guarded_update(
                session,
                connection_id,
                {
                    "status": ConnectionStatus.SYNCING.value,
                    "sync_generation": Connection.sync_generation + 1,
                    "updated_at": _utcnow(),
                },
                expected=SYNCABLE_STATUSES,
            )
            conn = session.get(Connection, connection_id)
            if conn is None:
                raise ConnectionNotFoundError(connection_id)
            if rowcount == 0:
                if conn.status == ConnectionStatus.SYNCING.value:
                    raise SyncAlreadyInProgressError(connection_id)
                raise InvalidStatusTransitionError(
                    connection_id, conn.status, ConnectionStatus.SYNCING.value
                )
            return conn

        conn = self._run(op)
        logger.info(
            "Connection %s: %s (job %d)",
            connection_id, ConnectionStatus.SYNCING.value, conn.sync_generation,
        )
        return conn

    def finish_sync(
        self,
        connection_id: str,
        generation: int,
        *,
        accounts: list[ProviderAccount] | None = None,
        error: str | None = None,
    ) -> AccountUpsertCounts | None:
        """Record a sync outcome if ``generation`` is still the live job.

        Success (``error is None``) moves ``syncing -> connected``, clears
        ``last_sync_error``, upserts the fetched accounts and sets
        ``account_count``. Failure moves ``syncing -> error`` and records
        ``error``. Both stamp ``last_sync_at``.

        Returns:
            The account counts written (all zero for a failure), or ``None``
            if the outcome was stale (timed out, superseded, or the
            Connection was deleted) and nothing was written.
        """
        open_accounts = [a for a in (accounts or []) if a.is_open]

        def op(session: Session) -> AccountUpsertCounts | None:
            now = _utcnow()
            if error is None:
                values = {
                    "status": ConnectionStatus.CONNECTED.value,
                    "last_sync_at": now,
                    "last_sync_error": None,
                    "account_count": len(open_accounts),
                    "updated_at": now,
                }
            else:
                values = {
                    "status": ConnectionStatus.ERROR.value,
                    "last_sync_at": now,
                    "last_sync_error": error,
                    "updated_at": now,
                }
            rowcount = self._guarded_update(
                session,
                connection_id,
                values,
                expected=(ConnectionStatus.SYNCING,),
                generation=generation,
            )
            if rowcount == 0:
                return None
            if error is None:
                return self._upsert_accounts(session, connection_id, open_accounts, now)
            return AccountUpsertCounts()

        written = self._run(op)
        if written is not None:
            logger.info(
                "Connection %s: job %d recorded as %s",
                connection_id, generation, "success" if error is None else "failure",
            )
        return written

    @staticmethod
    def _upsert_accounts(
        session: Session,
        connection_id: str,
        remote_accounts: list[ProviderAccount],
        synced_at: datetime,
    ) -> AccountUpsertCounts:
        """Attach fetched accounts to the Connection, creating rows as needed.

        Accounts a previous sync attached but the provider no longer lists
        as open are detached, never deleted.
        """
        conn = session.get(Connection, connection_id)
        seen_ids = set()
        new_count = 0
        for remote in remote_accounts:
            seen_ids.add(remote.id)
            existing = session.scalars(
                select(SyncedAccount).where(
                    SyncedAccount.user_id == conn.user_id,
                    SyncedAccount.provider == conn.provider,
                    SyncedAccount.provider_account_id == remote.id,
                )
            ).first()
            if existing is None:
                existing = SyncedAccount(
                    user_id=conn.user_id,
                    provider=conn.provider,
                    provider_account_id=remote.id,
                )
                session.add(existing)
                new_count += 1
            existing.connection_id = connection_id
            existing.name = remote.name
            existing.account_type = remote.account_type
            existing.currency = remote.currency
            if remote.balance is not None:
                existing.balance = remote.balance
            existing.last_sync_at = synced_at

        stale = update(SyncedAccount).where(SyncedAccount.connection_id == connection_id)
        if seen_ids:
            stale = stale.where(SyncedAccount.provider_account_id.not_in(seen_ids))
        session.execute(
            stale.values(connection_id=None).execution_options(synchronize_session=False)
        )
        session.flush()
        logger.info(
            "Connection %s: accounts upserted (%d new, %d existing)",
            connection_id, new_count, len(remote_accounts) - new_count,
        )
        return AccountUpsertCounts(created=new_count, updated=len(remote_accounts) - new_count)

    def update_settings(
        self,
        connection_id: str,
        name: str | None = None,
        sync_frequency: SyncFrequency | None = None,
    ) -> Connection:
        """Apply user edits (rename, change frequency). Status is untouched.

        Raises:
            ConnectionNotFoundError: No such Connection.
        """
        values: dict = {}
        if name is not None:
            values["name"] = name
        if sync_frequency is not None:
            values["sync_frequency"] = SyncFrequency(sync_frequency).value
        if not values:
            return self.get(connection_id)

        def op(session: Session) -> Connection:
            values["updated_at"] = _utcnow()
            self._guarded_update(session, connection_id, values)
            conn = session.get(Connection, connection_id)
            if conn is None:
                raise ConnectionNotFoundError(connection_id)
            return conn

        conn = self._run(op)
        logger.info("Updated connection %s settings: %s", connection_id, sorted(values))
        return conn

    def delete(self, connection_id: str) -> None:
        """Delete the Connection record.

        Synced accounts are detached, not removed.

        Raises:
            ConnectionNotFoundError: No such Connection.
        """

        def op(session: Session) -> int:
            detached = session.execute(
                update(SyncedAccount)
                .where(SyncedAccount.connection_id == connection_id)
                .values(connection_id=None)
                .execution_options(synchronize_session=False)
            ).rowcount
            deleted = session.execute(
                delete(Connection)
                .where(Connection.id == connection_id)
                .execution_options(synchronize_session=False)
            ).rowcount
            if deleted == 0:
                raise ConnectionNotFoundError(connection_id)
            return detached

        detached = self._run(op)
        logger.info(
            "Deleted connection %s (%d synced accounts kept)", connection_id, detached
        )

    def recover_interrupted_syncs(self) -> int:
        """Fail every Connection left ``syncing`` by a previous process.

        Only safe at startup, before any job has been dispatched.
        """

        def op(session: Session) -> int:
            now = _utcnow()
            return session.execute(
                update(Connection)
                .where(Connection.status == ConnectionStatus.SYNCING.value)
                .values(
                    status=ConnectionStatus.ERROR.value,
                    last_sync_error=INTERRUPTED_SYNC_ERROR,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            ).rowcount

        count = self._run(op)
        if count:
            logger.warning("Marked %d interrupted syncs as failed", count)
        return count
