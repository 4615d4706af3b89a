"""Sync dispatcher - runs provider syncs in the background.

Each dispatched job carries the Connection's ``sync_generation`` as its
sequence number. Outcomes are written through
:meth:`ConnectionRegistry.finish_sync`, which only accepts a write from the
job holding the current sequence while the Connection is still ``syncing``.
A result that arrives after a timeout, after a disconnect, or after a newer
job was dispatched is therefore dropped.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from integrations.exceptions import AuthFailureReason, ProviderAuthError, ProviderError
from integrations.provider_protocol import ProviderAccount
from models import Connection
from services.connection_registry import (
    INTERRUPTED_SYNC_ERROR,
    AccountUpsertCounts,
    ConnectionRegistry,
)
from services.credential_store import CredentialStore
from services.exceptions import (
    AuthError,
    CredentialsNotFoundError,
    InternalStoreError,
    ProviderNotFoundError,
    SyncAlreadyInProgressError,
)

logger = logging.getLogger(__name__)

TIMEOUT_ERROR = "timeout"
AUTH_FAILED_ERROR = "Authentication failed - please reconnect"
UNEXPECTED_SYNC_ERROR = "Unexpected sync error"

# Upper bound between attempts to record a timeout the store rejected
_STORE_RETRY_SECONDS = 5.0


class SyncJobResult(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    DISCARDED = "discarded"


class SyncTriggerStatus(str, Enum):
    ACCEPTED = "accepted"
    ALREADY_IN_PROGRESS = "already_in_progress"


class SyncJobError(Exception):
    """A sync failed; the message is recorded as ``last_sync_error``."""

    pass


@dataclass
class SyncJob:
    """One in-flight (or finished) sync of one Connection. Never persisted."""

    connection_id: str
    sequence: int
    started_at: datetime
    result: SyncJobResult = SyncJobResult.PENDING
    error: str | None = None
    accounts: AccountUpsertCounts | None = None
    # Timed out, but the timeout could not be recorded yet
    timed_out: bool = False
    future: Future | None = field(default=None, repr=False)
    finished: threading.Event = field(default_factory=threading.Event, repr=False)
    timer: threading.Timer | None = field(default=None, repr=False)
    # Serializes the completion path against the timeout path
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def is_pending(self) -> bool:
        return self.result == SyncJobResult.PENDING


@dataclass
class SyncTriggerResult:
    status: SyncTriggerStatus
    job: SyncJob | None = None


SyncRunner = Callable[[Connection], list[ProviderAccount]]


class ProviderSyncRunner:
    """Default job body: handshake with stored credentials, then fetch accounts.

    Raises ``SyncJobError`` with a user-safe message for every expected
    failure; anything else escapes to the dispatcher as unexpected.
    """

    def __init__(self, credential_store: CredentialStore, provider_registry):
        self._credentials = credential_store
        self._providers = provider_registry

    def __call__(self, connection: Connection) -> list[ProviderAccount]:
        user_id, provider = connection.user_id, connection.provider
        try:
            session = self._credentials.reauthenticate(user_id, provider)
        except (CredentialsNotFoundError, ProviderNotFoundError) as exc:
            logger.warning("Sync %s: cannot authenticate: %s", connection.id, exc)
            if isinstance(exc, ProviderNotFoundError):
                raise SyncJobError(str(exc)) from exc
            raise SyncJobError(AUTH_FAILED_ERROR) from exc
        except AuthError as exc:
            logger.warning(
                "Sync %s: authentication failed (%s)", connection.id, exc.reason.value
            )
            if exc.reason == AuthFailureReason.PROVIDER_UNAVAILABLE:
                raise SyncJobError(str(exc)) from exc
            raise SyncJobError(AUTH_FAILED_ERROR) from exc

        client = self._providers.get_provider(provider)
        try:
            accounts = client.fetch_accounts(session)
        except ProviderAuthError as exc:
            logger.warning("Sync %s: provider rejected session: %s", connection.id, exc)
            raise SyncJobError(AUTH_FAILED_ERROR) from exc
        except ProviderError as exc:
            logger.warning("Sync %s: provider error: %s", connection.id, exc)
            raise SyncJobError(str(exc)) from exc

        logger.info("Sync %s: fetched %d accounts from %s", connection.id, len(accounts), provider)
        return accounts


class SyncDispatcher:
    """Starts at most one sync job per Connection and records its outcome."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        runner: SyncRunner,
        timeout_seconds: float | None = None,
        max_workers: int | None = None,
    ):
        if timeout_seconds is None or max_workers is None:
            from config import settings

            timeout_seconds = timeout_seconds or settings.SYNC_TIMEOUT_SECONDS
            max_workers = max_workers or settings.SYNC_MAX_WORKERS
        self._registry = registry
        self._runner = runner
        self._timeout = timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="sync-job"
        )
        self._active: dict[str, SyncJob] = {}
        # Most recent finished job per Connection, for status polls
        self._last: dict[str, SyncJob] = {}
        self._lock = threading.Lock()

    def trigger_sync(self, connection_id: str) -> SyncTriggerResult:
        """Start a sync unless one is already running.

        Raises:
            ConnectionNotFoundError: No such Connection.
            InvalidStatusTransitionError: The Connection cannot be synced.
        """
        try:
            connection = self._registry.begin_sync(connection_id)
        except SyncAlreadyInProgressError:
            logger.info("Sync already in progress for %s", connection_id)
            return SyncTriggerResult(
                SyncTriggerStatus.ALREADY_IN_PROGRESS, self.active_job(connection_id)
            )

        job = SyncJob(
            connection_id=connection_id,
            sequence=connection.sync_generation,
            started_at=datetime.now(timezone.utc),
        )
        with self._lock:
            self._active[connection_id] = job

        job.timer = threading.Timer(self._timeout, self._on_timeout, args=(job,))
        job.timer.daemon = True
        job.timer.start()

        try:
            job.future = self._executor.submit(self._execute, job, connection)
        except RuntimeError:
            logger.error("Sync executor is shut down; failing job for %s", connection_id)
            self._complete(job, error=INTERRUPTED_SYNC_ERROR)
        else:
            logger.info("Dispatched sync job %d for %s", job.sequence, connection_id)
        return SyncTriggerResult(SyncTriggerStatus.ACCEPTED, job)

    def active_job(self, connection_id: str) -> SyncJob | None:
        with self._lock:
            return self._active.get(connection_id)

    def last_job(self, connection_id: str) -> SyncJob | None:
        with self._lock:
            return self._last.get(connection_id)

    def discard(self, connection_id: str) -> SyncJob | None:
        """Drop the in-flight job so its eventual result is never written."""
        with self._lock:
            job = self._active.pop(connection_id, None)
            self._last.pop(connection_id, None)
        if job is None:
            return None
        with job.lock:
            if job.is_pending:
                job.result = SyncJobResult.DISCARDED
                self._release(job)
                logger.info("Discarded sync job %d for %s", job.sequence, connection_id)
        return job

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting jobs and fail anything that never got to finish."""
        self._executor.shutdown(wait=wait, cancel_futures=True)
        with self._lock:
            leftovers = list(self._active.values())
        for job in leftovers:
            self._complete(job, error=INTERRUPTED_SYNC_ERROR)
        logger.info("Sync dispatcher stopped")

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    def _execute(self, job: SyncJob, connection: Connection) -> None:
        try:
            accounts = self._runner(connection)
        except SyncJobError as exc:
            self._complete(job, error=str(exc))
        except Exception:
            logger.error(
                "Unexpected error in sync job %d for %s",
                job.sequence, job.connection_id, exc_info=True,
            )
            self._complete(job, error=UNEXPECTED_SYNC_ERROR)
        else:
            self._complete(job, accounts=accounts)

    def _complete(
        self,
        job: SyncJob,
        accounts: list[ProviderAccount] | None = None,
        error: str | None = None,
    ) -> None:
        with job.lock:
            if not job.is_pending:
                logger.warning(
                    "Dropping late result of sync job %d for %s (already %s)",
                    job.sequence, job.connection_id, job.result.value,
                )
                return
            if job.timed_out:
                logger.warning(
                    "Sync job %d for %s finished after timing out; recording the timeout",
                    job.sequence, job.connection_id,
                )
                accounts, error = None, TIMEOUT_ERROR
            # On a store failure the job stays pending and the timer retries
            self._record(job, accounts, error)

    def _on_timeout(self, job: SyncJob) -> None:
        with job.lock:
            if not job.is_pending:
                return
            if not job.timed_out:
                logger.warning(
                    "Sync job %d for %s timed out after %.1fs",
                    job.sequence, job.connection_id, self._timeout,
                )
                job.timed_out = True
                if job.future is not None:
                    job.future.cancel()
            if not self._record(job, None, TIMEOUT_ERROR):
                delay = min(self._timeout, _STORE_RETRY_SECONDS)
                job.timer = threading.Timer(delay, self._on_timeout, args=(job,))
                job.timer.daemon = True
                job.timer.start()

    def _record(
        self,
        job: SyncJob,
        accounts: list[ProviderAccount] | None,
        error: str | None,
    ) -> bool:
        """Write the outcome and release the job. Caller holds job.lock.

        Returns ``False`` if the store failed; the job is then still pending
        and the Connection still ``syncing``.
        """
        try:
            counts = self._registry.finish_sync(
                job.connection_id, job.sequence, accounts=accounts, error=error
            )
        except InternalStoreError:
            logger.error(
                "Could not record result of sync job %d for %s",
                job.sequence, job.connection_id, exc_info=True,
            )
            return False
        job.error = error
        if counts is None:
            job.result = SyncJobResult.DISCARDED
            logger.warning(
                "Sync job %d for %s is stale; result discarded",
                job.sequence, job.connection_id,
            )
        elif error is None:
            job.result = SyncJobResult.SUCCEEDED
            job.accounts = counts
        elif job.timed_out:
            job.result = SyncJobResult.TIMED_OUT
        else:
            job.result = SyncJobResult.FAILED
        self._release(job)
        return True

    def _release(self, job: SyncJob) -> None:
        """Stop the job's timer, forget it, and wake waiters. Caller holds job.lock."""
        if job.timer is not None:
            job.timer.cancel()
        if job.future is not None and job.result == SyncJobResult.DISCARDED:
            job.future.cancel()
        with self._lock:
            if self._active.get(job.connection_id) is job:
                del self._active[job.connection_id]
            if job.result != SyncJobResult.DISCARDED:
                self._last[job.connection_id] = job
        job.finished.set()
