"""Connection lifecycle API endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from config import settings
from integrations.exceptions import AuthFailureReason
from integrations.provider_protocol import InteractiveCredentials
from models import Connection
from schemas.connection import (
    ConnectionListResponse,
    ConnectionResponse,
    ConnectionUpdate,
    ConnectRequest,
    CredentialCheckResponse,
    ReconnectResponse,
    SuccessResponse,
    SyncJobResponse,
    SyncStatusResponse,
    SyncTriggerResponse,
)
from services.connection_service import ConnectionService, get_connection_service
from services.exceptions import (
    AuthError,
    ConnectionConflictError,
    ConnectionServiceError,
    InternalStoreError,
    InvalidStatusTransitionError,
    NotFoundError,
    OTPRequiredError,
    SyncAlreadyInProgressError,
)
from services.sync_dispatcher import SyncJob, SyncTriggerStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["connections"])


def get_service() -> ConnectionService:
    """Get the ConnectionService (dependency for injection in tests)."""
    return get_connection_service()


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity from the ``X-User-Id`` header."""
    return x_user_id or settings.DEFAULT_USER_ID


def _http_error(exc: ConnectionServiceError) -> HTTPException:
    """Map a domain error to the HTTP status the frontend expects."""
    if isinstance(exc, OTPRequiredError):
        return HTTPException(
            status_code=401, detail={"message": str(exc), "otp_required": True}
        )
    if isinstance(exc, AuthError):
        if exc.reason == AuthFailureReason.PROVIDER_UNAVAILABLE:
            return HTTPException(status_code=502, detail=str(exc))
        return HTTPException(
            status_code=401, detail={"message": str(exc), "reason": exc.reason.value}
        )
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConnectionConflictError):
        return HTTPException(
            status_code=409,
            detail={"message": str(exc), "existing_connection_id": exc.existing_id},
        )
    if isinstance(exc, (SyncAlreadyInProgressError, InvalidStatusTransitionError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, InternalStoreError):
        logger.error("Connection store failure: %s", exc)
        return HTTPException(status_code=500, detail="Connection store unavailable")
    logger.error("Unhandled connection error", exc_info=exc)
    return HTTPException(status_code=500, detail="Internal server error")


def _job_response(job: Optional[SyncJob]) -> Optional[SyncJobResponse]:
    if job is None:
        return None
    counts = job.accounts
    return SyncJobResponse(
        sequence=job.sequence,
        started_at=job.started_at,
        result=job.result.value,
        error=job.error,
        accounts_created=counts.created if counts else None,
        accounts_updated=counts.updated if counts else None,
    )


@router.get("/connections", response_model=ConnectionListResponse)
def list_connections(
    user_id: str = Depends(get_user_id),
    service: ConnectionService = Depends(get_service),
):
    """List the caller's connections in creation order."""
    try:
        connections = service.list_for_user(user_id)
    except ConnectionServiceError as e:
        raise _http_error(e) from e
    return ConnectionListResponse(
        connections=[ConnectionResponse.model_validate(c) for c in connections]
    )


@router.get("/connections/{connection_id}", response_model=ConnectionResponse)
def get_connection(
    connection_id: str,
    user_id: str = Depends(get_user_id),
    service: ConnectionService = Depends(get_service),
):
    try:
        return service.get_connection(connection_id, user_id)
    except ConnectionServiceError as e:
        raise _http_error(e) from e


@router.get("/connections/{connection_id}/status", response_model=SyncStatusResponse)
def get_sync_status(
    connection_id: str,
    user_id: str = Depends(get_user_id),
    service: ConnectionService = Depends(get_service),
):
    """Poll a single connection's sync state."""
    try:
        status = service.get_sync_status(connection_id, user_id)
    except ConnectionServiceError as e:
        raise _http_error(e) from e

    conn = status.connection
    return SyncStatusResponse(
        connection_id=conn.id,
        status=conn.status,
        last_sync_at=conn.last_sync_at,
        last_sync_error=conn.last_sync_error,
        active_job=_job_response(status.active_job),
        last_job=_job_response(status.last_job),
    )


@router.put("/connections/{connection_id}", response_model=ConnectionResponse)
def update_connection(
    connection_id: str,
    body: ConnectionUpdate,
    user_id: str = Depends(get_user_id),
    service: ConnectionService = Depends(get_service),
):
    """Rename a connection or change its sync frequency."""
    try:
        return service.update_connection(
            connection_id,
            user_id,
            name=body.name,
            sync_frequency=body.sync_frequency,
        )
    except ConnectionServiceError as e:
        raise _http_error(e) from e


@router.post(
    "/connections/{connection_id}/sync",
    response_model=SyncTriggerResponse,
    status_code=202,
)
def trigger_sync(
    connection_id: str,
    user_id: str = Depends(get_user_id),
    service: ConnectionService = Depends(get_service),
):
    """Start a background sync for one connection.

    Returns 202 immediately; poll ``/connections/{id}/status`` for the result.

    Raises:
        HTTPException:
            - 404 Not Found: Unknown connection
            - 409 Conflict: Sync already in progress, or the connection
              cannot be synced from its current status
    """
    try:
        result = service.sync_now(connection_id, user_id)
    except ConnectionServiceError as e:
        raise _http_error(e) from e
    except Exception:
        # Safety catch for truly unexpected errors - never expose str(e)
        logger.error("Unexpected error starting sync for %s", connection_id, exc_info=True)
        raise HTTPException(status_code=500, detail="An unexpected error occurred starting sync.")

    if result.status == SyncTriggerStatus.ALREADY_IN_PROGRESS:
        raise HTTPException(
            status_code=409,
            detail="Sync already in progress. Please wait for the current sync to complete.",
        )
    return SyncTriggerResponse(
        connection_id=connection_id,
        status="pending",
        message="Sync started",
    )


@router.delete("/connections/{connection_id}", response_model=SuccessResponse)
def delete_connection(
    connection_id: str,
    user_id: str = Depends(get_user_id),
    service: ConnectionService = Depends(get_service),
):
    """Disconnect: delete the connection, keeping synced accounts."""
    try:
        service.disconnect(connection_id, user_id)
    except ConnectionServiceError as e:
        raise _http_error(e) from e
    except Exception:
        logger.error("Unexpected error disconnecting %s", connection_id, exc_info=True)
        raise HTTPException(status_code=500, detail="An unexpected error occurred during disconnect.")
    return SuccessResponse()


@router.get("/{provider}/check-credentials", response_model=CredentialCheckResponse)
def check_credentials(
    provider: str,
    user_id: str = Depends(get_user_id),
    service: ConnectionService = Depends(get_service),
):
    """Whether a reusable login is stored for quick reconnect."""
    try:
        check = service.check_credentials(user_id, provider)
    except ConnectionServiceError as e:
        raise _http_error(e) from e
    return CredentialCheckResponse(has_credentials=check.has_credentials, email=check.email)


@router.delete("/{provider}/credentials", response_model=SuccessResponse)
def forget_credentials(
    provider: str,
    user_id: str = Depends(get_user_id),
    service: ConnectionService = Depends(get_service),
):
    """Delete the stored login for a provider."""
    try:
        removed = service.forget_credentials(user_id, provider)
    except ConnectionServiceError as e:
        raise _http_error(e) from e
    return SuccessResponse(success=removed)


@router.post("/{provider}/connect", response_model=ConnectionResponse, status_code=201)
def connect(
    provider: str,
    body: ConnectRequest,
    user_id: str = Depends(get_user_id),
    service: ConnectionService = Depends(get_service),
):
    """Link a provider login with user-entered credentials.

    Raises:
        HTTPException:
            - 401 Unauthorized: Credentials refused or passcode required
            - 404 Not Found: Unknown provider
            - 409 Conflict: Login already linked (retry with ``merge``)
            - 502 Bad Gateway: Provider unavailable
    """
    credentials = InteractiveCredentials(
        username=body.username, password=body.password, otp_code=body.otp_code
    )
    try:
        connection: Connection = service.connect(
            user_id, provider, credentials, name=body.name, merge=body.merge
        )
    except ConnectionServiceError as e:
        raise _http_error(e) from e
    except Exception:
        logger.error("Unexpected error connecting %s", provider, exc_info=True)
        raise HTTPException(status_code=500, detail="An unexpected error occurred during connect.")
    return connection


@router.post("/{provider}/reconnect", response_model=ReconnectResponse)
def reconnect(
    provider: str,
    user_id: str = Depends(get_user_id),
    service: ConnectionService = Depends(get_service),
):
    """Quick reconnect using the stored login.

    Raises:
        HTTPException:
            - 401 Unauthorized: Stored login no longer works
            - 404 Not Found: Nothing stored (use connect), or unknown provider
            - 502 Bad Gateway: Provider unavailable
    """
    try:
        connection = service.reconnect(user_id, provider)
    except ConnectionServiceError as e:
        raise _http_error(e) from e
    except Exception:
        logger.error("Unexpected error reconnecting %s", provider, exc_info=True)
        raise HTTPException(status_code=500, detail="An unexpected error occurred during reconnect.")
    return ReconnectResponse(connection_id=connection.id)
