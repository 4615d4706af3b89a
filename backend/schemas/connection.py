"""Pydantic schemas for the connection lifecycle API."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import ConnectionStatus, SyncFrequency


class ConnectionResponse(BaseModel):
    """A Connection as shown to the user. Never carries credentials."""

    id: str
    user_id: str
    provider: str
    name: str
    status: ConnectionStatus
    last_sync_at: Optional[datetime] = None
    last_sync_error: Optional[str] = None
    sync_frequency: SyncFrequency
    account_count: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ConnectionListResponse(BaseModel):
    connections: list[ConnectionResponse]


class ConnectionUpdate(BaseModel):
    """User-editable Connection fields; omitted fields are left alone."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    sync_frequency: Optional[SyncFrequency] = None


class ConnectRequest(BaseModel):
    """Interactive login for a full connect."""

    username: str = Field(min_length=1)
    password: str = Field(min_length=1, repr=False)
    otp_code: Optional[str] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    # Attach to an existing Connection for the same login instead of failing
    merge: bool = False


class SyncTriggerResponse(BaseModel):
    connection_id: str
    status: str
    message: str


class SyncJobResponse(BaseModel):
    sequence: int
    started_at: datetime
    result: str
    error: Optional[str] = None
    accounts_created: Optional[int] = None
    accounts_updated: Optional[int] = None


class SyncStatusResponse(BaseModel):
    """Cheap poll target while a sync runs."""

    connection_id: str
    status: ConnectionStatus
    last_sync_at: Optional[datetime] = None
    last_sync_error: Optional[str] = None
    active_job: Optional[SyncJobResponse] = None
    last_job: Optional[SyncJobResponse] = None


class CredentialCheckResponse(BaseModel):
    has_credentials: bool
    email: Optional[str] = None


class ReconnectResponse(BaseModel):
    connection_id: str


class SuccessResponse(BaseModel):
    success: bool = True
