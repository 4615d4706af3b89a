"""Connection model - a user's link to an external financial-data provider."""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid


class ConnectionStatus(str, Enum):
    """Lifecycle status of a Connection.

    ``DISCONNECTED`` is part of the stored vocabulary but no operation
    currently produces it; disconnect deletes the row instead.
    """

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    SYNCING = "syncing"


class SyncFrequency(str, Enum):
    """Scheduling hint consumed by the external scheduler."""

    MANUAL = "manual"
    DAILY = "daily"
    HOURLY = "hourly"


def _in_clause(column: str, enum_cls: type[Enum]) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


class Connection(Base):
    """A link between a user and a provider login.

    The combination of user_id + provider + external_identity uniquely
    identifies a Connection.
    """

    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "provider", "external_identity", name="uix_connection_identity"
        ),
        CheckConstraint(_in_clause("status", ConnectionStatus), name="ck_connection_status"),
        CheckConstraint(
            _in_clause("sync_frequency", SyncFrequency), name="ck_connection_sync_frequency"
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String, nullable=False, index=True)
    provider = Column(String, nullable=False, index=True)  # e.g., "wealthsimple"
    external_identity = Column(String, nullable=False)  # Provider's identity id for the login
    name = Column(String, nullable=False)
    status = Column(String, nullable=False, default=ConnectionStatus.CONNECTED.value)
    last_sync_at = Column(DateTime, nullable=True)
    last_sync_error = Column(Text, nullable=True)
    sync_frequency = Column(String, nullable=False, default=SyncFrequency.DAILY.value)
    account_count = Column(Integer, nullable=False, default=0)
    # Bumped on every dispatched sync; only the job holding the current value may write its outcome
    sync_generation = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    synced_accounts = relationship("SyncedAccount", back_populates="connection", passive_deletes=True)

    def __repr__(self) -> str:
        return f"<Connection {self.id} {self.provider} status={self.status}>"
