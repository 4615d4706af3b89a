"""SyncedAccount model - a financial account ingested through a Connection."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid


class SyncedAccount(Base):
    """An account pulled from a provider by sync.

    Rows outlive their Connection: disconnecting sets ``connection_id`` to
    NULL and a later Connection for the same user and provider picks the
    row back up by ``provider_account_id``.
    """

    __tablename__ = "synced_accounts"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "provider", "provider_account_id", name="uix_synced_account_identity"
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    connection_id = Column(
        String(36),
        ForeignKey("connections.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    user_id = Column(String, nullable=False, index=True)
    provider = Column(String, nullable=False)
    provider_account_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    account_type = Column(String, nullable=True)
    currency = Column(String(3), nullable=True)
    balance = Column(Numeric(18, 2), nullable=True)
    last_sync_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    connection = relationship("Connection", back_populates="synced_accounts")
