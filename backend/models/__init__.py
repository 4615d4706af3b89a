"""SQLAlchemy ORM models."""

from .connection import Connection, ConnectionStatus, SyncFrequency
from .synced_account import SyncedAccount
from .utils import generate_uuid

__all__ = ["Connection", "ConnectionStatus", "SyncFrequency", "SyncedAccount", "generate_uuid"]
