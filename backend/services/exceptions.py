"""Domain errors raised by the connection lifecycle services.

The API layer maps each of these to an HTTP status; provider-level errors
from :mod:`integrations.exceptions` are translated into ``AuthError`` at the
credential store boundary and never reach the routers directly.
"""

from integrations.exceptions import AuthFailureReason


class ConnectionServiceError(Exception):
    """Base class for connection lifecycle errors."""

    pass


class AuthError(ConnectionServiceError):
    """A provider handshake failed; the user must act (re-enter credentials)."""

    def __init__(self, reason: AuthFailureReason, provider: str, message: str = ""):
        self.reason = reason
        self.provider = provider
        super().__init__(message or f"{provider} authentication failed: {reason.value}")


class OTPRequiredError(AuthError):
    """Login needs a one-time passcode; retry connect with ``otp_code``."""

    def __init__(self, provider: str):
        super().__init__(
            AuthFailureReason.EXPIRED, provider, "One-time passcode required"
        )


class NotFoundError(ConnectionServiceError):
    """Base for unknown connections, providers, or stored credentials."""

    pass


class ConnectionNotFoundError(NotFoundError):
    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        super().__init__(f"Connection not found: {connection_id}")


class ProviderNotFoundError(NotFoundError):
    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Unknown provider: {provider}")


class CredentialsNotFoundError(NotFoundError):
    """No reusable credential is stored; the caller must use connect."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"No stored credentials for {provider}")


class ConnectionConflictError(ConnectionServiceError):
    """A Connection for the same (user, provider, identity) already exists."""

    def __init__(self, existing_id: str):
        self.existing_id = existing_id
        super().__init__(f"Connection already exists: {existing_id}")


class SyncAlreadyInProgressError(ConnectionServiceError):
    """Advisory: a sync is already running for the Connection."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        super().__init__(f"Sync already in progress for {connection_id}")


class InvalidStatusTransitionError(ConnectionServiceError):
    def __init__(self, connection_id: str, current: str, target: str):
        self.connection_id = connection_id
        self.current = current
        self.target = target
        super().__init__(
            f"Connection {connection_id} cannot move from {current} to {target}"
        )


class InternalStoreError(ConnectionServiceError):
    """Persistence failed; the transition was rolled back in full."""

    pass
