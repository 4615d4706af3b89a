"""Provider protocol definitions for multi-provider support.

This module defines the common interface every external financial-data
provider client implements, plus the normalized data it hands back to the
connection lifecycle code.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Protocol


@dataclass
class InteractiveCredentials:
    """Credentials typed by the user during a full connect."""

    username: str
    password: str
    otp_code: str | None = None

    def __repr__(self) -> str:
        return f"InteractiveCredentials(username={self.username!r}, password='***')"


@dataclass
class ProviderSession:
    """Result of a successful provider handshake.

    ``external_identity`` identifies the provider-side login and is what
    makes two links "the same" for duplicate detection.
    """

    external_identity: str  # Provider's canonical identity id
    display_identity: str | None  # e.g. login email, safe to show
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"ProviderSession(external_identity={self.external_identity!r}, "
            f"display_identity={self.display_identity!r})"
        )


@dataclass
class ProviderAccount:
    """Normalized account data from any provider.

    All provider clients must map their account data to this format.
    """

    id: str  # Provider's external ID for the account
    name: str  # Account name/nickname
    account_type: str  # e.g. "tfsa", "chequing", "credit_card"
    currency: str  # Currency code (e.g., "CAD")
    balance: Decimal | None = None  # Current balance (if available)
    is_open: bool = True  # Closed accounts are skipped by sync


class ProviderClient(Protocol):
    """Interface implemented by every provider client."""

    @property
    def provider_name(self) -> str:
        """Provider identifier, e.g. ``"wealthsimple"``."""
        ...

    def is_configured(self) -> bool:
        """Whether the client has what it needs to reach the provider."""
        ...

    def authenticate(self, credentials: InteractiveCredentials) -> ProviderSession:
        """Log in with user-entered credentials.

        Raises:
            ProviderOTPRequiredError: A one-time passcode is needed.
            ProviderAuthError: The credentials were refused.
            ProviderConnectionError: The provider could not be reached.
        """
        ...

    def refresh(self, refresh_token: str) -> ProviderSession:
        """Exchange a stored refresh token for a new session."""
        ...

    def fetch_accounts(self, session: ProviderSession) -> list[ProviderAccount]:
        """Fetch all accounts visible to the session."""
        ...
