"""Mock implementations for external services."""

import threading
from decimal import Decimal

from keyring.errors import PasswordDeleteError

from integrations.exceptions import ProviderOTPRequiredError
from integrations.provider_protocol import (
    InteractiveCredentials,
    ProviderAccount,
    ProviderSession,
)
from integrations.provider_registry import ProviderRegistry


SAMPLE_ACCOUNTS = [
    ProviderAccount(
        id="acct-tfsa",
        name="My TFSA",
        account_type="tfsa",
        currency="CAD",
        balance=Decimal("12500.50"),
    ),
    ProviderAccount(
        id="acct-rrsp",
        name="RRSP",
        account_type="rrsp",
        currency="CAD",
        balance=Decimal("40200.00"),
    ),
    ProviderAccount(
        id="acct-closed",
        name="Old Chequing",
        account_type="chequing",
        currency="CAD",
        is_open=False,
    ),
]


class FakeKeyring:
    """In-memory stand-in for the ``keyring`` module's password API."""

    def __init__(self):
        self.passwords: dict[tuple[str, str], str] = {}
        self.fail_writes = False

    def get_password(self, service: str, username: str) -> str | None:
        return self.passwords.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        if self.fail_writes:
            raise RuntimeError("keychain is locked")
        self.passwords[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        if (service, username) not in self.passwords:
            raise PasswordDeleteError("Password not found")
        del self.passwords[(service, username)]


class MockProviderClient:
    """Mock ProviderClient for testing.

    Failures are injected as exception instances. ``fetch_gate`` holds
    ``fetch_accounts`` until the test sets it, which keeps a sync job in
    flight for as long as a test needs.
    """

    def __init__(
        self,
        name: str = "acme",
        external_identity: str = "identity-1",
        email: str | None = "user@example.com",
        accounts: list[ProviderAccount] | None = None,
        require_otp: bool = False,
        authenticate_error: Exception | None = None,
        refresh_error: Exception | None = None,
        fetch_error: Exception | None = None,
        fetch_gate: threading.Event | None = None,
    ):
        self._name = name
        self.external_identity = external_identity
        self.email = email
        self.accounts = list(accounts) if accounts is not None else list(SAMPLE_ACCOUNTS)
        self.require_otp = require_otp
        self.authenticate_error = authenticate_error
        self.refresh_error = refresh_error
        self.fetch_error = fetch_error
        self.fetch_gate = fetch_gate
        self.fetch_started = threading.Event()
        self.authenticate_calls: list[InteractiveCredentials] = []
        self.refresh_calls: list[str] = []
        self.fetch_calls = 0
        self._issued = 0

    @property
    def provider_name(self) -> str:
        return self._name

    def is_configured(self) -> bool:
        return True

    def _session(self) -> ProviderSession:
        self._issued += 1
        return ProviderSession(
            external_identity=self.external_identity,
            display_identity=self.email,
            access_token=f"access-{self._issued}",
            refresh_token=f"refresh-{self._issued}",
        )

    def authenticate(self, credentials: InteractiveCredentials) -> ProviderSession:
        self.authenticate_calls.append(credentials)
        if self.authenticate_error is not None:
            raise self.authenticate_error
        if self.require_otp and not credentials.otp_code:
            raise ProviderOTPRequiredError("One-time passcode required", provider_name=self._name)
        return self._session()

    def refresh(self, refresh_token: str) -> ProviderSession:
        self.refresh_calls.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self._session()

    def fetch_accounts(self, session: ProviderSession) -> list[ProviderAccount]:
        self.fetch_calls += 1
        self.fetch_started.set()
        if self.fetch_gate is not None:
            self.fetch_gate.wait(timeout=5)
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.accounts)


class MockProviderRegistry(ProviderRegistry):
    """Mock provider registry for testing.

    Allows injecting mock providers without going through initialization.
    """

    def __init__(self, providers: dict | None = None):
        """Initialize with optional pre-configured providers.

        Args:
            providers: Dict mapping provider name to ProviderClient.
                      If None, starts empty.
        """
        super().__init__()
        if providers:
            for name, provider in providers.items():
                self._providers[name] = provider

    def initialize_default_providers(self) -> None:
        """Override to do nothing - tests configure providers explicitly."""
        pass
