"""Keyring-backed credential storage for provider logins.

Two kinds of secrets live in the keychain under the same service name:

- App-level secrets (e.g. ``PROVIDER_API_KEY``), read by the settings
  source in :mod:`config`.
- One reusable credential per (user, provider), stored as a JSON blob and
  used for quick reconnect and for background sync handshakes.

Nothing outside :class:`CredentialStore` ever sees the secret fields; callers
get a yes/no plus a display identity, or a live provider session.
"""

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import keyring
from keyring.errors import PasswordDeleteError

from integrations.exceptions import (
    AuthFailureReason,
    ProviderAuthError,
    ProviderError,
    ProviderOTPRequiredError,
)
from integrations.provider_protocol import (
    InteractiveCredentials,
    ProviderClient,
    ProviderSession,
)
from services.exceptions import (
    AuthError,
    CredentialsNotFoundError,
    InternalStoreError,
    OTPRequiredError,
    ProviderNotFoundError,
)

if TYPE_CHECKING:
    from integrations.provider_registry import ProviderRegistry

logger = logging.getLogger(__name__)

SERVICE_NAME = "folio-connections"

APP_SECRET_KEYS: frozenset[str] = frozenset({"PROVIDER_API_KEY"})


def get_app_secret(key: str) -> str | None:
    """Retrieve an app-level secret from the keychain.

    Returns:
        The secret, or ``None`` if not found, not an app secret, or the
        keychain is unavailable.
    """
    if key not in APP_SECRET_KEYS:
        return None
    try:
        return keyring.get_password(SERVICE_NAME, key)
    except Exception:
        logger.debug("keyring lookup failed for %s", key, exc_info=True)
        return None


@dataclass
class CredentialCheck:
    """Existence check result; never carries secret material."""

    has_credentials: bool
    email: str | None = None


class CredentialStore:
    """Holds reusable provider credentials and performs provider handshakes."""

    def __init__(
        self,
        provider_registry: "ProviderRegistry",
        service_name: str | None = None,
    ):
        if service_name is None:
            from config import settings

            service_name = settings.CREDENTIAL_SERVICE_NAME
        self._registry = provider_registry
        self._service_name = service_name

    @staticmethod
    def _entry_name(user_id: str, provider: str) -> str:
        return f"{user_id}:{provider}"

    def _client(self, provider: str) -> ProviderClient:
        try:
            return self._registry.get_provider(provider)
        except ValueError:
            raise ProviderNotFoundError(provider) from None

    def _load(self, user_id: str, provider: str) -> dict | None:
        try:
            raw = keyring.get_password(
                self._service_name, self._entry_name(user_id, provider)
            )
        except Exception:
            logger.warning(
                "keyring lookup failed for %s/%s", user_id, provider, exc_info=True
            )
            return None
        if not raw:
            return None
        try:
            record = json.loads(raw)
        except ValueError:
            logger.warning("Stored credential for %s/%s is unreadable", user_id, provider)
            return None
        return record if isinstance(record, dict) else None

    def _write(self, user_id: str, provider: str, record: dict) -> None:
        try:
            keyring.set_password(
                self._service_name,
                self._entry_name(user_id, provider),
                json.dumps(record),
            )
        except Exception as exc:
            raise InternalStoreError(
                f"Could not store credentials for {provider}"
            ) from exc

    def has_stored_credentials(self, user_id: str, provider: str) -> CredentialCheck:
        """Report whether a reusable credential exists, with its display email."""
        self._client(provider)
        record = self._load(user_id, provider)
        if record is None:
            return CredentialCheck(has_credentials=False)
        return CredentialCheck(has_credentials=True, email=record.get("email"))

    def authenticate(
        self,
        user_id: str,
        provider: str,
        credentials: InteractiveCredentials,
    ) -> ProviderSession:
        """Perform an interactive handshake. Nothing is stored.

        Raises:
            OTPRequiredError: The provider wants a one-time passcode.
            AuthError: The provider refused the credentials or is unreachable.
        """
        client = self._client(provider)
        try:
            return client.authenticate(credentials)
        except ProviderOTPRequiredError:
            raise OTPRequiredError(provider) from None
        except ProviderError as exc:
            raise self._auth_error(provider, exc) from exc

    def save(
        self,
        user_id: str,
        provider: str,
        session: ProviderSession,
        credentials: InteractiveCredentials | None = None,
    ) -> None:
        """Store (or rotate) the reusable credential for ``(user_id, provider)``.

        Raises:
            InternalStoreError: The keychain rejected the write.
        """
        record = self._load(user_id, provider) or {}
        if credentials is not None:
            record["username"] = credentials.username
            record["password"] = credentials.password
        if session.refresh_token:
            record["refresh_token"] = session.refresh_token
        if session.display_identity:
            record["email"] = session.display_identity
        record["external_identity"] = session.external_identity
        self._write(user_id, provider, record)
        logger.info("Stored credentials for %s/%s", user_id, provider)

    def reauthenticate(self, user_id: str, provider: str) -> ProviderSession:
        """Handshake with the stored credential: refresh token, then password.

        Raises:
            CredentialsNotFoundError: Nothing is stored for this provider.
            AuthError: The stored credential can no longer authenticate.
        """
        client = self._client(provider)
        record = self._load(user_id, provider)
        if record is None:
            raise CredentialsNotFoundError(provider)

        session: ProviderSession | None = None
        last_error: ProviderError | None = None

        refresh_token = record.get("refresh_token")
        if refresh_token:
            try:
                session = client.refresh(refresh_token)
            except ProviderAuthError as exc:
                logger.info(
                    "%s: refresh token rejected for %s, trying stored login",
                    provider, user_id,
                )
                last_error = exc
            except ProviderError as exc:
                raise self._auth_error(provider, exc) from exc

        if session is None and record.get("username") and record.get("password"):
            try:
                session = client.authenticate(
                    InteractiveCredentials(
                        username=record["username"], password=record["password"]
                    )
                )
            except ProviderOTPRequiredError as exc:
                # A stored password cannot answer an OTP challenge
                last_error = exc
            except ProviderError as exc:
                last_error = exc
                if not isinstance(exc, ProviderAuthError):
                    raise self._auth_error(provider, exc) from exc

        if session is None:
            if last_error is None:
                raise AuthError(
                    AuthFailureReason.EXPIRED, provider, "Stored credential is incomplete"
                )
            raise self._auth_error(provider, last_error) from last_error

        try:
            self.save(user_id, provider, session)
        except InternalStoreError:
            logger.warning(
                "Could not rotate stored credential for %s/%s", user_id, provider,
                exc_info=True,
            )
        return session

    def forget(self, user_id: str, provider: str) -> bool:
        """Remove the stored credential. Returns ``False`` if nothing was stored."""
        self._client(provider)
        try:
            keyring.delete_password(
                self._service_name, self._entry_name(user_id, provider)
            )
        except PasswordDeleteError:
            return False
        except Exception as exc:
            raise InternalStoreError(
                f"Could not delete credentials for {provider}"
            ) from exc
        logger.info("Deleted stored credentials for %s/%s", user_id, provider)
        return True

    @staticmethod
    def _auth_error(provider: str, exc: ProviderError) -> AuthError:
        """Translate a provider failure into the domain ``AuthError``."""
        if isinstance(exc, ProviderAuthError):
            return AuthError(exc.reason, provider, str(exc))
        return AuthError(
            AuthFailureReason.PROVIDER_UNAVAILABLE,
            provider,
            f"{provider} is unavailable",
        )
