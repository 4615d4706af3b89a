"""HTTP provider client.

Implements the ProviderClient protocol against the provider gateway. Every
provider is reached through the same gateway layout under
``{PROVIDER_API_BASE_URL}/{provider}``:

- ``POST /auth/login``    username/password (+ optional OTP) -> session
- ``POST /auth/refresh``  refresh token -> session
- ``GET  /accounts``      bearer access token -> account list
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation

import httpx

from config import settings
from integrations.exceptions import (
    AuthFailureReason,
    ProviderAPIError,
    ProviderAuthError,
    ProviderConnectionError,
    ProviderDataError,
    ProviderOTPRequiredError,
)
from integrations.provider_protocol import (
    InteractiveCredentials,
    ProviderAccount,
    ProviderSession,
)

logger = logging.getLogger(__name__)


class HttpProviderClient:
    """Provider client speaking the gateway's JSON-over-HTTP API."""

    def __init__(
        self,
        provider_name: str,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            provider_name: Provider id, used as the gateway path segment.
            base_url: Gateway root (defaults to settings).
            api_key: Gateway API key (defaults to settings).
            timeout: Per-request timeout in seconds (defaults to settings).
            transport: Optional httpx transport, used by tests.
        """
        self._provider_name = provider_name
        base = base_url if base_url is not None else settings.PROVIDER_API_BASE_URL
        self._base_url = f"{base.rstrip('/')}/{provider_name}" if base else ""
        self._api_key = api_key if api_key is not None else settings.PROVIDER_API_KEY
        self._timeout = timeout or settings.PROVIDER_HTTP_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def provider_name(self) -> str:
        return self._provider_name

    def is_configured(self) -> bool:
        """A gateway base URL is all the client needs."""
        return self._base_url.startswith(("http://", "https://"))

    def authenticate(self, credentials: InteractiveCredentials) -> ProviderSession:
        payload = {
            "username": credentials.username,
            "password": credentials.password,
        }
        if credentials.otp_code:
            payload["otp_code"] = credentials.otp_code
        data = self._request("POST", "/auth/login", json=payload)
        session = self._parse_session(data)
        logger.info(
            "%s: login succeeded for identity %s",
            self._provider_name, session.external_identity,
        )
        return session

    def refresh(self, refresh_token: str) -> ProviderSession:
        data = self._request(
            "POST", "/auth/refresh", json={"refresh_token": refresh_token}
        )
        return self._parse_session(data)

    def fetch_accounts(self, session: ProviderSession) -> list[ProviderAccount]:
        data = self._request(
            "GET",
            "/accounts",
            headers={"Authorization": f"Bearer {session.access_token}"},
        )
        raw_accounts = data.get("accounts")
        if not isinstance(raw_accounts, list):
            raise ProviderDataError(
                "Invalid response format: no accounts field",
                provider_name=self._provider_name,
            )
        accounts = [self._parse_account(raw) for raw in raw_accounts]
        logger.info("%s: fetched %d accounts", self._provider_name, len(accounts))
        return accounts

    def _request(self, method: str, path: str, **kwargs) -> dict:
        """Send a request to the gateway and decode the JSON body.

        Maps transport and HTTP failures onto the provider exception
        hierarchy.
        """
        if not self.is_configured():
            raise ProviderConnectionError(
                "Provider gateway URL is not configured",
                provider_name=self._provider_name,
                retriable=False,
            )

        headers = kwargs.pop("headers", {})
        if self._api_key:
            headers["X-Api-Key"] = self._api_key

        try:
            with httpx.Client(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = client.request(method, path, headers=headers, **kwargs)
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as exc:
            raise self._map_status_error(exc) from exc
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise ProviderConnectionError(
                f"{self._provider_name} connection failed: {exc}",
                provider_name=self._provider_name,
            ) from exc
        except ValueError as exc:
            raise ProviderDataError(
                f"{self._provider_name} returned invalid JSON",
                provider_name=self._provider_name,
            ) from exc

        if not isinstance(body, dict):
            raise ProviderDataError(
                f"{self._provider_name} returned unexpected payload",
                provider_name=self._provider_name,
            )
        return body

    def _map_status_error(self, exc: httpx.HTTPStatusError) -> Exception:
        status = exc.response.status_code
        if status == 401:
            if self._otp_required(exc.response):
                return ProviderOTPRequiredError(
                    "One-time passcode required",
                    provider_name=self._provider_name,
                )
            return ProviderAuthError(
                f"{self._provider_name} authentication failed (HTTP 401)",
                provider_name=self._provider_name,
                reason=AuthFailureReason.EXPIRED,
            )
        if status == 403:
            return ProviderAuthError(
                f"{self._provider_name} access revoked (HTTP 403)",
                provider_name=self._provider_name,
                reason=AuthFailureReason.REVOKED,
            )
        return ProviderAPIError(
            f"{self._provider_name} API error (HTTP {status})",
            provider_name=self._provider_name,
            status_code=status,
        )

    @staticmethod
    def _otp_required(response: httpx.Response) -> bool:
        try:
            body = response.json()
        except ValueError:
            return False
        return isinstance(body, dict) and bool(body.get("otp_required"))

    def _parse_session(self, data: dict) -> ProviderSession:
        identity = data.get("identity_id")
        access_token = data.get("access_token")
        if not identity or not access_token:
            raise ProviderDataError(
                "Invalid session response: missing identity_id or access_token",
                provider_name=self._provider_name,
            )

        expires_at = None
        if data.get("expires_at"):
            try:
                expires_at = datetime.fromisoformat(data["expires_at"])
            except (TypeError, ValueError):
                logger.debug(
                    "%s: unparseable expires_at %r", self._provider_name, data["expires_at"]
                )

        return ProviderSession(
            external_identity=str(identity),
            display_identity=data.get("email"),
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at,
        )

    def _parse_account(self, raw: dict) -> ProviderAccount:
        account_id = raw.get("id")
        if not account_id:
            raise ProviderDataError(
                "Invalid account format: missing id",
                provider_name=self._provider_name,
            )

        account_type = raw.get("type") or "other"
        balance = None
        if raw.get("balance") is not None:
            try:
                balance = Decimal(str(raw["balance"]))
            except InvalidOperation:
                logger.warning(
                    "%s: unparseable balance for account %s",
                    self._provider_name, account_id,
                )

        return ProviderAccount(
            id=str(account_id),
            # Fall back to the account type when the user never set a nickname
            name=raw.get("nickname") or account_type.replace("_", " ").title(),
            account_type=account_type,
            currency=raw.get("currency") or "CAD",
            balance=balance,
            is_open=raw.get("status", "open") == "open",
        )
