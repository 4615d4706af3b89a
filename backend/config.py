"""Application configuration using pydantic-settings."""

from typing import Any

from pydantic import field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from services.credential_store import APP_SECRET_KEYS, SERVICE_NAME, get_app_secret


class KeychainSettingsSource(PydanticBaseSettingsSource):
    """Load app-level secrets from the system keychain via ``keyring``.

    Only fields whose uppercase name appears in
    :data:`~services.credential_store.APP_SECRET_KEYS` are looked up.
    All other fields return ``None`` so the next source in the chain
    handles them.
    """

    def get_field_value(
        self, field: FieldInfo, field_name: str
    ) -> tuple[Any, str, bool]:
        env_name = field_name.upper()
        if env_name not in APP_SECRET_KEYS:
            return None, field_name, False
        value = get_app_secret(env_name)
        return value, field_name, False

    def __call__(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        for field_name, field_info in self.settings_cls.model_fields.items():
            value, key, is_complex = self.get_field_value(field_info, field_name)
            if value is not None:
                d[key] = value
        return d


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            KeychainSettingsSource(settings_cls),
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    # Database
    DATABASE_URL: str = "sqlite:///./connections.db"
    STORE_RETRY_ATTEMPTS: int = 3

    # Provider gateway (all provider traffic goes through this base URL)
    PROVIDER_API_BASE_URL: str = "http://localhost:4000/providers"
    PROVIDER_API_KEY: str = ""
    PROVIDER_HTTP_TIMEOUT_SECONDS: float = 30.0
    ENABLED_PROVIDERS: str = "wealthsimple"

    # Sync jobs
    SYNC_TIMEOUT_SECONDS: float = 300.0
    SYNC_MAX_WORKERS: int = 4

    # Credential storage
    CREDENTIAL_SERVICE_NAME: str = SERVICE_NAME

    # Caller identity used when no X-User-Id header is sent
    DEFAULT_USER_ID: str = "default"

    CORS_ORIGINS: str = "http://localhost:5173"

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize LOG_LEVEL to an uppercase Python logging level."""
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"LOG_LEVEL must be one of {valid}, got {v!r}")
        return v.upper()

    @field_validator("SYNC_TIMEOUT_SECONDS", "PROVIDER_HTTP_TIMEOUT_SECONDS")
    @classmethod
    def validate_positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"timeout must be positive, got {v}")
        return v

    @field_validator("SYNC_MAX_WORKERS", "STORE_RETRY_ATTEMPTS")
    @classmethod
    def validate_at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be at least 1, got {v}")
        return v

    @property
    def enabled_providers(self) -> list[str]:
        """ENABLED_PROVIDERS split into a list of lowercase provider ids."""
        return [
            name.strip().lower()
            for name in self.ENABLED_PROVIDERS.split(",")
            if name.strip()
        ]

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    # App settings
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"


settings = Settings()
