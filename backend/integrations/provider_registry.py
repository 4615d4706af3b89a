"""Provider registry for managing external financial-data providers.

The registry is responsible for:
- Initializing and tracking available providers
- Providing access to specific providers by name
- Listing all configured providers
"""

import logging

from config import settings
from integrations.http_provider_client import HttpProviderClient
from integrations.provider_protocol import ProviderClient

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Registry for managing provider clients.

    Example:
        registry = ProviderRegistry()
        registry.initialize_default_providers()
        if registry.is_configured("wealthsimple"):
            provider = registry.get_provider("wealthsimple")
            session = provider.authenticate(credentials)
    """

    def __init__(self):
        self._providers: dict[str, ProviderClient] = {}

    def register_provider(self, provider: ProviderClient) -> None:
        """Register a provider client under its ``provider_name``."""
        self._providers[provider.provider_name] = provider

    def get_provider(self, name: str) -> ProviderClient:
        """Get a provider by name.

        Raises:
            ValueError: If the provider is not registered/configured.
        """
        if name not in self._providers:
            raise ValueError(f"Provider '{name}' is not configured")
        return self._providers[name]

    def list_providers(self) -> list[str]:
        """List all registered provider names."""
        return list(self._providers.keys())

    def is_configured(self, name: str) -> bool:
        """Check if a provider is registered and configured."""
        return name in self._providers

    def initialize_default_providers(self) -> None:
        """Register a gateway client for every provider in ENABLED_PROVIDERS.

        Providers whose client reports it is not configured are skipped so
        one bad entry never prevents the rest from initializing.
        """
        for name in settings.enabled_providers:
            self._try_init_provider(name)

        names = self.list_providers()
        if names:
            logger.info("Active providers: %s", ", ".join(names))
        else:
            logger.warning("No providers configured")

    def _try_init_provider(self, name: str) -> None:
        try:
            instance = HttpProviderClient(name)
            if instance.is_configured():
                self.register_provider(instance)
                logger.info("Provider registered: %s", name)
            else:
                logger.debug("Provider skipped (not configured): %s", name)
        except Exception:
            logger.warning(
                "Provider failed to initialize: %s", name, exc_info=True
            )


def get_provider_registry() -> ProviderRegistry:
    """Create and return a provider registry with default providers."""
    registry = ProviderRegistry()
    registry.initialize_default_providers()
    return registry
