"""Unit tests for the provider registry."""

from unittest.mock import patch

import pytest

from integrations.http_provider_client import HttpProviderClient
from integrations.provider_registry import ProviderRegistry, get_provider_registry
from tests.fixtures.mocks import MockProviderClient


class TestProviderRegistry:
    """Tests for ProviderRegistry."""

    def test_empty_registry(self):
        """A new registry has no providers."""
        registry = ProviderRegistry()
        assert registry.list_providers() == []

    def test_register_provider(self):
        registry = ProviderRegistry()
        provider = MockProviderClient(name="acme")

        registry.register_provider(provider)

        assert registry.list_providers() == ["acme"]
        assert registry.get_provider("acme") is provider
        assert registry.is_configured("acme") is True

    def test_get_unknown_provider_raises(self):
        registry = ProviderRegistry()
        with pytest.raises(ValueError, match="not configured"):
            registry.get_provider("acme")
        assert registry.is_configured("acme") is False

    def test_register_replaces_same_name(self):
        registry = ProviderRegistry()
        first = MockProviderClient(name="acme")
        second = MockProviderClient(name="acme")

        registry.register_provider(first)
        registry.register_provider(second)

        assert registry.get_provider("acme") is second
        assert registry.list_providers() == ["acme"]


class TestInitializeDefaultProviders:
    def test_registers_enabled_providers(self):
        with (
            patch("integrations.provider_registry.settings") as mock_settings,
            patch("integrations.http_provider_client.settings") as client_settings,
        ):
            mock_settings.enabled_providers = ["acme", "globex"]
            client_settings.PROVIDER_API_BASE_URL = "https://gateway.example.com"
            client_settings.PROVIDER_API_KEY = ""
            client_settings.PROVIDER_HTTP_TIMEOUT_SECONDS = 10.0

            registry = ProviderRegistry()
            registry.initialize_default_providers()

        assert registry.list_providers() == ["acme", "globex"]
        assert isinstance(registry.get_provider("acme"), HttpProviderClient)

    def test_skips_unconfigured_gateway(self):
        with (
            patch("integrations.provider_registry.settings") as mock_settings,
            patch("integrations.http_provider_client.settings") as client_settings,
        ):
            mock_settings.enabled_providers = ["acme"]
            client_settings.PROVIDER_API_BASE_URL = ""
            client_settings.PROVIDER_API_KEY = ""
            client_settings.PROVIDER_HTTP_TIMEOUT_SECONDS = 10.0

            registry = get_provider_registry()

        assert registry.list_providers() == []

    def test_one_failure_does_not_block_others(self):
        real_init = HttpProviderClient.__init__

        def flaky_init(self, provider_name, *args, **kwargs):
            if provider_name == "broken":
                raise RuntimeError("bad config")
            real_init(self, provider_name, *args, **kwargs)

        with (
            patch("integrations.provider_registry.settings") as mock_settings,
            patch.object(HttpProviderClient, "__init__", flaky_init),
        ):
            mock_settings.enabled_providers = ["broken", "acme"]
            registry = ProviderRegistry()
            registry.initialize_default_providers()

        assert "broken" not in registry.list_providers()
