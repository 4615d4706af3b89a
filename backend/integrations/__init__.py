"""External API integrations.

This package contains:
- Provider protocol: Common interface for financial-data providers
- Provider exceptions: Typed error hierarchy shared by all clients
- HTTP provider client: Gateway-backed implementation of the protocol
- Provider registry: Maps provider names to configured clients
"""

from integrations.provider_protocol import (
    InteractiveCredentials,
    ProviderAccount,
    ProviderClient,
    ProviderSession,
)

__all__ = [
    "InteractiveCredentials",
    "ProviderAccount",
    "ProviderClient",
    "ProviderSession",
]
