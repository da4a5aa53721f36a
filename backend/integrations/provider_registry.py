"""Provider registry mapping a connection's provider kind to its client.

The registry is responsible for:
- Holding one client instance per provider kind
- Resolving the client for a given connection
- Listing the registered provider kinds
"""

import importlib
import logging

from integrations.provider_protocol import UpstreamProvider

logger = logging.getLogger(__name__)

# Each tuple is (provider_name, module_path, class_name).
# Adding a new provider only requires appending one entry here.
PROVIDER_DEFINITIONS: list[tuple[str, str, str]] = [
    ("plaid", "integrations.plaid_client", "PlaidClient"),
    ("coinbase", "integrations.coinbase_client", "CoinbaseClient"),
]


class ProviderRegistry:
    """Registry of upstream provider clients keyed by provider kind.

    Example:
        registry = ProviderRegistry.with_default_providers()
        provider = registry.get_provider(connection.provider)
        balances = await provider.get_balances(connection.access_token)
    """

    def __init__(self):
        self._providers: dict[str, UpstreamProvider] = {}

    @classmethod
    def with_default_providers(cls) -> "ProviderRegistry":
        """Build a registry holding every provider in ``PROVIDER_DEFINITIONS``."""
        registry = cls()
        for name, module_path, class_name in PROVIDER_DEFINITIONS:
            module = importlib.import_module(module_path)
            registry.register_provider(getattr(module, class_name)())
            logger.debug("Registered provider %s", name)
        return registry

    def register_provider(self, provider: UpstreamProvider) -> None:
        """Register a provider client.

        Args:
            provider: A client implementing the UpstreamProvider protocol.
        """
        self._providers[provider.provider_name] = provider

    def get_provider(self, name: str) -> UpstreamProvider:
        """Get a provider by kind.

        Args:
            name: The provider kind stored on the connection (e.g. ``"plaid"``).

        Returns:
            The provider client.

        Raises:
            ValueError: If the provider is not registered.
        """
        if name not in self._providers:
            raise ValueError(f"Provider '{name}' is not configured")
        return self._providers[name]

    def list_providers(self) -> list[str]:
        """List all registered provider kinds."""
        return list(self._providers.keys())
