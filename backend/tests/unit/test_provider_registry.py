"""Unit tests for the provider registry."""

import pytest

from integrations.coinbase_client import CoinbaseClient
from integrations.plaid_client import PlaidClient
from integrations.provider_registry import PROVIDER_DEFINITIONS, ProviderRegistry
from tests.fixtures.mocks import FakeProvider


class TestProviderRegistry:
    """Tests for ProviderRegistry."""

    def test_empty_registry(self):
        """A new registry has no providers."""
        assert ProviderRegistry().list_providers() == []

    def test_register_provider(self):
        registry = ProviderRegistry()
        provider = FakeProvider("plaid")

        registry.register_provider(provider)

        assert registry.list_providers() == ["plaid"]
        assert registry.get_provider("plaid") is provider

    def test_register_multiple_providers(self):
        registry = ProviderRegistry()
        registry.register_provider(FakeProvider("plaid"))
        registry.register_provider(FakeProvider("coinbase", supports_transactions=False))

        assert set(registry.list_providers()) == {"plaid", "coinbase"}

    def test_get_provider_not_found(self):
        """Getting an unregistered provider raises ValueError."""
        with pytest.raises(ValueError) as exc_info:
            ProviderRegistry().get_provider("teller")

        assert "teller" in str(exc_info.value)
        assert "not configured" in str(exc_info.value)

    def test_provider_replaces_existing(self):
        """Registering a provider with same name replaces existing."""
        registry = ProviderRegistry()
        first = FakeProvider("plaid")
        second = FakeProvider("plaid")

        registry.register_provider(first)
        registry.register_provider(second)

        assert registry.get_provider("plaid") is second
        assert len(registry.list_providers()) == 1


class TestDefaultProviders:
    def test_definitions_cover_both_providers(self):
        assert [name for name, _, _ in PROVIDER_DEFINITIONS] == ["plaid", "coinbase"]

    def test_with_default_providers_builds_clients(self):
        registry = ProviderRegistry.with_default_providers()

        assert isinstance(registry.get_provider("plaid"), PlaidClient)
        assert isinstance(registry.get_provider("coinbase"), CoinbaseClient)
        assert registry.get_provider("plaid").supports_transactions is True
        assert registry.get_provider("coinbase").supports_transactions is False
