"""Upstream aggregator integrations.

This package contains:
- Provider protocol: typed payloads and the interface every client implements
- Provider registry: resolves a connection's provider kind to its client
- Plaid client: balances, liabilities, transaction feeds, investment history
- Coinbase client: balances for crypto wallets (no transaction feed)
"""

from integrations.provider_protocol import ErrorCategory, UpstreamProvider
from integrations.provider_registry import ProviderRegistry

__all__ = [
    "ErrorCategory",
    "ProviderRegistry",
    "UpstreamProvider",
]
