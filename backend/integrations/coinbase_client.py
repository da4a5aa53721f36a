"""Coinbase API client.

This module implements the UpstreamProvider protocol for Coinbase
connections linked through OAuth. Each connection stores its own bearer
token, so the client is stateless apart from configuration. Only
balances are exposed; Coinbase connections have no transaction feed and
no liabilities.
"""

import logging
from datetime import date
from decimal import Decimal

import httpx

from config import settings
from integrations.exceptions import (
    ProviderAPIError,
    ProviderAuthError,
    ProviderConnectionError,
    ProviderDataError,
)
from integrations.parsing_utils import to_decimal
from integrations.provider_protocol import (
    BalanceRecord,
    InvestmentPage,
    ItemStatus,
    LiabilityPayload,
    TransactionDelta,
)

logger = logging.getLogger(__name__)

PROVIDER_NAME = "coinbase"

# Balances are reported in USD; these currencies convert 1:1
USD_EQUIVALENTS = frozenset({"USD", "USDC", "USDT"})

# Bound on pagination so a misbehaving next_uri cannot loop forever
_MAX_PAGES = 50


class CoinbaseClient:
    """Wrapper around the Coinbase v2 REST API using OAuth bearer tokens."""

    def __init__(
        self,
        base_url: str | None = None,
        revoke_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: API root (defaults to settings).
            revoke_url: OAuth token revocation endpoint (defaults to settings).
            timeout: Per-request timeout in seconds (defaults to settings).
            transport: Optional httpx transport, used by tests to stub responses.
        """
        self._base_url = base_url or settings.COINBASE_API_BASE_URL
        self._revoke_url = revoke_url or settings.COINBASE_REVOKE_URL
        self._timeout = timeout or settings.UPSTREAM_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def provider_name(self) -> str:
        return PROVIDER_NAME

    @property
    def supports_transactions(self) -> bool:
        return False

    def _client(self, access_token: str | None = None) -> httpx.AsyncClient:
        headers = {"CB-VERSION": "2024-01-01"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _get_json(self, client: httpx.AsyncClient, path: str, **kwargs) -> dict:
        """GET ``path`` and return the decoded body, mapping failures to provider errors."""
        try:
            response = await client.get(path, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status in (401, 403):
                raise ProviderAuthError(
                    f"Coinbase authentication failed (HTTP {status})",
                    provider_name=PROVIDER_NAME,
                    error_code="INVALID_ACCESS_TOKEN",
                ) from exc
            raise ProviderAPIError(
                f"Coinbase API error (HTTP {status}) on {path}",
                provider_name=PROVIDER_NAME,
                status_code=status,
            ) from exc
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise ProviderConnectionError(
                f"Coinbase connection failed: {exc}",
                provider_name=PROVIDER_NAME,
            ) from exc
        except ValueError as exc:
            raise ProviderDataError(
                f"Coinbase returned malformed JSON for {path}",
                provider_name=PROVIDER_NAME,
            ) from exc

    async def _usd_rate(self, client: httpx.AsyncClient, currency: str, rates: dict[str, Decimal]) -> Decimal:
        """Return the USD spot price of ``currency``, memoized per refresh."""
        currency = currency.upper()
        if currency in USD_EQUIVALENTS:
            return Decimal("1")
        if currency not in rates:
            body = await self._get_json(client, f"/v2/prices/{currency}-USD/spot")
            rate = to_decimal((body.get("data") or {}).get("amount"))
            if rate is None:
                raise ProviderDataError(
                    f"Coinbase returned no spot price for {currency}",
                    provider_name=PROVIDER_NAME,
                )
            rates[currency] = rate
        return rates[currency]

    async def get_balances(self, access_token: str) -> list[BalanceRecord]:
        """Fetch every wallet and convert its balance to USD."""
        records: list[BalanceRecord] = []
        rates: dict[str, Decimal] = {}
        async with self._client(access_token) as client:
            path: str | None = "/v2/accounts"
            params: dict | None = {"limit": 100}
            for _ in range(_MAX_PAGES):
                if not path:
                    break
                body = await self._get_json(client, path, params=params)
                for wallet in body.get("data") or []:
                    external_id = wallet.get("id")
                    balance = wallet.get("balance") or {}
                    amount = to_decimal(balance.get("amount"))
                    if not external_id or amount is None:
                        continue
                    rate = await self._usd_rate(client, balance.get("currency") or "USD", rates)
                    usd_value = amount * rate
                    records.append(BalanceRecord(
                        external_id=external_id,
                        current=usd_value,
                        available=usd_value,
                        iso_currency_code="USD",
                    ))
                path = (body.get("pagination") or {}).get("next_uri")
                params = None

        logger.debug("Coinbase: %d wallet balances fetched", len(records))
        return records

    async def get_liabilities(self, access_token: str, external_ids: list[str]) -> LiabilityPayload:
        """Coinbase wallets carry no liabilities."""
        return LiabilityPayload()

    async def get_transactions_delta(
        self, access_token: str, account_external_id: str, cursor: str | None, count: int
    ) -> TransactionDelta:
        raise ProviderAPIError(
            "Coinbase connections do not provide a transaction feed",
            provider_name=PROVIDER_NAME,
        )

    async def get_investment_transactions(
        self,
        access_token: str,
        account_external_id: str,
        start_date: date,
        end_date: date,
        offset: int,
        count: int,
    ) -> InvestmentPage:
        raise ProviderAPIError(
            "Coinbase connections do not provide investment transactions",
            provider_name=PROVIDER_NAME,
        )

    async def get_item_status(self, access_token: str) -> ItemStatus:
        """Probe the token with ``/v2/user``."""
        async with self._client(access_token) as client:
            try:
                await self._get_json(client, "/v2/user")
            except ProviderAuthError as exc:
                return ItemStatus(error_code=exc.error_code, error_message=str(exc))
        return ItemStatus()

    async def revoke_item(self, access_token: str) -> None:
        """Revoke the OAuth token."""
        async with self._client() as client:
            try:
                response = await client.post(self._revoke_url, data={"token": access_token})
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise ProviderAPIError(
                    f"Coinbase token revocation failed (HTTP {exc.response.status_code})",
                    provider_name=PROVIDER_NAME,
                    status_code=exc.response.status_code,
                ) from exc
            except (httpx.ConnectError, httpx.TimeoutException) as exc:
                raise ProviderConnectionError(
                    f"Coinbase connection failed: {exc}",
                    provider_name=PROVIDER_NAME,
                ) from exc
