"""Plaid API client.

This module implements the UpstreamProvider protocol for Plaid via the
plaid-python SDK: balances, batched liabilities, the cursor-based
transaction feed, paginated investment transactions, item status and
item removal.

The SDK is synchronous, so every call runs in a worker thread and is
bounded by ``UPSTREAM_TIMEOUT_SECONDS``. Responses are converted into
the typed records of :mod:`integrations.provider_protocol` before they
leave this module.
"""

import asyncio
import json
import logging
from datetime import date

import urllib3
from plaid import ApiException, Environment
from plaid.api.plaid_api import PlaidApi
from plaid.api_client import ApiClient
from plaid.configuration import Configuration
from plaid.model.accounts_balance_get_request import AccountsBalanceGetRequest
from plaid.model.investments_transactions_get_request import InvestmentsTransactionsGetRequest
from plaid.model.investments_transactions_get_request_options import InvestmentsTransactionsGetRequestOptions
from plaid.model.item_get_request import ItemGetRequest
from plaid.model.item_remove_request import ItemRemoveRequest
from plaid.model.liabilities_get_request import LiabilitiesGetRequest
from plaid.model.liabilities_get_request_options import LiabilitiesGetRequestOptions
from plaid.model.transactions_sync_request import TransactionsSyncRequest
from plaid.model.transactions_sync_request_options import TransactionsSyncRequestOptions

from config import settings
from integrations.exceptions import (
    CursorInvalidError,
    ProviderAPIError,
    ProviderAuthError,
    ProviderConnectionError,
    ProviderDataError,
    ProviderError,
)
from integrations.parsing_utils import parse_date, to_decimal
from integrations.provider_protocol import (
    DEAD_CREDENTIAL_CODES,
    BalanceRecord,
    CreditLiability,
    InvestmentPage,
    InvestmentTransactionRecord,
    ItemStatus,
    LiabilityPayload,
    MortgageLiability,
    SecurityRecord,
    StudentLoanLiability,
    TransactionDelta,
    TransactionRecord,
)

logger = logging.getLogger(__name__)

PROVIDER_NAME = "plaid"

# Map PLAID_ENVIRONMENT setting to SDK host URLs.
# Plaid's Development environment is deprecated; only sandbox and production
# are supported.
_ENVIRONMENT_MAP: dict[str, str] = {
    "sandbox": Environment.Sandbox,
    "production": Environment.Production,
}

# Error codes Plaid returns when a /transactions/sync cursor is rejected
_CURSOR_ERROR_CODES = frozenset({"INVALID_FIELD", "INVALID_INPUT"})


def _as_dict(response) -> dict:
    """Convert an SDK response model to a plain dict."""
    if hasattr(response, "to_dict"):
        return response.to_dict()
    return dict(response)


def _str_or_none(value) -> str | None:
    if value is None:
        return None
    return str(value)


class PlaidClient:
    """Wrapper around the Plaid API.

    Implements the UpstreamProvider protocol. Access tokens are passed
    per call since each linked institution (Item) has its own.
    """

    def __init__(
        self,
        client_id: str | None = None,
        secret: str | None = None,
        environment: str | None = None,
        timeout: float | None = None,
    ):
        self._client_id = client_id or settings.PLAID_CLIENT_ID
        self._secret = secret or settings.PLAID_SECRET
        self._environment = environment or settings.PLAID_ENVIRONMENT
        self._timeout = timeout or settings.UPSTREAM_TIMEOUT_SECONDS

        # Lazily created on first use
        self._api: PlaidApi | None = None

    def _get_api(self) -> PlaidApi:
        """Return (and cache) a PlaidApi instance."""
        if self._api is None:
            env_key = self._environment.lower()
            host = _ENVIRONMENT_MAP.get(env_key)
            if host is None:
                logger.warning(
                    "Unknown PLAID_ENVIRONMENT=%r, falling back to sandbox. "
                    "Valid values: sandbox, production",
                    self._environment,
                )
                host = Environment.Sandbox
            logger.info(
                "Plaid API client: environment=%s, host=%s, client_id=<configured>",
                env_key,
                host,
            )
            configuration = Configuration(
                host=host,
                api_key={
                    "clientId": self._client_id,
                    "secret": self._secret,
                },
            )
            api_client = ApiClient(configuration)
            self._api = PlaidApi(api_client)
        return self._api

    @property
    def provider_name(self) -> str:
        """Return the provider kind stored on connections."""
        return PROVIDER_NAME

    @property
    def supports_transactions(self) -> bool:
        return True

    def is_configured(self) -> bool:
        """Check if Plaid credentials are configured."""
        return bool(self._client_id) and bool(self._secret)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _call(self, endpoint: str, method_name: str, request) -> dict:
        """Run one SDK call in a worker thread with a timeout.

        Args:
            endpoint: Plaid endpoint path, used in error messages.
            method_name: Name of the PlaidApi method to invoke.
            request: The SDK request model.

        Returns:
            The response converted to a dict.

        Raises:
            ProviderError: A typed subclass describing the failure.
        """
        method = getattr(self._get_api(), method_name)
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(method, request), timeout=self._timeout
            )
        except TimeoutError as exc:
            raise ProviderConnectionError(
                f"Plaid {endpoint} timed out after {self._timeout:g}s",
                provider_name=PROVIDER_NAME,
            ) from exc
        except ApiException as exc:
            raise self._map_plaid_error(exc, endpoint) from exc
        except urllib3.exceptions.HTTPError as exc:
            raise ProviderConnectionError(
                f"Plaid {endpoint} connection failed: {exc}",
                provider_name=PROVIDER_NAME,
            ) from exc
        return _as_dict(response)

    # ------------------------------------------------------------------
    # UpstreamProvider protocol
    # ------------------------------------------------------------------

    async def get_balances(self, access_token: str) -> list[BalanceRecord]:
        """Fetch real-time balances via ``/accounts/balance/get``."""
        data = await self._call(
            "/accounts/balance/get",
            "accounts_balance_get",
            AccountsBalanceGetRequest(access_token=access_token),
        )
        accounts = data.get("accounts")
        if not isinstance(accounts, list):
            raise ProviderDataError(
                "Invalid response from Plaid: accounts missing",
                provider_name=PROVIDER_NAME,
            )

        records: list[BalanceRecord] = []
        for acct in accounts:
            external_id = acct.get("account_id")
            if not external_id:
                continue
            balances = acct.get("balances") or {}
            records.append(BalanceRecord(
                external_id=external_id,
                current=to_decimal(balances.get("current")),
                available=to_decimal(balances.get("available")),
                limit=to_decimal(balances.get("limit")),
                iso_currency_code=balances.get("iso_currency_code"),
            ))
        return records

    async def get_liabilities(
        self, access_token: str, external_ids: list[str]
    ) -> LiabilityPayload:
        """Fetch liabilities for the given accounts in one ``/liabilities/get`` call."""
        data = await self._call(
            "/liabilities/get",
            "liabilities_get",
            LiabilitiesGetRequest(
                access_token=access_token,
                options=LiabilitiesGetRequestOptions(account_ids=list(external_ids)),
            ),
        )
        liabilities = data.get("liabilities") or {}
        return LiabilityPayload(
            credit=[self._map_credit(c) for c in liabilities.get("credit") or [] if c.get("account_id")],
            mortgage=[self._map_mortgage(m) for m in liabilities.get("mortgage") or [] if m.get("account_id")],
            student=[self._map_student(s) for s in liabilities.get("student") or [] if s.get("account_id")],
        )

    async def get_transactions_delta(
        self, access_token: str, account_external_id: str, cursor: str | None, count: int
    ) -> TransactionDelta:
        """Fetch one page of ``/transactions/sync`` scoped to one account.

        Raises:
            CursorInvalidError: If Plaid rejects the cursor.
        """
        kwargs = {
            "access_token": access_token,
            "count": count,
            "options": TransactionsSyncRequestOptions(account_id=account_external_id),
        }
        if cursor:
            kwargs["cursor"] = cursor
        data = await self._call(
            "/transactions/sync",
            "transactions_sync",
            TransactionsSyncRequest(**kwargs),
        )
        return TransactionDelta(
            added=self._map_transactions(data.get("added")),
            modified=self._map_transactions(data.get("modified")),
            removed=[
                r.get("transaction_id")
                for r in data.get("removed") or []
                if r.get("transaction_id")
            ],
            next_cursor=data.get("next_cursor") or "",
            has_more=bool(data.get("has_more")),
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
        """Fetch one page of ``/investments/transactions/get``."""
        data = await self._call(
            "/investments/transactions/get",
            "investments_transactions_get",
            InvestmentsTransactionsGetRequest(
                access_token=access_token,
                start_date=start_date,
                end_date=end_date,
                options=InvestmentsTransactionsGetRequestOptions(
                    account_ids=[account_external_id], offset=offset, count=count
                ),
            ),
        )

        transactions: list[InvestmentTransactionRecord] = []
        for txn in data.get("investment_transactions") or []:
            record = self._map_investment_transaction(txn)
            if record:
                transactions.append(record)

        securities = [
            SecurityRecord(
                security_id=sec["security_id"],
                name=sec.get("name"),
                ticker_symbol=sec.get("ticker_symbol"),
                type=_str_or_none(sec.get("type")),
                close_price=to_decimal(sec.get("close_price")),
            )
            for sec in data.get("securities") or []
            if sec.get("security_id")
        ]

        return InvestmentPage(
            transactions=transactions,
            securities=securities,
            total=int(data.get("total_investment_transactions") or 0),
        )

    async def get_item_status(self, access_token: str) -> ItemStatus:
        """Check the Item via ``/item/get``.

        A dead credential is reported as a status rather than raised, so
        callers can mark the connection disconnected themselves.
        """
        try:
            data = await self._call("/item/get", "item_get", ItemGetRequest(access_token=access_token))
        except ProviderAuthError as exc:
            return ItemStatus(error_code=exc.error_code or "INVALID_ACCESS_TOKEN", error_message=str(exc))

        error = (data.get("item") or {}).get("error")
        if not error:
            return ItemStatus()
        return ItemStatus(
            error_code=error.get("error_code") or "UNKNOWN",
            error_message=error.get("error_message"),
        )

    async def revoke_item(self, access_token: str) -> None:
        """Revoke an access token by calling Plaid's ``/item/remove`` endpoint."""
        await self._call("/item/remove", "item_remove", ItemRemoveRequest(access_token=access_token))

    # ------------------------------------------------------------------
    # Payload mapping
    # ------------------------------------------------------------------

    def _map_transactions(self, raw: list | None) -> list[TransactionRecord]:
        records = []
        for txn in raw or []:
            record = self._map_transaction(txn)
            if record:
                records.append(record)
        return records

    @staticmethod
    def _map_transaction(txn: dict) -> TransactionRecord | None:
        """Map a ``/transactions/sync`` entry to a TransactionRecord.

        The amount is passed through ``to_decimal`` so NaN and non-numeric
        amounts become None instead of failing the page.
        """
        external_id = txn.get("transaction_id")
        account_id = txn.get("account_id")
        txn_date = parse_date(txn.get("date"))
        if not external_id or not account_id or txn_date is None:
            return None

        categories = txn.get("category") or []
        pfc = txn.get("personal_finance_category") or {}

        extra = {}
        for key in ("location", "payment_meta"):
            if txn.get(key):
                extra[key] = dict(txn[key])

        return TransactionRecord(
            external_id=external_id,
            account_external_id=account_id,
            date=txn_date,
            name=txn.get("name") or txn.get("merchant_name") or "",
            amount=to_decimal(txn.get("amount")),
            category=categories[0] if categories else None,
            merchant_name=txn.get("merchant_name"),
            pending=bool(txn.get("pending")),
            iso_currency_code=txn.get("iso_currency_code"),
            payment_channel=_str_or_none(txn.get("payment_channel")),
            personal_finance_category=pfc.get("primary"),
            extra=extra or None,
        )

    @staticmethod
    def _map_investment_transaction(txn: dict) -> InvestmentTransactionRecord | None:
        external_id = txn.get("investment_transaction_id")
        account_id = txn.get("account_id")
        txn_date = parse_date(txn.get("date"))
        if not external_id or not account_id or txn_date is None:
            return None
        return InvestmentTransactionRecord(
            external_id=external_id,
            account_external_id=account_id,
            date=txn_date,
            name=txn.get("name") or "",
            amount=to_decimal(txn.get("amount")),
            type=_str_or_none(txn.get("type")),
            subtype=_str_or_none(txn.get("subtype")),
            security_id=txn.get("security_id"),
            quantity=to_decimal(txn.get("quantity")),
            price=to_decimal(txn.get("price")),
            fees=to_decimal(txn.get("fees")),
            iso_currency_code=txn.get("iso_currency_code"),
        )

    @staticmethod
    def _map_credit(raw: dict) -> CreditLiability:
        return CreditLiability(
            external_id=raw["account_id"],
            last_statement_balance=to_decimal(raw.get("last_statement_balance")),
            minimum_payment_amount=to_decimal(raw.get("minimum_payment_amount")),
            next_payment_due_date=parse_date(raw.get("next_payment_due_date")),
            last_payment_date=parse_date(raw.get("last_payment_date")),
            last_payment_amount=to_decimal(raw.get("last_payment_amount")),
        )

    @staticmethod
    def _map_mortgage(raw: dict) -> MortgageLiability:
        return MortgageLiability(
            external_id=raw["account_id"],
            next_monthly_payment=to_decimal(raw.get("next_monthly_payment")),
            next_payment_due_date=parse_date(raw.get("next_payment_due_date")),
            last_payment_date=parse_date(raw.get("last_payment_date")),
            last_payment_amount=to_decimal(raw.get("last_payment_amount")),
            origination_date=parse_date(raw.get("origination_date")),
            origination_principal_amount=to_decimal(raw.get("origination_principal_amount")),
        )

    @staticmethod
    def _map_student(raw: dict) -> StudentLoanLiability:
        return StudentLoanLiability(
            external_id=raw["account_id"],
            minimum_payment_amount=to_decimal(raw.get("minimum_payment_amount")),
            next_payment_due_date=parse_date(raw.get("next_payment_due_date")),
            last_payment_date=parse_date(raw.get("last_payment_date")),
            last_payment_amount=to_decimal(raw.get("last_payment_amount")),
            origination_date=parse_date(raw.get("origination_date")),
            origination_principal_amount=to_decimal(raw.get("origination_principal_amount")),
        )

    # ------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _map_plaid_error(exc: ApiException, endpoint: str) -> ProviderError:
        """Map a Plaid ApiException to a typed provider exception."""
        status = exc.status or 0
        message = f"Plaid {endpoint} failed: {exc.reason or exc}"

        # Try to extract error_code from the body
        error_code = ""
        try:
            body = json.loads(exc.body) if exc.body else {}
            error_code = body.get("error_code", "") or ""
            error_message = body.get("error_message", "")
            if error_message:
                message = f"Plaid error ({error_code}): {error_message}"
        except (ValueError, TypeError, AttributeError):
            pass

        if error_code in DEAD_CREDENTIAL_CODES or status in (401, 403):
            return ProviderAuthError(
                message, provider_name=PROVIDER_NAME, error_code=error_code or None
            )
        if error_code in _CURSOR_ERROR_CODES and "cursor" in message.lower():
            return CursorInvalidError(
                message,
                provider_name=PROVIDER_NAME,
                status_code=status or 400,
                error_code=error_code,
            )
        return ProviderAPIError(
            message,
            provider_name=PROVIDER_NAME,
            status_code=status or None,
            error_code=error_code or None,
        )
