"""Mock implementations for external services."""

import asyncio
from datetime import date, datetime, timedelta
from decimal import Decimal

from integrations.exceptions import CursorInvalidError
from integrations.provider_protocol import (
    BalanceRecord,
    InvestmentPage,
    InvestmentTransactionRecord,
    ItemStatus,
    LiabilityPayload,
    SecurityRecord,
    TransactionDelta,
    TransactionRecord,
)


class FakeClock:
    """Settable clock passed wherever services accept ``clock``."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeProvider:
    """In-memory UpstreamProvider.

    Responses are configured per credential through plain attributes;
    ``errors`` maps a method name to the exception it should raise.
    Every call is recorded in ``calls``.
    """

    def __init__(self, name: str = "plaid", supports_transactions: bool = True):
        self.provider_name = name
        self.supports_transactions = supports_transactions
        self.balances: dict[str, list[BalanceRecord]] = {}
        self.liabilities = LiabilityPayload()
        # Transaction feed pages keyed by the cursor that requests them
        self.pages: dict[str | None, TransactionDelta] = {}
        self.invalid_cursors: set[str] = set()
        self.investment_transactions: list[InvestmentTransactionRecord] = []
        self.securities: list[SecurityRecord] = []
        self.investment_errors: dict[int, Exception] = {}  # offset -> error
        self.item_status = ItemStatus()
        self.errors: dict[str, Exception] = {}
        self.balance_gate: asyncio.Event | None = None
        # Held open to park transaction and investment fetches mid-flight
        self.transaction_gate: asyncio.Event | None = None
        self.calls: list[tuple[str, tuple]] = []

    def _record(self, method: str, *args) -> None:
        self.calls.append((method, args))
        if method in self.errors:
            raise self.errors[method]

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    async def get_balances(self, access_token: str) -> list[BalanceRecord]:
        self._record("get_balances", access_token)
        if self.balance_gate is not None:
            await self.balance_gate.wait()
        return list(self.balances.get(access_token, []))

    async def get_liabilities(self, access_token: str, external_ids: list[str]) -> LiabilityPayload:
        self._record("get_liabilities", access_token, tuple(external_ids))
        return self.liabilities

    async def get_transactions_delta(
        self, access_token: str, account_external_id: str, cursor: str | None, count: int
    ) -> TransactionDelta:
        self._record("get_transactions_delta", access_token, account_external_id, cursor, count)
        if self.transaction_gate is not None:
            await self.transaction_gate.wait()
        if cursor in self.invalid_cursors:
            raise CursorInvalidError(
                "cursor not associated with access_token",
                provider_name=self.provider_name,
                status_code=400,
                error_code="INVALID_FIELD",
            )
        return self.pages.get(cursor, TransactionDelta(next_cursor=cursor or ""))

    async def get_investment_transactions(
        self,
        access_token: str,
        account_external_id: str,
        start_date: date,
        end_date: date,
        offset: int,
        count: int,
    ) -> InvestmentPage:
        self._record(
            "get_investment_transactions", access_token, account_external_id, start_date, end_date, offset, count
        )
        if self.transaction_gate is not None:
            await self.transaction_gate.wait()
        if offset in self.investment_errors:
            raise self.investment_errors[offset]
        return InvestmentPage(
            transactions=self.investment_transactions[offset:offset + count],
            securities=list(self.securities),
            total=len(self.investment_transactions),
        )

    async def get_item_status(self, access_token: str) -> ItemStatus:
        self._record("get_item_status", access_token)
        return self.item_status

    async def revoke_item(self, access_token: str) -> None:
        self._record("revoke_item", access_token)


def balance(external_id: str, current: str | None = "100.00", **kwargs) -> BalanceRecord:
    return BalanceRecord(
        external_id=external_id,
        current=Decimal(current) if current is not None else None,
        **kwargs,
    )


def txn(
    external_id: str,
    account_external_id: str,
    amount: str | None = "12.34",
    day: date = date(2025, 1, 10),
    name: str = "Coffee Shop",
    **kwargs,
) -> TransactionRecord:
    return TransactionRecord(
        external_id=external_id,
        account_external_id=account_external_id,
        date=day,
        name=name,
        amount=Decimal(amount) if amount is not None else None,
        **kwargs,
    )


def investment_txn(
    external_id: str,
    account_external_id: str,
    amount: str = "-500.00",
    day: date = date(2024, 12, 2),
    name: str = "BUY VTI",
    **kwargs,
) -> InvestmentTransactionRecord:
    kwargs.setdefault("type", "buy")
    return InvestmentTransactionRecord(
        external_id=external_id,
        account_external_id=account_external_id,
        date=day,
        name=name,
        amount=Decimal(amount),
        **kwargs,
    )
