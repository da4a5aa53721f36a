"""Test fixtures and sample data.

Factories return unsaved model instances with explicit ids so tests can add
them through either the synchronous seeding session or an async session.
"""

from datetime import date, datetime, timezone
from decimal import Decimal

from models import Account, BalanceSnapshot, Connection, Transaction
from models.connection import MANUAL_ACCESS_TOKEN, PROVIDER_PLAID, STATUS_ACTIVE
from models.utils import generate_uuid

T0 = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def make_connection(
    institution_id: str | None = "ins_1",
    institution_name: str | None = "First Platypus Bank",
    access_token: str | None = None,
    provider: str = PROVIDER_PLAID,
    status: str = STATUS_ACTIVE,
    created_at: datetime | None = None,
    **kwargs,
) -> Connection:
    connection_id = kwargs.pop("id", None) or generate_uuid()
    return Connection(
        id=connection_id,
        item_id=kwargs.pop("item_id", None) or f"item-{connection_id}",
        access_token=access_token or f"access-{connection_id}",
        institution_id=institution_id,
        institution_name=institution_name,
        provider=provider,
        status=status,
        created_at=created_at or T0,
        updated_at=created_at or T0,
        **kwargs,
    )


def make_manual_connection(**kwargs) -> Connection:
    kwargs.setdefault("institution_id", None)
    kwargs.setdefault("institution_name", "Manual")
    return make_connection(access_token=MANUAL_ACCESS_TOKEN, **kwargs)


def make_account(
    connection: Connection,
    external_id: str | None = None,
    name: str = "Plaid Checking",
    type: str = "depository",
    subtype: str | None = "checking",
    mask: str | None = "0000",
    created_at: datetime | None = None,
    **kwargs,
) -> Account:
    account_id = kwargs.pop("id", None) or generate_uuid()
    return Account(
        id=account_id,
        connection_id=connection.id,
        external_id=external_id or f"ext-{account_id}",
        name=name,
        type=type,
        subtype=subtype,
        mask=mask,
        hidden=kwargs.pop("hidden", False),
        archived=kwargs.pop("archived", False),
        invert_transactions=kwargs.pop("invert_transactions", False),
        created_at=created_at or T0,
        updated_at=created_at or T0,
        **kwargs,
    )


def make_snapshot(account: Account, captured_at: datetime, current: str = "100.00") -> BalanceSnapshot:
    return BalanceSnapshot(
        id=generate_uuid(),
        account_id=account.id,
        current=Decimal(current),
        captured_at=captured_at,
    )


def make_transaction(
    account: Account,
    external_id: str,
    amount: str = "10.00",
    day: date = date(2025, 1, 1),
    name: str = "Purchase",
) -> Transaction:
    return Transaction(
        id=generate_uuid(),
        account_id=account.id,
        external_id=external_id,
        date=day,
        name=name,
        amount=Decimal(amount),
        pending=False,
    )
