"""Provider protocol definitions for upstream aggregators.

Provider payloads are converted into these typed records at the client
boundary, so the sync services never handle raw provider dicts. Any new
provider integration must implement :class:`UpstreamProvider`.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Literal, Protocol


@dataclass
class BalanceRecord:
    """Current balance of one upstream account."""

    external_id: str  # Provider's account ID
    current: Decimal | None
    available: Decimal | None = None
    limit: Decimal | None = None
    iso_currency_code: str | None = None


@dataclass
class CreditLiability:
    """Credit card liability details."""

    external_id: str
    last_statement_balance: Decimal | None = None
    minimum_payment_amount: Decimal | None = None
    next_payment_due_date: date | None = None
    last_payment_date: date | None = None
    last_payment_amount: Decimal | None = None
    kind: Literal["credit"] = "credit"


@dataclass
class MortgageLiability:
    """Mortgage liability details."""

    external_id: str
    next_monthly_payment: Decimal | None = None
    next_payment_due_date: date | None = None
    last_payment_date: date | None = None
    last_payment_amount: Decimal | None = None
    origination_date: date | None = None
    origination_principal_amount: Decimal | None = None
    kind: Literal["mortgage"] = "mortgage"


@dataclass
class StudentLoanLiability:
    """Student loan liability details."""

    external_id: str
    minimum_payment_amount: Decimal | None = None
    next_payment_due_date: date | None = None
    last_payment_date: date | None = None
    last_payment_amount: Decimal | None = None
    origination_date: date | None = None
    origination_principal_amount: Decimal | None = None
    kind: Literal["student"] = "student"


Liability = CreditLiability | MortgageLiability | StudentLoanLiability


@dataclass
class LiabilityPayload:
    """Batched liability data for the accounts of one connection."""

    credit: list[CreditLiability] = field(default_factory=list)
    mortgage: list[MortgageLiability] = field(default_factory=list)
    student: list[StudentLoanLiability] = field(default_factory=list)

    def for_account(self, external_id: str) -> Liability | None:
        """Return the liability entry for an account, if the payload has one."""
        for entries in (self.credit, self.mortgage, self.student):
            for entry in entries:
                if entry.external_id == external_id:
                    return entry
        return None


@dataclass
class TransactionRecord:
    """A transaction as reported by the provider's delta feed.

    ``amount`` is None when the provider sent a missing or non-finite
    amount; such records are dropped by the sync engine.
    """

    external_id: str
    account_external_id: str
    date: date
    name: str
    amount: Decimal | None
    category: str | None = None
    merchant_name: str | None = None
    pending: bool = False
    iso_currency_code: str | None = None
    payment_channel: str | None = None
    personal_finance_category: str | None = None
    extra: dict | None = None  # location, payment_meta copied verbatim


@dataclass
class TransactionDelta:
    """One page of the cursor-based transaction feed."""

    added: list[TransactionRecord] = field(default_factory=list)
    modified: list[TransactionRecord] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)  # transaction external IDs
    next_cursor: str = ""
    has_more: bool = False


@dataclass
class SecurityRecord:
    """A security referenced by investment transactions."""

    security_id: str
    name: str | None = None
    ticker_symbol: str | None = None
    type: str | None = None
    close_price: Decimal | None = None


@dataclass
class InvestmentTransactionRecord:
    """An investment transaction (buy, sell, dividend, fee, ...)."""

    external_id: str
    account_external_id: str
    date: date
    name: str
    amount: Decimal | None
    type: str | None = None
    subtype: str | None = None
    security_id: str | None = None
    quantity: Decimal | None = None
    price: Decimal | None = None
    fees: Decimal | None = None
    iso_currency_code: str | None = None


@dataclass
class InvestmentPage:
    """One offset/count page of investment transactions over a date window."""

    transactions: list[InvestmentTransactionRecord] = field(default_factory=list)
    securities: list[SecurityRecord] = field(default_factory=list)
    total: int = 0


# Item error codes meaning the credential is dead until the user re-links
DEAD_CREDENTIAL_CODES: frozenset[str] = frozenset(
    {
        "ITEM_LOGIN_REQUIRED",
        "INVALID_ACCESS_TOKEN",
        "ITEM_NOT_FOUND",
        "ACCESS_NOT_GRANTED",
        "USER_PERMISSION_REVOKED",
        "ITEM_LOCKED",
    }
)


@dataclass
class ItemStatus:
    """Lightweight credential health check result."""

    error_code: str | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_code is None

    @property
    def credential_dead(self) -> bool:
        """True when the provider reports the credential revoked or expired."""
        return self.error_code in DEAD_CREDENTIAL_CODES


class ErrorCategory(str, Enum):
    """Category of a per-account sync error."""

    CONNECTION = "connection"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    DATA = "data"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class UpstreamProvider(Protocol):
    """Protocol that all upstream provider clients must implement.

    Every method is awaited and bounded by the client's own timeout.
    Failures are raised as :mod:`integrations.exceptions` types.
    """

    @property
    def provider_name(self) -> str:
        """Return the provider kind stored on connections (e.g. ``"plaid"``)."""
        ...

    @property
    def supports_transactions(self) -> bool:
        """Whether the provider exposes a transaction feed."""
        ...

    async def get_balances(self, access_token: str) -> list[BalanceRecord]:
        """Fetch current balances for every account under the credential."""
        ...

    async def get_liabilities(
        self, access_token: str, external_ids: list[str]
    ) -> LiabilityPayload:
        """Fetch a batched liability payload for the given accounts."""
        ...

    async def get_transactions_delta(
        self, access_token: str, account_external_id: str, cursor: str | None, count: int
    ) -> TransactionDelta:
        """Fetch the next page of added/modified/removed transactions for one account.

        The cursor belongs to that account's feed.

        Raises:
            CursorInvalidError: If the cursor is not associated with the credential.
        """
        ...

    async def get_investment_transactions(
        self,
        access_token: str,
        account_external_id: str,
        start_date: date,
        end_date: date,
        offset: int,
        count: int,
    ) -> InvestmentPage:
        """Fetch one page of an account's investment transactions within a date window."""
        ...

    async def get_item_status(self, access_token: str) -> ItemStatus:
        """Check whether the credential is still usable."""
        ...

    async def revoke_item(self, access_token: str) -> None:
        """Revoke the credential upstream."""
        ...
