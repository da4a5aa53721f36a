"""Result summaries returned by the refresh and sync services."""

from dataclasses import dataclass, field
from datetime import datetime

from integrations.exceptions import (
    ProviderAPIError,
    ProviderAuthError,
    ProviderConnectionError,
    ProviderDataError,
)
from integrations.provider_protocol import ErrorCategory
from services.account_eligibility import AccountValidationError

STATUS_OK = "ok"
STATUS_RATE_LIMITED = "rate_limited"


def error_category_for(exc: BaseException) -> ErrorCategory:
    """Classify an exception caught at a connection or account boundary."""
    if isinstance(exc, ProviderAuthError):
        return ErrorCategory.AUTH
    if isinstance(exc, ProviderAPIError):
        if exc.status_code == 429:
            return ErrorCategory.RATE_LIMIT
        if exc.status_code is not None and exc.status_code >= 500:
            return ErrorCategory.CONNECTION
        return ErrorCategory.UNKNOWN
    if isinstance(exc, ProviderConnectionError):
        return ErrorCategory.CONNECTION
    if isinstance(exc, ProviderDataError):
        return ErrorCategory.DATA
    if isinstance(exc, AccountValidationError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


@dataclass
class AccountError:
    """A per-account failure."""

    account_id: str
    message: str
    category: ErrorCategory = ErrorCategory.UNKNOWN


@dataclass
class SkippedAccount:
    account_id: str
    reason: str


@dataclass
class AccountSyncResult:
    """Outcome of syncing one account's transactions."""

    account_id: str
    transactions_added: int = 0
    transactions_modified: int = 0
    transactions_removed: int = 0
    download_log_id: str | None = None
    full_sync: bool = False
    # Set when the account was merged away before its writes landed
    skipped_reason: str | None = None


@dataclass
class SyncResult:
    """Summary of a transaction sync run."""

    synced: list[str] = field(default_factory=list)
    skipped: list[SkippedAccount] = field(default_factory=list)
    errors: list[AccountError] = field(default_factory=list)
    total_transactions: int = 0

    @property
    def skipped_ids(self) -> list[str]:
        return [s.account_id for s in self.skipped]

    def absorb(self, other: "SyncResult") -> None:
        self.synced.extend(other.synced)
        self.skipped.extend(other.skipped)
        self.errors.extend(other.errors)
        self.total_transactions += other.total_transactions


@dataclass
class RefreshResult:
    """Summary of a balance refresh run."""

    status: str = STATUS_OK
    refreshed: list[str] = field(default_factory=list)
    skipped: list[SkippedAccount] = field(default_factory=list)
    errors: list[AccountError] = field(default_factory=list)
    reconnect_required: list[str] = field(default_factory=list)  # connection ids
    transaction_sync: SyncResult | None = None
    message: str | None = None
    retry_at: datetime | None = None

    @property
    def skipped_ids(self) -> list[str]:
        return [s.account_id for s in self.skipped]

    def absorb(self, other: "RefreshResult") -> None:
        self.refreshed.extend(other.refreshed)
        self.skipped.extend(other.skipped)
        self.errors.extend(other.errors)
        for connection_id in other.reconnect_required:
            if connection_id not in self.reconnect_required:
                self.reconnect_required.append(connection_id)
