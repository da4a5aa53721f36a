"""Process-local cache of refresh timestamps with activity-tiered TTLs.

Entries are advisory: losing one only costs an extra upstream call, never
incorrect data. The system of record stays the database.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from integrations.parsing_utils import utc_now

logger = logging.getLogger(__name__)

# (scope id, operation kind), e.g. (connection.id, "balances")
CacheKey = tuple[str, str]

OP_BALANCES = "balances"
OP_LIABILITIES = "liabilities"
OP_TRANSACTIONS = "transactions"

# Depository subtypes whose balances move slowly
SAVINGS_LIKE_SUBTYPES: frozenset[str] = frozenset(
    {"savings", "money market", "cd", "cash management", "hsa"}
)


class ActivityClass(str, Enum):
    """How quickly an account's balance is expected to churn."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def activity_class_for(account_type: str | None, subtype: str | None = None) -> ActivityClass:
    """Classify an account by type/subtype.

    Credit cards and transactional depository accounts are HIGH,
    savings-like depository accounts are MEDIUM, and investment, loan and
    anything unrecognised is LOW.
    """
    account_type = (account_type or "").lower()
    subtype = (subtype or "").lower()
    if account_type == "credit":
        return ActivityClass.HIGH
    if account_type == "depository":
        if subtype in SAVINGS_LIKE_SUBTYPES:
            return ActivityClass.MEDIUM
        return ActivityClass.HIGH
    return ActivityClass.LOW


@dataclass(frozen=True)
class TtlPolicy:
    """Cache TTL per activity class."""

    high: timedelta
    medium: timedelta
    low: timedelta

    def ttl_for(self, activity: ActivityClass) -> timedelta:
        if activity is ActivityClass.HIGH:
            return self.high
        if activity is ActivityClass.MEDIUM:
            return self.medium
        return self.low

    def ttl_for_account(self, account) -> timedelta:
        return self.ttl_for(activity_class_for(account.type, account.subtype))

    def connection_ttl(self, accounts: Iterable) -> timedelta:
        """Effective TTL of a connection: the shortest TTL among its accounts."""
        ttls = [self.ttl_for_account(a) for a in accounts]
        if not ttls:
            return self.low
        return min(ttls)


@dataclass
class CacheEntry:
    stored_at: datetime
    payload: Any = None


class RefreshCache:
    """Timestamped entries keyed by ``(scope_id, operation)``.

    The clock is injectable so expiry can be tested without sleeping.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._entries: dict[CacheKey, CacheEntry] = {}

    def is_valid(self, key: CacheKey, ttl: timedelta) -> bool:
        """Return True if ``key`` was set less than ``ttl`` ago."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        return self._clock() - entry.stored_at < ttl

    def get(self, key: CacheKey, ttl: timedelta) -> Any:
        """Return the payload for ``key`` if still valid, else None."""
        if not self.is_valid(key, ttl):
            return None
        return self._entries[key].payload

    def set(self, key: CacheKey, payload: Any = None) -> None:
        self._entries[key] = CacheEntry(stored_at=self._clock(), payload=payload)

    def stored_at(self, key: CacheKey) -> datetime | None:
        entry = self._entries.get(key)
        return entry.stored_at if entry else None

    def invalidate(self, key: CacheKey) -> None:
        self._entries.pop(key, None)

    def invalidate_scope(self, scope_id: str) -> None:
        """Drop every entry for one connection or account."""
        for key in [k for k in self._entries if k[0] == scope_id]:
            del self._entries[key]

    def clear(self) -> None:
        count = len(self._entries)
        self._entries.clear()
        logger.info("Refresh cache cleared (%d entries)", count)

    def __len__(self) -> int:
        return len(self._entries)
