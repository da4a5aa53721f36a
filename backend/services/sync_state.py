"""Process-wide mutable state shared by the sync services.

Built once per process (see ``services.sync_engine``) and passed to each
service, so tests can construct isolated instances.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from integrations.parsing_utils import utc_now
from services.rate_limiter import ManualRefreshLimiter
from services.refresh_cache import RefreshCache
from services.request_deduplicator import RequestDeduplicator


class KeyedLocks:
    """One ``asyncio.Lock`` per key, created on first use.

    Used per institution so a merge never deletes accounts a concurrent
    refresh of the same institution is writing balances into.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


def institution_lock_key(connection) -> str:
    """Lock key for a connection's institution, falling back to the connection id."""
    return connection.institution_id or f"connection:{connection.id}"


@dataclass
class SyncState:
    """Container for the cache, deduplicator, limiter and locks."""

    clock: Callable[[], datetime] = utc_now
    manual_refresh_limit: int = 3
    manual_refresh_window: timedelta = timedelta(hours=24)
    cache: RefreshCache = field(init=False)
    deduplicator: RequestDeduplicator = field(init=False)
    limiter: ManualRefreshLimiter = field(init=False)
    institution_locks: KeyedLocks = field(init=False)

    def __post_init__(self):
        self.cache = RefreshCache(clock=self.clock)
        self.deduplicator = RequestDeduplicator()
        self.limiter = ManualRefreshLimiter(
            limit=self.manual_refresh_limit,
            window=self.manual_refresh_window,
            clock=self.clock,
        )
        self.institution_locks = KeyedLocks()
