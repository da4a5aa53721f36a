"""Fixed-window limiter for user-initiated refreshes."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from integrations.parsing_utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class RefreshQuota:
    """Manual refresh usage for one user."""

    used: int
    limit: int
    reset_at: datetime | None

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)


@dataclass
class _Window:
    started_at: datetime
    count: int = 0


class ManualRefreshLimiter:
    """Allow ``limit`` manual refreshes per ``window`` per user.

    A window starts at the first refresh and resets lazily on the first
    call after it expires. Scheduled refreshes never consult the limiter.
    """

    def __init__(
        self,
        limit: int = 3,
        window: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utc_now,
    ):
        self.limit = limit
        self.window = window
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    def _current_window(self, user_id: str) -> _Window | None:
        window = self._windows.get(user_id)
        if window is not None and self._clock() - window.started_at >= self.window:
            del self._windows[user_id]
            return None
        return window

    def try_consume(self, user_id: str) -> bool:
        """Consume one manual refresh.

        Returns:
            True if the refresh may proceed, False if the budget for the
            current window is exhausted.
        """
        window = self._current_window(user_id)
        if window is None:
            window = _Window(started_at=self._clock())
            self._windows[user_id] = window
        if window.count >= self.limit:
            logger.info("Manual refresh denied for %s (%d/%d used)", user_id, window.count, self.limit)
            return False
        window.count += 1
        return True

    def usage(self, user_id: str) -> RefreshQuota:
        window = self._current_window(user_id)
        if window is None:
            return RefreshQuota(used=0, limit=self.limit, reset_at=None)
        return RefreshQuota(
            used=window.count,
            limit=self.limit,
            reset_at=window.started_at + self.window,
        )
