"""Background jobs started from the application lifespan.

- one credential backup at startup
- a daily credential backup (plus retention cleanup) at a fixed local hour
- a periodic background balance refresh (not counted against manual limits)
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from services.balance_refresh_service import BalanceRefreshService
from services.credential_backup_service import CredentialBackupService

logger = logging.getLogger(__name__)


def local_now() -> datetime:
    return datetime.now().astimezone()


def seconds_until_hour(now: datetime, hour: int) -> float:
    """Seconds from ``now`` until the next occurrence of ``hour``:00."""
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class SyncScheduler:
    """Own the background asyncio tasks; failures are logged and the loops keep going."""

    def __init__(
        self,
        backup_service: CredentialBackupService,
        refresh_service: BalanceRefreshService | None,
        user_id: str,
        backup_hour: int = 2,
        backup_retention_days: int = 30,
        refresh_interval: timedelta | None = timedelta(minutes=60),
        clock: Callable[[], datetime] = local_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._backup_service = backup_service
        self._refresh_service = refresh_service
        self._user_id = user_id
        self._backup_hour = backup_hour
        self._backup_retention_days = backup_retention_days
        self._refresh_interval = refresh_interval
        self._clock = clock
        self._sleep = sleep
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self.run_backup(), name="startup-backup"),
            asyncio.create_task(self._daily_backup_loop(), name="daily-backup"),
        ]
        if self._refresh_service is not None and self._refresh_interval:
            self._tasks.append(
                asyncio.create_task(self._refresh_loop(), name="background-refresh")
            )
        logger.info("Scheduler started (%d tasks)", len(self._tasks))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Scheduler stopped")

    async def run_backup(self) -> None:
        """Back up credentials and prune old backup files."""
        try:
            result = await self._backup_service.backup_all()
            if not result.success:
                logger.error("Scheduled credential backup failed: %s", result.message)
            removed = await asyncio.to_thread(
                self._backup_service.cleanup_old_backups, self._backup_retention_days
            )
            if removed:
                logger.info("Removed %d expired credential backup(s)", removed)
        except Exception:
            logger.error("Scheduled credential backup raised", exc_info=True)

    async def run_refresh(self) -> None:
        try:
            result = await self._refresh_service.smart_refresh(self._user_id)
            logger.info(
                "Background refresh: %d refreshed, %d skipped, %d errors",
                len(result.refreshed), len(result.skipped), len(result.errors),
            )
        except Exception:
            logger.error("Background refresh raised", exc_info=True)

    async def _daily_backup_loop(self) -> None:
        while True:
            delay = seconds_until_hour(self._clock(), self._backup_hour)
            logger.debug("Next credential backup in %.0f seconds", delay)
            await self._sleep(delay)
            await self.run_backup()

    async def _refresh_loop(self) -> None:
        interval = self._refresh_interval.total_seconds()
        while True:
            await self._sleep(interval)
            await self.run_refresh()
