"""Append-only CSV backups of upstream credentials.

One file per day (``access-tokens-YYYY-MM-DD.csv``). A token already
present in the day's file is never written again, so repeated backups on
the same day only add connections linked since the last run.
"""

import asyncio
import csv
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from integrations.parsing_utils import ensure_utc, utc_now
from models import Connection
from models.connection import MANUAL_ACCESS_TOKEN

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "access-tokens-"
BACKUP_SUFFIX = ".csv"

CSV_HEADER = [
    "access_token",
    "institution_id",
    "institution_name",
    "plaid_item_id",
    "item_id",
    "status",
    "created_at",
    "updated_at",
    "provider",
    "user_id",
    "backup_timestamp",
]


@dataclass
class BackupResult:
    success: bool
    message: str
    entries_added: int
    total_entries: int
    backup_file: str


@dataclass
class BackupStats:
    backup_file: str
    exists: bool
    entry_count: int
    last_modified: datetime | None = None


@dataclass
class BackupFileInfo:
    filename: str
    date: str
    size: int
    entry_count: int


def backup_filename(day: date) -> str:
    return f"{BACKUP_PREFIX}{day.isoformat()}{BACKUP_SUFFIX}"


def _iso(value: datetime | None) -> str:
    value = ensure_utc(value)
    return value.isoformat() if value else ""


class CredentialBackupService:
    """Write and maintain the daily credential backup files."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        backup_dir: str | Path,
        user_id: str = "default",
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._backup_dir = Path(backup_dir)
        self._user_id = user_id
        self._clock = clock

    @property
    def backup_dir(self) -> Path:
        return self._backup_dir

    def current_backup_file(self) -> Path:
        return self._backup_dir / backup_filename(self._clock().date())

    async def backup_all(self) -> BackupResult:
        """Back up every non-manual connection's credential to today's file."""
        async with self._session_factory() as session:
            connections = (await session.execute(
                select(Connection)
                .where(Connection.access_token != MANUAL_ACCESS_TOKEN)
                .order_by(Connection.created_at, Connection.id)
            )).scalars().all()

        try:
            result = await asyncio.to_thread(self._append, list(connections))
        except OSError as exc:
            logger.error("Credential backup failed: %s", exc, exc_info=True)
            return BackupResult(
                success=False,
                message=f"Failed to back up credentials: {exc}",
                entries_added=0,
                total_entries=0,
                backup_file=str(self.current_backup_file()),
            )
        logger.info("%s (%s)", result.message, result.backup_file)
        return result

    async def backup_connection(self, connection: Connection) -> BackupResult:
        """Back up a single connection's credential, e.g. right after linking."""
        if connection.is_manual:
            return BackupResult(
                success=True,
                message="Manual connection has no credential to back up",
                entries_added=0,
                total_entries=0,
                backup_file=str(self.current_backup_file()),
            )
        return await asyncio.to_thread(self._append, [connection])

    def _append(self, connections: list[Connection]) -> BackupResult:
        path = self.current_backup_file()
        path.parent.mkdir(parents=True, exist_ok=True)
        existing = self._read_tokens(path)
        timestamp = self._clock().isoformat()

        rows = []
        for connection in connections:
            if connection.access_token in existing:
                continue
            existing.add(connection.access_token)
            rows.append([
                connection.access_token,
                connection.institution_id or "",
                connection.institution_name or "",
                connection.id,
                connection.item_id,
                connection.status,
                _iso(connection.created_at),
                _iso(connection.updated_at),
                connection.provider,
                self._user_id,
                timestamp,
            ])

        if rows:
            is_new = not path.exists()
            with path.open("a", newline="", encoding="utf-8") as f:
                writer = csv.writer(f, quoting=csv.QUOTE_ALL)
                if is_new:
                    writer.writerow(CSV_HEADER)
                writer.writerows(rows)
                f.flush()
                os.fsync(f.fileno())

        return BackupResult(
            success=True,
            message=f"Backup completed: {len(rows)} new entries added",
            entries_added=len(rows),
            total_entries=len(existing),
            backup_file=str(path),
        )

    @staticmethod
    def _read_tokens(path: Path) -> set[str]:
        if not path.exists():
            return set()
        with path.open(newline="", encoding="utf-8") as f:
            reader = csv.reader(f)
            next(reader, None)  # header
            return {row[0] for row in reader if row}

    @staticmethod
    def _count_entries(path: Path) -> int:
        with path.open(newline="", encoding="utf-8") as f:
            return max(0, sum(1 for row in csv.reader(f) if row) - 1)

    def stats(self) -> BackupStats:
        """Describe today's backup file."""
        path = self.current_backup_file()
        if not path.exists():
            return BackupStats(backup_file=str(path), exists=False, entry_count=0)
        return BackupStats(
            backup_file=str(path),
            exists=True,
            entry_count=self._count_entries(path),
            last_modified=datetime.fromtimestamp(path.stat().st_mtime).astimezone(),
        )

    def list_backups(self) -> list[BackupFileInfo]:
        """List backup files, most recent first."""
        if not self._backup_dir.is_dir():
            return []
        files = sorted(
            (p for p in self._backup_dir.iterdir()
             if p.name.startswith(BACKUP_PREFIX) and p.name.endswith(BACKUP_SUFFIX)),
            key=lambda p: p.name,
            reverse=True,
        )
        return [
            BackupFileInfo(
                filename=p.name,
                date=p.name[len(BACKUP_PREFIX):-len(BACKUP_SUFFIX)],
                size=p.stat().st_size,
                entry_count=self._count_entries(p),
            )
            for p in files
        ]

    def cleanup_old_backups(self, retention_days: int = 30) -> int:
        """Delete backup files dated more than ``retention_days`` ago.

        Returns:
            Number of files removed.
        """
        cutoff = self._clock().date() - timedelta(days=retention_days)
        removed = 0
        for info in self.list_backups():
            try:
                file_date = date.fromisoformat(info.date)
            except ValueError:
                logger.warning("Ignoring backup file with unexpected name: %s", info.filename)
                continue
            if file_date < cutoff:
                (self._backup_dir / info.filename).unlink()
                removed += 1
                logger.info("Removed old backup file: %s", info.filename)
        return removed
