"""Tests for the daily credential backup files."""

import csv
from datetime import date, timedelta

import pytest

from services.credential_backup_service import CSV_HEADER, CredentialBackupService, backup_filename
from tests.fixtures import make_connection, make_manual_connection

pytestmark = pytest.mark.anyio


@pytest.fixture
def backup_dir(tmp_path):
    return tmp_path / "backups"


@pytest.fixture
def service(session_factory, backup_dir, clock):
    return CredentialBackupService(session_factory, backup_dir, user_id="default", clock=clock)


def read_rows(path) -> list[list[str]]:
    with open(path, newline="", encoding="utf-8") as f:
        return list(csv.reader(f))


def test_backup_filename():
    assert backup_filename(date(2025, 1, 15)) == "access-tokens-2025-01-15.csv"


class TestBackupAll:
    async def test_writes_header_and_rows(self, db, service, backup_dir):
        first = make_connection(access_token="access-sandbox-1", institution_name="Chase")
        coinbase = make_connection(access_token="oauth-2", institution_id=None, provider="coinbase")
        db.add_all([first, coinbase, make_manual_connection()])
        db.commit()

        result = await service.backup_all()

        assert result.success is True
        assert result.entries_added == 2
        assert result.total_entries == 2
        rows = read_rows(backup_dir / "access-tokens-2025-01-15.csv")
        assert rows[0] == CSV_HEADER
        tokens = {row[0]: row for row in rows[1:]}
        assert set(tokens) == {"access-sandbox-1", "oauth-2"}
        assert tokens["access-sandbox-1"][2] == "Chase"
        assert tokens["access-sandbox-1"][3] == first.id
        assert tokens["oauth-2"][1] == ""
        assert tokens["oauth-2"][8] == "coinbase"
        assert tokens["oauth-2"][9] == "default"

    async def test_quotes_every_field(self, db, service, backup_dir):
        db.add(make_connection(access_token="access-sandbox-1"))
        db.commit()

        await service.backup_all()

        text = (backup_dir / "access-tokens-2025-01-15.csv").read_text(encoding="utf-8")
        assert text.splitlines()[1].startswith('"access-sandbox-1",')

    async def test_second_run_same_day_appends_only_new(self, db, service, backup_dir):
        db.add(make_connection(access_token="access-sandbox-1"))
        db.commit()
        await service.backup_all()
        db.add(make_connection(access_token="access-sandbox-2"))
        db.commit()

        result = await service.backup_all()

        assert result.entries_added == 1
        assert result.total_entries == 2
        rows = read_rows(backup_dir / "access-tokens-2025-01-15.csv")
        assert [r[0] for r in rows[1:]] == ["access-sandbox-1", "access-sandbox-2"]

    async def test_new_day_starts_new_file(self, db, service, backup_dir, clock):
        db.add(make_connection(access_token="access-sandbox-1"))
        db.commit()
        await service.backup_all()

        clock.advance(days=1)
        result = await service.backup_all()

        assert result.entries_added == 1
        assert (backup_dir / "access-tokens-2025-01-16.csv").exists()

    async def test_unwritable_directory_reports_failure(self, db, session_factory, tmp_path, clock):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x")
        db.add(make_connection())
        db.commit()
        service = CredentialBackupService(session_factory, blocker / "backups", clock=clock)

        result = await service.backup_all()

        assert result.success is False
        assert result.entries_added == 0

    async def test_backup_connection(self, service, backup_dir):
        result = await service.backup_connection(make_connection(access_token="access-sandbox-9"))

        assert result.entries_added == 1
        assert read_rows(backup_dir / "access-tokens-2025-01-15.csv")[1][0] == "access-sandbox-9"

    async def test_backup_manual_connection_is_noop(self, service, backup_dir):
        result = await service.backup_connection(make_manual_connection())

        assert result.success is True
        assert result.entries_added == 0
        assert not backup_dir.exists()


class TestMaintenance:
    def _touch(self, backup_dir, day: date, entries: int = 1):
        backup_dir.mkdir(parents=True, exist_ok=True)
        with open(backup_dir / backup_filename(day), "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f, quoting=csv.QUOTE_ALL)
            writer.writerow(CSV_HEADER)
            for i in range(entries):
                writer.writerow([f"token-{i}"] + [""] * (len(CSV_HEADER) - 1))

    def test_stats_without_file(self, service):
        stats = service.stats()
        assert stats.exists is False
        assert stats.entry_count == 0

    def test_stats_counts_entries(self, service, backup_dir):
        self._touch(backup_dir, date(2025, 1, 15), entries=3)

        stats = service.stats()

        assert stats.exists is True
        assert stats.entry_count == 3
        assert stats.last_modified is not None

    def test_list_backups_newest_first(self, service, backup_dir):
        self._touch(backup_dir, date(2025, 1, 1))
        self._touch(backup_dir, date(2025, 1, 14), entries=2)
        (backup_dir / "notes.txt").write_text("ignored")

        files = service.list_backups()

        assert [f.date for f in files] == ["2025-01-14", "2025-01-01"]
        assert files[0].entry_count == 2
        assert files[0].size > 0

    def test_list_backups_missing_dir(self, service):
        assert service.list_backups() == []

    def test_cleanup_removes_expired(self, service, backup_dir):
        today = date(2025, 1, 15)
        for days_ago in (0, 30, 31, 90):
            self._touch(backup_dir, today - timedelta(days=days_ago))
        (backup_dir / "access-tokens-garbage.csv").write_text("x")

        removed = service.cleanup_old_backups(retention_days=30)

        assert removed == 2
        remaining = sorted(p.name for p in backup_dir.iterdir())
        assert remaining == [
            "access-tokens-2024-12-16.csv",
            "access-tokens-2025-01-15.csv",
            "access-tokens-garbage.csv",
        ]
