"""Integration tests for admin endpoints."""

from pathlib import Path

import pytest

from tests.fixtures import make_account, make_connection, make_manual_connection
from tests.fixtures.mocks import balance


@pytest.fixture
def backup_dir(test_settings) -> Path:
    return Path(test_settings.BACKUP_DIR)


class TestCredentialBackups:
    def test_create_backup(self, client, db, backup_dir):
        db.add_all([make_connection(), make_connection(institution_id="ins_2"), make_manual_connection()])
        db.commit()

        response = client.post("/api/admin/credential-backups")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["entries_added"] == 2
        assert data["total_entries"] == 2
        assert data["backup_file"].endswith("access-tokens-2025-01-15.csv")
        assert (backup_dir / "access-tokens-2025-01-15.csv").exists()

        again = client.post("/api/admin/credential-backups").json()
        assert again["entries_added"] == 0
        assert again["message"] == "Backup completed: 0 new entries added"

    def test_create_backup_unwritable_directory(self, client, db, backup_dir):
        db.add(make_connection())
        db.commit()
        backup_dir.parent.mkdir(parents=True, exist_ok=True)
        backup_dir.write_text("not a directory")

        response = client.post("/api/admin/credential-backups")

        assert response.status_code == 500
        assert response.json()["detail"].startswith("Failed to back up credentials")

    def test_list_backups(self, client, db, backup_dir):
        backup_dir.mkdir(parents=True)
        (backup_dir / "access-tokens-2025-01-01.csv").write_text('"access_token"\n"a"\n')
        db.add(make_connection())
        db.commit()
        client.post("/api/admin/credential-backups")

        data = client.get("/api/admin/credential-backups").json()

        assert data["current"]["exists"] is True
        assert data["current"]["entry_count"] == 1
        assert [f["date"] for f in data["files"]] == ["2025-01-15", "2025-01-01"]
        assert data["files"][1]["entry_count"] == 1

    def test_list_backups_empty(self, client):
        data = client.get("/api/admin/credential-backups").json()

        assert data["current"]["exists"] is False
        assert data["files"] == []

    def test_cleanup_expired(self, client, backup_dir):
        backup_dir.mkdir(parents=True)
        for day in ("2024-11-01", "2025-01-10", "2025-01-15"):
            (backup_dir / f"access-tokens-{day}.csv").write_text("")

        response = client.delete("/api/admin/credential-backups/expired", params={"retention_days": 3})

        assert response.status_code == 200
        assert response.json() == {"files_removed": 2, "retention_days": 3}
        assert sorted(p.name for p in backup_dir.iterdir()) == ["access-tokens-2025-01-15.csv"]

    def test_cleanup_default_retention(self, client, backup_dir):
        backup_dir.mkdir(parents=True)
        (backup_dir / "access-tokens-2024-11-01.csv").write_text("")

        data = client.delete("/api/admin/credential-backups/expired").json()

        assert data == {"files_removed": 1, "retention_days": 30}

    def test_cleanup_rejects_non_positive_retention(self, client):
        response = client.delete("/api/admin/credential-backups/expired", params={"retention_days": 0})
        assert response.status_code == 422


class TestUpstreamUsage:
    def test_usage_after_refresh(self, client, db, plaid):
        connection = make_connection()
        db.add_all([connection, make_account(connection, external_id="acc_chk")])
        db.commit()
        plaid.balances[connection.access_token] = [balance("acc_chk")]
        client.post("/api/accounts/refresh", json={})

        data = client.get("/api/admin/upstream-usage").json()

        assert len(data) == 1
        assert data[0]["provider"] == "plaid"
        assert data[0]["endpoint"] == "get_balances"
        assert data[0]["calls"] == 1
        assert data[0]["errors"] == 0

    def test_usage_empty(self, client):
        assert client.get("/api/admin/upstream-usage").json() == []
