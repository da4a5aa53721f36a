"""Integration tests for connection and duplicate resolution endpoints."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from models import Account, Connection
from models.connection import STATUS_ACTIVE, STATUS_DISCONNECTED
from tests.fixtures import T0, make_account, make_connection, make_manual_connection


@pytest.fixture
def relinked(db):
    """The same Chase card reachable through two logins."""
    first = make_connection(institution_id="ins_3", institution_name="Chase", created_at=T0 - timedelta(days=5))
    second = make_connection(institution_id="ins_3", institution_name="Chase", created_at=T0)
    kept = make_account(
        first, name="Sapphire", type="credit", subtype="credit card", mask="4321",
        created_at=T0 - timedelta(days=5),
    )
    duplicate = make_account(second, name="Sapphire", type="credit", subtype="credit card", mask="4321")
    db.add_all([first, second, kept, duplicate])
    db.commit()
    return first, second, kept, duplicate


class TestListConnections:
    def test_list_excludes_manual_by_default(self, client, db):
        connection = make_connection()
        manual = make_manual_connection(created_at=T0 + timedelta(minutes=1))
        db.add_all([connection, manual, make_account(connection), make_account(connection, name="Savings")])
        db.commit()

        data = client.get("/api/connections").json()

        assert [c["id"] for c in data] == [connection.id]
        assert data[0]["account_count"] == 2
        assert data[0]["reconnect_required"] is False
        assert "access_token" not in data[0]

        with_manual = client.get("/api/connections", params={"include_manual": True}).json()
        assert [c["id"] for c in with_manual] == [connection.id, manual.id]

    def test_reconnect_required(self, client, db):
        broken = make_connection(status=STATUS_DISCONNECTED, error_code="ITEM_LOGIN_REQUIRED")
        unlinked = make_connection(status=STATUS_DISCONNECTED)
        healthy = make_connection()
        db.add_all([broken, unlinked, healthy])
        db.commit()

        data = client.get("/api/connections/reconnect-required").json()

        assert [c["id"] for c in data] == [broken.id]
        assert data[0]["error_code"] == "ITEM_LOGIN_REQUIRED"


class TestDisconnect:
    def test_disconnect_revokes_and_flips_status(self, client, db, plaid):
        connection = make_connection()
        db.add(connection)
        db.commit()

        response = client.post(f"/api/connections/{connection.id}/disconnect")

        assert response.status_code == 200
        assert response.json() == {"connection_id": connection.id, "revoked": True, "error": None}
        assert plaid.count("revoke_item") == 1
        db.expire_all()
        assert db.get(Connection, connection.id).status == STATUS_DISCONNECTED

    def test_disconnect_not_found(self, client):
        response = client.post("/api/connections/missing/disconnect")
        assert response.status_code == 404
        assert response.json()["detail"] == "Connection not found"

    def test_disconnect_manual_rejected(self, client, db):
        manual = make_manual_connection()
        db.add(manual)
        db.commit()

        response = client.post(f"/api/connections/{manual.id}/disconnect")

        assert response.status_code == 400


class TestDuplicates:
    def test_detect(self, client, relinked):
        _, _, kept, duplicate = relinked

        response = client.get("/api/connections/institutions/ins_3/duplicates")

        assert response.status_code == 200
        data = response.json()
        assert data["institution_name"] == "Chase"
        assert data["unified_login"] is True
        assert {a["id"] for a in data["accounts"]} == {kept.id, duplicate.id}

    def test_detect_none(self, client, db):
        connection = make_connection(institution_id="ins_9")
        db.add_all([connection, make_account(connection)])
        db.commit()

        response = client.get("/api/connections/institutions/ins_9/duplicates")

        assert response.status_code == 200
        assert response.json() is None

    def test_merge(self, client, db, plaid, relinked):
        first, second, kept, duplicate = relinked
        kept_id, duplicate_id = kept.id, duplicate.id

        response = client.post("/api/connections/institutions/ins_3/merge")

        assert response.status_code == 200
        data = response.json()
        assert data["merged"] == 1
        assert data["kept"] == [kept_id]
        assert data["removed"] == [duplicate_id]
        assert data["disconnected_connections"] == [second.id]
        assert data["disconnect_errors"] == []

        db.expire_all()
        assert db.execute(select(Account.id)).scalars().all() == [kept_id]
        assert db.get(Connection, first.id).status == STATUS_ACTIVE
        assert db.get(Connection, second.id).status == STATUS_DISCONNECTED
        assert plaid.calls[-1] == ("revoke_item", (second.access_token,))

    def test_merge_without_duplicates(self, client):
        response = client.post("/api/connections/institutions/ins_404/merge")

        assert response.status_code == 200
        assert response.json()["message"] == "No duplicates found for institution ins_404"
        assert response.json()["merged"] == 0
