"""Tests for upstream call recording and usage aggregation."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from integrations.exceptions import ProviderAuthError, ProviderConnectionError
from models import UpstreamCallLog
from services.upstream_call_log_service import UpstreamCallRecorder
from tests.fixtures import T0, make_connection
from tests.fixtures.mocks import balance

pytestmark = pytest.mark.anyio


@pytest.fixture
def recorder(session_factory, clock):
    return UpstreamCallRecorder(session_factory, clock=clock)


def logged(db) -> list[UpstreamCallLog]:
    db.expire_all()
    return db.execute(select(UpstreamCallLog).order_by(UpstreamCallLog.timestamp)).scalars().all()


async def test_records_successful_call(db, recorder, plaid):
    connection = make_connection(institution_id="ins_9")
    plaid.balances[connection.access_token] = [balance("acc_1")]

    result = await recorder.call(plaid, connection, "get_balances", connection.access_token)

    assert [r.external_id for r in result] == ["acc_1"]
    rows = logged(db)
    assert len(rows) == 1
    assert rows[0].provider == "plaid"
    assert rows[0].endpoint == "get_balances"
    assert rows[0].response_status == 200
    assert rows[0].connection_id == connection.id
    assert rows[0].institution_id == "ins_9"
    assert rows[0].error_message is None


@pytest.mark.parametrize(
    "exc,status",
    [
        (ProviderAuthError("login required", error_code="ITEM_LOGIN_REQUIRED"), 401),
        (ProviderConnectionError("timed out"), 504),
        (RuntimeError("boom"), 500),
    ],
)
async def test_records_failed_call_and_reraises(db, recorder, plaid, exc, status):
    plaid.errors["get_balances"] = exc

    with pytest.raises(type(exc)):
        await recorder.call(plaid, None, "get_balances", "token")

    rows = logged(db)
    assert rows[0].response_status == status
    assert rows[0].error_message == str(exc)
    assert rows[0].connection_id is None


async def test_usage_summary(recorder, plaid, coinbase, clock):
    await recorder.call(plaid, None, "get_balances", "t1")
    await recorder.call(plaid, None, "get_balances", "t2")
    plaid.errors["get_item_status"] = ProviderAuthError("dead")
    with pytest.raises(ProviderAuthError):
        await recorder.call(plaid, None, "get_item_status", "t1")
    clock.advance(hours=2)
    await recorder.call(coinbase, None, "get_balances", "t3")

    usage = await recorder.usage_summary()

    assert [(u.provider, u.endpoint, u.calls, u.errors) for u in usage][0] == ("plaid", "get_balances", 2, 0)
    by_key = {(u.provider, u.endpoint): u for u in usage}
    assert by_key[("plaid", "get_item_status")].errors == 1
    assert by_key[("coinbase", "get_balances")].calls == 1

    recent = await recorder.usage_summary(since=T0 + timedelta(hours=1))
    assert [(u.provider, u.endpoint) for u in recent] == [("coinbase", "get_balances")]
