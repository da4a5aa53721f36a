"""Tests for the manual refresh limiter and shared sync state."""

from datetime import timedelta
from types import SimpleNamespace

import pytest

from services.rate_limiter import ManualRefreshLimiter
from services.sync_state import KeyedLocks, SyncState, institution_lock_key
from tests.fixtures import T0
from tests.fixtures.mocks import FakeClock

pytestmark = pytest.mark.anyio


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def limiter(clock):
    return ManualRefreshLimiter(limit=3, window=timedelta(hours=24), clock=clock)


class TestManualRefreshLimiter:
    def test_allows_up_to_limit(self, limiter):
        assert [limiter.try_consume("u1") for _ in range(4)] == [True, True, True, False]

    def test_usage_reports_window(self, limiter):
        limiter.try_consume("u1")
        limiter.try_consume("u1")

        quota = limiter.usage("u1")

        assert quota.used == 2
        assert quota.remaining == 1
        assert quota.reset_at == T0 + timedelta(hours=24)

    def test_unused_user(self, limiter):
        quota = limiter.usage("nobody")
        assert quota.used == 0
        assert quota.remaining == 3
        assert quota.reset_at is None

    def test_window_resets_after_expiry(self, limiter, clock):
        for _ in range(3):
            limiter.try_consume("u1")
        assert limiter.try_consume("u1") is False

        clock.advance(hours=24)

        assert limiter.try_consume("u1") is True
        assert limiter.usage("u1").used == 1
        assert limiter.usage("u1").reset_at == T0 + timedelta(hours=48)

    def test_denied_attempt_not_counted(self, limiter):
        for _ in range(5):
            limiter.try_consume("u1")
        assert limiter.usage("u1").used == 3
        assert limiter.usage("u1").remaining == 0

    def test_users_are_independent(self, limiter):
        for _ in range(3):
            limiter.try_consume("u1")
        assert limiter.try_consume("u2") is True


class TestSyncState:
    def test_components_share_clock(self, clock):
        state = SyncState(clock=clock, manual_refresh_limit=1)

        state.cache.set(("conn-1", "balances"))
        assert state.cache.stored_at(("conn-1", "balances")) == T0
        assert state.limiter.try_consume("u1") is True
        assert state.limiter.try_consume("u1") is False

    def test_instances_are_isolated(self, clock):
        first = SyncState(clock=clock)
        second = SyncState(clock=clock)

        first.cache.set(("conn-1", "balances"))

        assert len(second.cache) == 0


class TestInstitutionLocks:
    def test_lock_key_prefers_institution(self):
        assert institution_lock_key(SimpleNamespace(id="c1", institution_id="ins_3")) == "ins_3"
        assert institution_lock_key(SimpleNamespace(id="c1", institution_id=None)) == "connection:c1"

    async def test_same_key_same_lock(self):
        locks = KeyedLocks()
        assert locks.lock("ins_1") is locks.lock("ins_1")
        assert locks.lock("ins_1") is not locks.lock("ins_2")

        async with locks.lock("ins_1"):
            assert locks.locked("ins_1")
            assert not locks.locked("ins_2")
        assert not locks.locked("ins_1")
