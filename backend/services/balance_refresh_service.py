"""Balance and liability refresh orchestrator.

Groups accounts by connection, decides which connections need a refresh,
fetches balances (plus batched liabilities for credit and loan accounts)
and appends balance snapshots. Connections are refreshed concurrently;
concurrent requests for the same connection share one upstream call.
"""

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from config import settings
from integrations.exceptions import ProviderAuthError, ProviderError
from integrations.parsing_utils import ensure_utc
from integrations.provider_protocol import (
    BalanceRecord,
    CreditLiability,
    ErrorCategory,
    Liability,
    LiabilityPayload,
    MortgageLiability,
    StudentLoanLiability,
)
from integrations.provider_registry import ProviderRegistry
from models import Account, BalanceSnapshot, Connection
from services.account_eligibility import (
    AccountValidationError,
    check_eligibility,
    validate_account_identity,
)
from services.connection_service import ConnectionService
from services.refresh_cache import OP_BALANCES, OP_LIABILITIES, TtlPolicy
from services.request_deduplicator import refresh_key
from services.sync_results import (
    STATUS_RATE_LIMITED,
    AccountError,
    RefreshResult,
    SkippedAccount,
    error_category_for,
)
from services.sync_state import SyncState, institution_lock_key
from services.upstream_call_log_service import UpstreamCallRecorder

logger = logging.getLogger(__name__)

LIABILITY_ACCOUNT_TYPES = frozenset({"credit", "loan"})


@dataclass(frozen=True)
class RefreshConfig:
    """Tunables for the balance refresh orchestrator."""

    balance_ttls: TtlPolicy
    liability_ttl: timedelta
    auto_refresh_threshold: timedelta
    transaction_sync_probability: float

    @classmethod
    def from_settings(cls, s=settings) -> "RefreshConfig":
        return cls(
            balance_ttls=TtlPolicy(
                high=timedelta(hours=s.BALANCE_TTL_HIGH_HOURS),
                medium=timedelta(hours=s.BALANCE_TTL_MEDIUM_HOURS),
                low=timedelta(hours=s.BALANCE_TTL_LOW_HOURS),
            ),
            liability_ttl=timedelta(hours=s.LIABILITY_CACHE_TTL_HOURS),
            auto_refresh_threshold=timedelta(hours=s.AUTO_REFRESH_THRESHOLD_HOURS),
            transaction_sync_probability=s.TRANSACTION_SYNC_PROBABILITY,
        )


def apply_liability(account: Account, liability: Liability) -> None:
    """Copy liability details onto the account as current-state fields."""
    if isinstance(liability, CreditLiability):
        account.last_statement_balance = liability.last_statement_balance
        account.minimum_payment_amount = liability.minimum_payment_amount
        account.next_payment_due_date = liability.next_payment_due_date
        account.last_payment_date = liability.last_payment_date
        account.last_payment_amount = liability.last_payment_amount
    elif isinstance(liability, MortgageLiability):
        account.next_monthly_payment = liability.next_monthly_payment
        account.next_payment_due_date = liability.next_payment_due_date
        account.last_payment_date = liability.last_payment_date
        account.last_payment_amount = liability.last_payment_amount
        account.origination_date = liability.origination_date
        account.origination_principal_amount = liability.origination_principal_amount
    elif isinstance(liability, StudentLoanLiability):
        account.minimum_payment_amount = liability.minimum_payment_amount
        account.next_payment_due_date = liability.next_payment_due_date
        account.last_payment_date = liability.last_payment_date
        account.last_payment_amount = liability.last_payment_amount
        account.origination_date = liability.origination_date
        account.origination_principal_amount = liability.origination_principal_amount


async def latest_balance_times(session: AsyncSession, account_ids: list[str]) -> dict[str, datetime]:
    """Return the newest snapshot timestamp per account (accounts without snapshots are absent)."""
    if not account_ids:
        return {}
    rows = (await session.execute(
        select(BalanceSnapshot.account_id, func.max(BalanceSnapshot.captured_at))
        .where(BalanceSnapshot.account_id.in_(account_ids))
        .group_by(BalanceSnapshot.account_id)
    )).all()
    return {account_id: ensure_utc(captured_at) for account_id, captured_at in rows}


class BalanceRefreshService:
    """Refresh balances and liabilities for linked accounts."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ProviderRegistry,
        state: SyncState,
        recorder: UpstreamCallRecorder,
        connections: ConnectionService,
        config: RefreshConfig | None = None,
        transaction_sync=None,
        random_source: Callable[[], float] = random.random,
    ):
        """Initialize the orchestrator.

        Args:
            session_factory: Factory for per-connection database sessions.
            registry: Resolves a connection's provider client.
            state: Shared cache, deduplicator, limiter and locks.
            recorder: Wraps provider calls to log usage.
            connections: Used to disconnect connections with dead credentials.
            config: Tunables (defaults to settings).
            transaction_sync: Optional TransactionSyncService triggered after refreshes.
            random_source: Returns a float in [0, 1); decides the sampled
                transaction sync.
        """
        self._session_factory = session_factory
        self._registry = registry
        self._state = state
        self._recorder = recorder
        self._connections = connections
        self._config = config or RefreshConfig.from_settings()
        self._transaction_sync = transaction_sync
        self._random = random_source

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def smart_refresh(
        self,
        user_id: str,
        force: bool = False,
        include_transactions: bool = False,
        manual: bool = False,
    ) -> RefreshResult:
        """Refresh every visible account.

        Args:
            user_id: Owner of the request; manual refreshes are counted per user.
            force: Bypass cache validity.
            include_transactions: Always run a transaction sync afterwards.
            manual: User-initiated; consults the manual refresh limiter.

        Returns:
            RefreshResult, with ``status="rate_limited"`` when a manual
            refresh is denied.
        """
        if manual and not self._state.limiter.try_consume(user_id):
            quota = self._state.limiter.usage(user_id)
            return RefreshResult(
                status=STATUS_RATE_LIMITED,
                message=(
                    f"Manual refresh limit reached ({quota.limit} per "
                    f"{int(self._state.limiter.window.total_seconds() // 3600)}h)"
                ),
                retry_at=quota.reset_at,
            )

        accounts = await self.load_visible_accounts()
        return await self.refresh(accounts, force=force, include_transactions=include_transactions)

    async def load_visible_accounts(self) -> list[Account]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Account)
                .options(selectinload(Account.connection))
                .where(Account.hidden.is_(False))
                .order_by(Account.created_at, Account.id)
            )
            return list(result.scalars().all())

    async def refresh(
        self,
        accounts: list[Account],
        force: bool = False,
        include_transactions: bool = False,
    ) -> RefreshResult:
        """Refresh balances for ``accounts``.

        Accounts must have their ``connection`` relationship loaded.
        Manual, archived and disconnected accounts are skipped without any
        upstream call; accounts with a broken identity are reported as
        errors before any upstream call.
        """
        result = RefreshResult()
        groups: dict[str, list[Account]] = {}
        connections: dict[str, Connection] = {}

        for account in accounts:
            eligibility = check_eligibility(account)
            if not eligibility.eligible:
                result.skipped.append(SkippedAccount(account.id, "; ".join(eligibility.reasons)))
                continue
            try:
                validate_account_identity(account)
            except AccountValidationError as exc:
                result.errors.append(AccountError(account.id, str(exc), ErrorCategory.VALIDATION))
                continue
            groups.setdefault(account.connection_id, []).append(account)
            connections[account.connection_id] = account.connection

        async with self._session_factory() as session:
            latest = await latest_balance_times(
                session, [a.id for members in groups.values() for a in members]
            )

        tasks = []
        for connection_id, members in groups.items():
            connection = connections[connection_id]
            if not force and not self._needs_refresh(connection, members, latest):
                result.skipped.extend(
                    SkippedAccount(a.id, "Balance is fresh") for a in members
                )
                continue
            tasks.append(self._refresh_connection(connection, members, force))

        for outcome in await asyncio.gather(*tasks):
            result.absorb(outcome)

        logger.info(
            "Balance refresh: %d refreshed, %d skipped, %d errors",
            len(result.refreshed), len(result.skipped), len(result.errors),
        )

        if self._transaction_sync is not None and (
            include_transactions
            or self._random() < self._config.transaction_sync_probability
        ):
            result.transaction_sync = await self._transaction_sync.smart_sync()

        return result

    # ------------------------------------------------------------------
    # Per-connection refresh
    # ------------------------------------------------------------------

    def _needs_refresh(
        self,
        connection: Connection,
        members: list[Account],
        latest: dict[str, datetime],
    ) -> bool:
        ttl = self._config.balance_ttls.connection_ttl(members)
        if not self._state.cache.is_valid((connection.id, OP_BALANCES), ttl):
            return True
        now = self._state.clock()
        for account in members:
            captured_at = latest.get(account.id)
            if captured_at is None or now - captured_at > self._config.auto_refresh_threshold:
                return True
        return False

    async def _refresh_connection(
        self, connection: Connection, members: list[Account], force: bool
    ) -> RefreshResult:
        return await self._state.deduplicator.run(
            refresh_key(connection.id),
            lambda: self._do_refresh_connection(connection, members, force),
        )

    async def _do_refresh_connection(
        self, connection: Connection, members: list[Account], force: bool
    ) -> RefreshResult:
        """Fetch and persist one connection's balances.

        Exceptions never escape: connection-level failures become
        per-account errors so other connections are unaffected.
        """
        result = RefreshResult()
        account_ids = [a.id for a in members]
        try:
            provider = self._registry.get_provider(connection.provider)
            balances = await self._recorder.call(
                provider, connection, "get_balances", connection.access_token
            )
            liability_ids = [a.external_id for a in members if a.type in LIABILITY_ACCOUNT_TYPES]
            liabilities = None
            if liability_ids:
                liabilities = await self._fetch_liabilities(provider, connection, liability_ids)
        except ProviderAuthError as exc:
            logger.warning(
                "Credential rejected for %s (connection %s): %s",
                connection.institution_name, connection.id, exc,
            )
            await self._connections.mark_disconnected([connection.id], exc.error_code or "AUTH_ERROR")
            result.reconnect_required.append(connection.id)
            result.errors.extend(
                AccountError(aid, str(exc), ErrorCategory.AUTH) for aid in account_ids
            )
            return result
        except Exception as exc:
            logger.warning(
                "Balance refresh failed for %s (connection %s): %s",
                connection.institution_name, connection.id, exc,
            )
            category = error_category_for(exc)
            result.errors.extend(AccountError(aid, str(exc), category) for aid in account_ids)
            return result

        async with self._state.institution_locks.lock(institution_lock_key(connection)):
            await self._persist(connection, account_ids, balances, liabilities, result)

        self._state.cache.set((connection.id, OP_BALANCES))
        logger.info(
            "Refreshed %s: %d accounts updated, %d errors",
            connection.institution_name or connection.id,
            len(result.refreshed), len(result.errors),
        )
        return result

    async def _fetch_liabilities(
        self, provider, connection: Connection, external_ids: list[str]
    ) -> LiabilityPayload | None:
        """Return the cached or freshly fetched liability payload.

        Liability data is best-effort: a failure is logged and the balance
        refresh continues without it.
        """
        key = (connection.id, OP_LIABILITIES)
        cached = self._state.cache.get(key, self._config.liability_ttl)
        if cached is not None:
            return cached
        try:
            payload = await self._recorder.call(
                provider, connection, "get_liabilities", connection.access_token, external_ids
            )
        except ProviderError as exc:
            logger.warning(
                "Liability fetch failed for %s, continuing with balances only: %s",
                connection.institution_name or connection.id, exc,
            )
            return None
        self._state.cache.set(key, payload)
        return payload

    async def _persist(
        self,
        connection: Connection,
        account_ids: list[str],
        balances: list[BalanceRecord],
        liabilities: LiabilityPayload | None,
        result: RefreshResult,
    ) -> None:
        by_external_id = {b.external_id: b for b in balances}
        now = self._state.clock()

        async with self._session_factory() as session:
            rows = (await session.execute(
                select(Account).where(Account.id.in_(account_ids))
            )).scalars().all()
            current = {a.id: a for a in rows}

            for account_id in account_ids:
                account = current.get(account_id)
                if account is None:
                    # Merged away while the upstream call was in flight
                    result.skipped.append(SkippedAccount(account_id, "Account no longer exists"))
                    continue
                record = by_external_id.get(account.external_id)
                if record is None:
                    result.errors.append(AccountError(
                        account.id,
                        f"Account {account.name} not found in provider response",
                        ErrorCategory.DATA,
                    ))
                    continue

                session.add(BalanceSnapshot(
                    account_id=account.id,
                    current=record.current if record.current is not None else 0,
                    available=record.available,
                    limit=record.limit,
                    captured_at=now,
                ))
                if liabilities is not None:
                    liability = liabilities.for_account(account.external_id)
                    if liability is not None:
                        apply_liability(account, liability)
                result.refreshed.append(account.id)

            await session.commit()
