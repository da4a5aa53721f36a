"""Transaction sync engine.

Standard accounts follow the provider's cursor protocol: pages of added,
modified and removed transactions are applied and the cursor committed
page by page. A rejected cursor is cleared and the sync restarted from
scratch once. Investment accounts have no cursor; a trailing window is
re-fetched in full and replaces the local rows for that window in one
transaction.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from config import settings
from integrations.exceptions import CursorInvalidError, ProviderAuthError
from integrations.parsing_utils import ensure_utc
from integrations.provider_protocol import (
    ErrorCategory,
    InvestmentTransactionRecord,
    SecurityRecord,
    TransactionDelta,
    TransactionRecord,
)
from integrations.provider_registry import ProviderRegistry
from models import Account, Connection, DownloadLog, Transaction
from services.account_eligibility import (
    AccountValidationError,
    check_eligibility,
    validate_account_identity,
)
from services.connection_service import ConnectionService
from services.refresh_cache import OP_TRANSACTIONS, ActivityClass, TtlPolicy, activity_class_for
from services.request_deduplicator import sync_key
from services.sync_results import (
    AccountError,
    AccountSyncResult,
    SkippedAccount,
    SyncResult,
    error_category_for,
)
from services.sync_state import SyncState, institution_lock_key
from services.upstream_call_log_service import UpstreamCallRecorder

logger = logging.getLogger(__name__)

INVESTMENT_ACCOUNT_TYPE = "investment"
ACCOUNT_REMOVED = "Account no longer exists"


class AccountRemovedError(Exception):
    """The account was deleted (merged away) while its sync was in flight."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} no longer exists")


@dataclass(frozen=True)
class TransactionSyncConfig:
    """Tunables for the transaction sync engine."""

    ttls: TtlPolicy
    auto_sync_threshold: timedelta
    full_sync_threshold: timedelta
    page_size: int = 500
    investment_history_months: int = 24
    investment_page_size: int = 500

    @classmethod
    def from_settings(cls, s=settings) -> "TransactionSyncConfig":
        return cls(
            ttls=TtlPolicy(
                high=timedelta(hours=s.TRANSACTION_TTL_HIGH_HOURS),
                medium=timedelta(hours=s.TRANSACTION_TTL_MEDIUM_HOURS),
                low=timedelta(hours=s.TRANSACTION_TTL_LOW_HOURS),
            ),
            auto_sync_threshold=timedelta(hours=s.AUTO_SYNC_THRESHOLD_HOURS),
            full_sync_threshold=timedelta(days=s.FULL_SYNC_THRESHOLD_DAYS),
            page_size=s.TRANSACTION_PAGE_SIZE,
            investment_history_months=s.INVESTMENT_HISTORY_MONTHS,
            investment_page_size=s.INVESTMENT_PAGE_SIZE,
        )


@dataclass
class SyncStatus:
    """Transaction sync state of one account."""

    account_id: str
    last_sync_time: datetime | None
    has_cursor: bool
    activity_class: ActivityClass
    cache_ttl_hours: float
    needs_sync: bool
    needs_full_sync: bool


def months_before(d: date, months: int) -> date:
    """Return the same day ``months`` earlier, clamped to the month's length."""
    year, month = divmod(d.year * 12 + (d.month - 1) - months, 12)
    month += 1
    for day in (d.day, 30, 29, 28):
        try:
            return date(year, month, day)
        except ValueError:
            continue
    return date(year, month, 28)


def _json_number(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


class TransactionSyncService:
    """Sync transactions for standard (cursor) and investment (window) accounts."""

    # First attempt plus one restart from scratch after a rejected cursor
    MAX_CURSOR_ATTEMPTS = 2

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ProviderRegistry,
        state: SyncState,
        recorder: UpstreamCallRecorder,
        connections: ConnectionService,
        config: TransactionSyncConfig | None = None,
    ):
        self._session_factory = session_factory
        self._registry = registry
        self._state = state
        self._recorder = recorder
        self._connections = connections
        self._config = config or TransactionSyncConfig.from_settings()

    @property
    def _clock(self) -> Callable[[], datetime]:
        return self._state.clock

    # ------------------------------------------------------------------
    # Smart sync
    # ------------------------------------------------------------------

    async def smart_sync(
        self,
        force: bool = False,
        account_ids: list[str] | None = None,
    ) -> SyncResult:
        """Sync transactions for connections that need it.

        A connection is synced when forced, when its cache entry is stale,
        or when any member has not synced within the auto-sync threshold.
        Each account is fully resynced (cursor discarded) when forced or
        when its last sync is older than the full-sync threshold.

        Args:
            force: Sync every eligible account from scratch.
            account_ids: Restrict to these accounts (hidden accounts are
                included when named explicitly).

        Returns:
            SyncResult summarizing all connections.
        """
        result = SyncResult()
        groups: dict[str, list[Account]] = {}

        for account in await self._load_accounts(account_ids):
            eligibility = check_eligibility(account)
            if not eligibility.eligible:
                result.skipped.append(SkippedAccount(account.id, "; ".join(eligibility.reasons)))
                continue
            try:
                validate_account_identity(account)
            except AccountValidationError as exc:
                result.errors.append(AccountError(account.id, str(exc), ErrorCategory.VALIDATION))
                continue
            if not self._supports_transactions(account.connection):
                result.skipped.append(SkippedAccount(
                    account.id, "Provider does not offer transaction sync"
                ))
                continue
            groups.setdefault(account.connection_id, []).append(account)

        tasks = []
        for connection_id, members in groups.items():
            if not force and not self._connection_needs_sync(connection_id, members):
                result.skipped.extend(SkippedAccount(a.id, "Recently synced") for a in members)
                continue
            tasks.append(self._state.deduplicator.run(
                sync_key(connection_id),
                lambda members=members: self._sync_connection(members, force),
            ))

        for outcome in await asyncio.gather(*tasks):
            result.absorb(outcome)

        logger.info(
            "Transaction sync: %d accounts synced, %d skipped, %d errors, %d transactions",
            len(result.synced), len(result.skipped), len(result.errors), result.total_transactions,
        )
        return result

    def _supports_transactions(self, connection: Connection) -> bool:
        try:
            return self._registry.get_provider(connection.provider).supports_transactions
        except ValueError:
            return False

    def _connection_needs_sync(self, connection_id: str, members: list[Account]) -> bool:
        ttl = self._config.ttls.connection_ttl(members)
        if not self._state.cache.is_valid((connection_id, OP_TRANSACTIONS), ttl):
            return True
        return any(self._account_needs_sync(a) for a in members)

    def _account_needs_sync(self, account: Account) -> bool:
        last = ensure_utc(account.last_sync_time)
        return last is None or self._clock() - last > self._config.auto_sync_threshold

    def _account_needs_full_sync(self, account: Account) -> bool:
        last = ensure_utc(account.last_sync_time)
        return last is not None and self._clock() - last > self._config.full_sync_threshold

    async def _sync_connection(self, members: list[Account], force: bool) -> SyncResult:
        """Sync a connection's accounts one after another.

        Per-account failures are recorded and the remaining accounts still
        run, unless the credential itself was rejected.
        """
        result = SyncResult()
        connection_id = members[0].connection_id
        for index, account in enumerate(members):
            full = force or self._account_needs_full_sync(account)
            try:
                outcome = await self.sync_account(account.id, force=full)
            except Exception as exc:
                logger.warning("Transaction sync failed for account %s: %s", account.id, exc)
                result.errors.append(AccountError(account.id, str(exc), error_category_for(exc)))
                if isinstance(exc, ProviderAuthError):
                    result.errors.extend(
                        AccountError(a.id, str(exc), error_category_for(exc))
                        for a in members[index + 1:]
                    )
                    break
                continue
            if outcome.skipped_reason:
                result.skipped.append(SkippedAccount(account.id, outcome.skipped_reason))
                continue
            result.synced.append(account.id)
            result.total_transactions += outcome.transactions_added

        self._state.cache.set((connection_id, OP_TRANSACTIONS))
        return result

    # ------------------------------------------------------------------
    # Single account
    # ------------------------------------------------------------------

    async def sync_account(self, account_id: str, force: bool = False) -> AccountSyncResult:
        """Sync one account's transactions.

        Args:
            account_id: The account to sync.
            force: Discard the stored cursor and start from scratch.

        Returns:
            AccountSyncResult with the number of valid added transactions,
            or with ``skipped_reason`` set if the account was merged away
            before its writes landed.

        Raises:
            AccountValidationError: If the account is missing or ineligible.
            ProviderAuthError: If the credential is dead (the connection is
                marked disconnected first).
            CursorInvalidError: If the cursor is rejected again after the
                automatic restart.
            ProviderError: Any other upstream failure.
        """
        account = await self._load_account(account_id)
        eligibility = check_eligibility(account)
        if not eligibility.eligible:
            raise AccountValidationError(account.id, "; ".join(eligibility.reasons))
        validate_account_identity(account)
        connection = account.connection
        if not self._supports_transactions(connection):
            raise AccountValidationError(account.id, "Provider does not offer transaction sync")
        provider = self._registry.get_provider(connection.provider)

        try:
            if account.type == INVESTMENT_ACCOUNT_TYPE:
                return await self._sync_investment_account(account, connection, provider)
            return await self._sync_cursor_account(account, connection, provider, force)
        except AccountRemovedError:
            logger.info("Account %s was removed during transaction sync, skipping", account.id)
            return AccountSyncResult(account_id=account.id, skipped_reason=ACCOUNT_REMOVED)
        except Exception as exc:
            if isinstance(exc, ProviderAuthError):
                await self._connections.mark_disconnected(
                    [connection.id], exc.error_code or "AUTH_ERROR"
                )
            await self._write_error_log(connection, account.id, exc)
            raise

    async def _load_account(self, account_id: str) -> Account:
        async with self._session_factory() as session:
            account = (await session.execute(
                select(Account).options(selectinload(Account.connection)).where(Account.id == account_id)
            )).scalar_one_or_none()
        if account is None:
            raise AccountValidationError(account_id, f"Account {account_id} not found")
        return account

    async def _load_accounts(self, account_ids: list[str] | None) -> list[Account]:
        stmt = select(Account).options(selectinload(Account.connection)).order_by(Account.created_at, Account.id)
        if account_ids is not None:
            stmt = stmt.where(Account.id.in_(account_ids))
        else:
            stmt = stmt.where(Account.hidden.is_(False))
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    @asynccontextmanager
    async def _account_session(self, connection: Connection, account_id: str) -> AsyncIterator[AsyncSession]:
        """Open a write session under the institution lock.

        Merges take the same lock, so the account either still exists for
        the whole write or is already gone, in which case
        AccountRemovedError is raised before anything is written.
        """
        async with self._state.institution_locks.lock(institution_lock_key(connection)):
            async with self._session_factory() as session:
                if await session.get(Account, account_id) is None:
                    raise AccountRemovedError(account_id)
                yield session

    async def _write_error_log(self, connection: Connection, account_id: str, exc: Exception) -> None:
        today = self._clock().date()
        try:
            async with self._account_session(connection, account_id) as session:
                session.add(DownloadLog(
                    account_id=account_id,
                    start_date=today,
                    end_date=today,
                    num_transactions=0,
                    status="error",
                    error_message=str(exc) or type(exc).__name__,
                ))
                await session.commit()
        except AccountRemovedError:
            logger.info("Account %s no longer exists, not logging sync error", account_id)

    async def sync_status(self, account_id: str) -> SyncStatus:
        account = await self._load_account(account_id)
        return SyncStatus(
            account_id=account.id,
            last_sync_time=ensure_utc(account.last_sync_time),
            has_cursor=bool(account.sync_cursor),
            activity_class=activity_class_for(account.type, account.subtype),
            cache_ttl_hours=self._config.ttls.ttl_for_account(account).total_seconds() / 3600,
            needs_sync=self._account_needs_sync(account),
            needs_full_sync=self._account_needs_full_sync(account),
        )

    # ------------------------------------------------------------------
    # Cursor protocol
    # ------------------------------------------------------------------

    async def _sync_cursor_account(
        self, account: Account, connection: Connection, provider, force: bool
    ) -> AccountSyncResult:
        cursor = None if force else account.sync_cursor
        attempt = 0
        while True:
            attempt += 1
            try:
                outcome = await self._run_cursor_sync(account, connection, provider, cursor)
            except CursorInvalidError:
                if attempt >= self.MAX_CURSOR_ATTEMPTS:
                    raise
                logger.warning(
                    "Sync cursor rejected for account %s, restarting from scratch", account.id
                )
                await self._store_cursor(connection, account.id, None)
                cursor = None
                continue
            outcome.full_sync = cursor is None
            return outcome

    async def _store_cursor(self, connection: Connection, account_id: str, cursor: str | None) -> None:
        async with self._account_session(connection, account_id) as session:
            await session.execute(
                update(Account).where(Account.id == account_id).values(sync_cursor=cursor)
            )
            await session.commit()

    async def _run_cursor_sync(
        self, account: Account, connection: Connection, provider, cursor: str | None
    ) -> AccountSyncResult:
        outcome = AccountSyncResult(account_id=account.id)
        added_dates: list[date] = []

        while True:
            delta: TransactionDelta = await self._recorder.call(
                provider,
                connection,
                "get_transactions_delta",
                connection.access_token,
                account.external_id,
                cursor,
                self._config.page_size,
            )
            async with self._account_session(connection, account.id) as session:
                dates, modified, removed = await self._apply_delta(session, account, delta)
                cursor = delta.next_cursor or cursor
                await session.execute(
                    update(Account).where(Account.id == account.id).values(sync_cursor=cursor)
                )
                await session.commit()
            added_dates.extend(dates)
            outcome.transactions_modified += modified
            outcome.transactions_removed += removed
            if not delta.has_more:
                break

        outcome.transactions_added = len(added_dates)
        async with self._account_session(connection, account.id) as session:
            outcome.download_log_id = await self._complete_sync(session, account.id, added_dates)
            await session.commit()
        logger.info(
            "Synced account %s: %d added, %d modified, %d removed",
            account.id, outcome.transactions_added,
            outcome.transactions_modified, outcome.transactions_removed,
        )
        return outcome

    async def _apply_delta(
        self, session: AsyncSession, account: Account, delta: TransactionDelta
    ) -> tuple[list[date], int, int]:
        """Apply one page to the account.

        The feed is requested for this account only; any entry for another
        account is still ignored.

        Returns:
            Dates of the valid added transactions, the modified count and
            the removed count.
        """
        added = self._valid_for_account(account, delta.added)
        modified = self._valid_for_account(account, delta.modified)

        records = added + modified
        existing: dict[str, Transaction] = {}
        if records:
            rows = (await session.execute(
                select(Transaction).where(
                    Transaction.account_id == account.id,
                    Transaction.external_id.in_({r.external_id for r in records}),
                )
            )).scalars().all()
            existing = {t.external_id: t for t in rows}

        for record in records:
            fields = self._transaction_fields(account, record)
            row = existing.get(record.external_id)
            if row is None:
                row = Transaction(account_id=account.id, external_id=record.external_id, **fields)
                session.add(row)
                existing[record.external_id] = row
            else:
                for name, value in fields.items():
                    setattr(row, name, value)

        removed = 0
        if delta.removed:
            await session.flush()
            removed = (await session.execute(
                delete(Transaction).where(
                    Transaction.account_id == account.id,
                    Transaction.external_id.in_(delta.removed),
                )
            )).rowcount or 0

        return [r.date for r in added], len(modified), removed

    @staticmethod
    def _valid_for_account(account: Account, records: list[TransactionRecord]) -> list[TransactionRecord]:
        valid = []
        for record in records:
            if record.account_external_id != account.external_id:
                continue
            if record.amount is None:
                logger.debug("Dropping transaction %s with invalid amount", record.external_id)
                continue
            valid.append(record)
        return valid

    @staticmethod
    def _transaction_fields(account: Account, record: TransactionRecord) -> dict:
        """Column values for both inserts and updates of a transaction."""
        amount = -record.amount if account.invert_transactions else record.amount
        return {
            "date": record.date,
            "name": record.name,
            "amount": amount,
            "category": record.category,
            "merchant_name": record.merchant_name,
            "pending": record.pending,
            "iso_currency_code": record.iso_currency_code,
            "payment_channel": record.payment_channel,
            "personal_finance_category": record.personal_finance_category,
            "extra": record.extra,
        }

    async def _complete_sync(
        self,
        session: AsyncSession,
        account_id: str,
        added_dates: list[date],
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> str:
        """Stamp ``last_sync_time`` and add a success DownloadLog; the caller commits."""
        now = self._clock()
        if start_date is None:
            start_date = min(added_dates) if added_dates else now.date()
        if end_date is None:
            end_date = max(added_dates) if added_dates else now.date()

        log = DownloadLog(
            account_id=account_id,
            start_date=start_date,
            end_date=end_date,
            num_transactions=len(added_dates),
            status="success",
        )
        await session.execute(
            update(Account).where(Account.id == account_id).values(last_sync_time=now)
        )
        session.add(log)
        await session.flush()
        return log.id

    # ------------------------------------------------------------------
    # Investment window
    # ------------------------------------------------------------------

    async def _sync_investment_account(
        self, account: Account, connection: Connection, provider
    ) -> AccountSyncResult:
        status = await self._recorder.call(
            provider, connection, "get_item_status", connection.access_token
        )
        if status.credential_dead:
            raise ProviderAuthError(
                f"{connection.institution_name or 'Institution'} connection is no longer valid "
                f"({status.error_code}): {status.error_message or 'reconnect required'}",
                provider_name=provider.provider_name,
                error_code=status.error_code,
            )
        if not status.ok:
            logger.warning(
                "Item status for connection %s reports %s, attempting investment sync anyway",
                connection.id, status.error_code,
            )

        end_date = self._clock().date()
        start_date = months_before(end_date, self._config.investment_history_months)

        # Fetch every page before touching the database
        records: dict[str, InvestmentTransactionRecord] = {}
        securities: dict[str, SecurityRecord] = {}
        offset = 0
        while True:
            page = await self._recorder.call(
                provider,
                connection,
                "get_investment_transactions",
                connection.access_token,
                account.external_id,
                start_date,
                end_date,
                offset,
                self._config.investment_page_size,
            )
            for security in page.securities:
                securities[security.security_id] = security
            for record in page.transactions:
                records[record.external_id] = record
            offset += len(page.transactions)
            if offset >= page.total or not page.transactions:
                break

        mine = [
            r for r in records.values()
            if r.account_external_id == account.external_id and r.amount is not None
        ]

        async with self._account_session(connection, account.id) as session:
            await session.execute(
                delete(Transaction).where(
                    Transaction.account_id == account.id,
                    Transaction.date >= start_date,
                    Transaction.date <= end_date,
                )
            )
            for record in mine:
                session.add(self._investment_transaction(account, record, securities.get(record.security_id)))
            log_id = await self._complete_sync(
                session, account.id, [r.date for r in mine], start_date, end_date
            )
            await session.commit()

        logger.info(
            "Synced investment account %s: %d transactions between %s and %s",
            account.id, len(mine), start_date, end_date,
        )
        return AccountSyncResult(
            account_id=account.id,
            transactions_added=len(mine),
            download_log_id=log_id,
            full_sync=True,
        )

    @staticmethod
    def _investment_transaction(
        account: Account,
        record: InvestmentTransactionRecord,
        security: SecurityRecord | None,
    ) -> Transaction:
        amount = -record.amount if account.invert_transactions else record.amount
        details = {
            "type": record.type,
            "subtype": record.subtype,
            "quantity": _json_number(record.quantity),
            "price": _json_number(record.price),
            "fees": _json_number(record.fees),
            "security_id": record.security_id,
        }
        if security is not None:
            details["security"] = {
                "name": security.name,
                "ticker_symbol": security.ticker_symbol,
                "type": security.type,
                "close_price": _json_number(security.close_price),
            }
        return Transaction(
            account_id=account.id,
            external_id=record.external_id,
            date=record.date,
            name=record.name,
            amount=amount,
            category=record.type,
            merchant_name=security.name if security else None,
            pending=False,
            iso_currency_code=record.iso_currency_code,
            extra={"investment": details},
        )
