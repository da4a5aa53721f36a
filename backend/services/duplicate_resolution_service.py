"""Detect and merge accounts duplicated by re-linking the same institution login.

Some institutions hand out a new item every time the same login is linked,
so the same real-world account shows up under several connections. Merging
keeps the account with the freshest balance, moves the history of the
others onto it, and disconnects the connections left redundant.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from integrations.parsing_utils import ensure_utc
from models import (
    Account,
    BalanceSnapshot,
    Connection,
    DownloadLog,
    EmergencyFundAccount,
    Transaction,
)
from models.connection import MANUAL_ACCESS_TOKEN, STATUS_ACTIVE
from services.balance_refresh_service import latest_balance_times
from services.connection_service import ConnectionService, RevocationOutcome
from services.sync_state import SyncState

logger = logging.getLogger(__name__)

UNKNOWN_INSTITUTION = "Unknown Institution"

# Institutions known to issue a new item when the same login is re-linked
UNIFIED_LOGIN_INSTITUTIONS = (
    "chase",
    "bank of america",
    "wells fargo",
    "citibank",
    "us bank",
    "pnc bank",
    "capital one",
    "fidelity",
    "schwab",
    "td ameritrade",
    "e*trade",
    "vanguard",
)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def identity_key(account: Account) -> tuple:
    """Key under which two accounts are considered the same real account.

    The mask (last digits of the account number) is part of the key when
    present; otherwise type, subtype and name must match.
    """
    if account.mask:
        return (account.type, account.subtype, account.name, account.mask)
    return (account.type, account.subtype, account.name)


def is_unified_login_institution(institution_name: str | None) -> bool:
    if not institution_name:
        return False
    normalized = institution_name.lower()
    return any(name in normalized for name in UNIFIED_LOGIN_INSTITUTIONS)


def group_by_identity(accounts: list[Account]) -> dict[tuple, list[Account]]:
    groups: dict[tuple, list[Account]] = {}
    for account in accounts:
        groups.setdefault(identity_key(account), []).append(account)
    return groups


@dataclass
class DuplicateGroup:
    """Accounts of one institution that share an identity key with another account."""

    institution_id: str
    institution_name: str
    accounts: list[Account]

    @property
    def account_ids(self) -> list[str]:
        return [a.id for a in self.accounts]

    @property
    def sets(self) -> dict[tuple, list[Account]]:
        return group_by_identity(self.accounts)


@dataclass
class MergeResult:
    """Outcome of merging one institution's duplicates."""

    merged: int = 0  # identity sets collapsed
    kept: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    disconnected_connections: list[str] = field(default_factory=list)
    disconnect_errors: list[RevocationOutcome] = field(default_factory=list)
    message: str = ""


def merge_message(group: DuplicateGroup, result: MergeResult) -> str:
    """Human-readable summary of a merge for display."""
    if not result.removed:
        return f"No duplicates found for {group.institution_name}"

    kinds: list[str] = []
    for account in group.accounts:
        kind = f"{account.type}/{account.subtype}" if account.subtype else account.type
        if kind not in kinds:
            kinds.append(kind)
    return (
        f"Merged {len(result.removed)} duplicate accounts for {group.institution_name}. "
        f"Kept the most recent data for: {', '.join(kinds)}"
    )


class DuplicateResolutionService:
    """Merge duplicate accounts and retire the connections they leave behind."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        state: SyncState,
        connections: ConnectionService,
    ):
        self._session_factory = session_factory
        self._state = state
        self._connections = connections

    async def detect(self, institution_id: str) -> DuplicateGroup | None:
        """Find accounts of an institution that duplicate one another.

        Args:
            institution_id: Provider institution identifier.

        Returns:
            DuplicateGroup holding every account that belongs to an identity
            set with more than one member, or None if there are none.
        """
        async with self._session_factory() as session:
            accounts = await self._institution_accounts(session, institution_id)

        if len(accounts) <= 1:
            return None
        duplicates = [a for members in group_by_identity(accounts).values() if len(members) > 1 for a in members]
        if not duplicates:
            return None

        institution_name = next(
            (a.connection.institution_name for a in accounts if a.connection.institution_name),
            UNKNOWN_INSTITUTION,
        )
        return DuplicateGroup(
            institution_id=institution_id,
            institution_name=institution_name,
            accounts=duplicates,
        )

    async def merge(self, group: DuplicateGroup) -> MergeResult:
        """Merge a detected group under the institution lock.

        Accounts deleted since detection are ignored; the group is
        re-read from the database before anything is moved.
        """
        async with self._state.institution_locks.lock(group.institution_id):
            return await self._merge_locked(group)

    async def resolve_institution(self, institution_id: str) -> MergeResult | None:
        """Detect and merge one institution's duplicates atomically with respect to refreshes."""
        async with self._state.institution_locks.lock(institution_id):
            group = await self.detect(institution_id)
            if group is None:
                return None
            return await self._merge_locked(group)

    async def resolve_all(self) -> dict[str, MergeResult]:
        """Resolve duplicates for every institution with an active connection."""
        async with self._session_factory() as session:
            institution_ids = (await session.execute(
                select(Connection.institution_id)
                .where(
                    Connection.institution_id.is_not(None),
                    Connection.status == STATUS_ACTIVE,
                    Connection.access_token != MANUAL_ACCESS_TOKEN,
                )
                .distinct()
                .order_by(Connection.institution_id)
            )).scalars().all()

        results = {}
        for institution_id in institution_ids:
            result = await self.resolve_institution(institution_id)
            if result is not None:
                results[institution_id] = result
        return results

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    async def _institution_accounts(session: AsyncSession, institution_id: str) -> list[Account]:
        result = await session.execute(
            select(Account)
            .join(Account.connection)
            .options(selectinload(Account.connection))
            .where(
                Connection.institution_id == institution_id,
                Connection.access_token != MANUAL_ACCESS_TOKEN,
            )
            .order_by(Account.created_at, Account.id)
        )
        return list(result.scalars().all())

    async def _merge_locked(self, group: DuplicateGroup) -> MergeResult:
        result = MergeResult()
        wanted = set(group.account_ids)

        async with self._session_factory() as session:
            accounts = [
                a for a in await self._institution_accounts(session, group.institution_id)
                if a.id in wanted
            ]
            latest = await latest_balance_times(session, [a.id for a in accounts])

            for members in group_by_identity(accounts).values():
                ranked = self._rank(members, latest)
                keeper, redundant = ranked[0], ranked[1:]
                result.kept.append(keeper.id)
                if not redundant:
                    continue
                result.merged += 1
                for account in redundant:
                    await self._absorb(session, keeper.id, account.id)
                    result.removed.append(account.id)

            await session.commit()

        if result.removed:
            logger.info(
                "Merged %d duplicate account(s) for %s into %d",
                len(result.removed), group.institution_name, len(result.kept),
            )

        await self._retire_redundant_connections(group.institution_id, result)
        result.message = merge_message(group, result)
        return result

    @staticmethod
    def _rank(members: list[Account], latest: dict[str, datetime]) -> list[Account]:
        """Order an identity set so the account to keep comes first.

        Newest balance snapshot wins; accounts without snapshots sort last;
        ties go to the oldest account.
        """
        by_age = sorted(members, key=lambda a: (ensure_utc(a.created_at) or _EPOCH, a.id))
        # sorted() is stable under reverse=True, so ties keep oldest-first order
        return sorted(by_age, key=lambda a: latest.get(a.id) or _EPOCH, reverse=True)

    @staticmethod
    async def _absorb(session: AsyncSession, keeper_id: str, redundant_id: str) -> None:
        """Move a redundant account's history onto the keeper, then delete it."""
        await session.execute(
            update(BalanceSnapshot)
            .where(BalanceSnapshot.account_id == redundant_id)
            .values(account_id=keeper_id)
        )

        keeper_external_ids = select(Transaction.external_id).where(Transaction.account_id == keeper_id)
        await session.execute(
            delete(Transaction).where(
                Transaction.account_id == redundant_id,
                Transaction.external_id.in_(keeper_external_ids),
            )
        )
        await session.execute(
            update(Transaction)
            .where(Transaction.account_id == redundant_id)
            .values(account_id=keeper_id)
        )

        await session.execute(
            update(DownloadLog)
            .where(DownloadLog.account_id == redundant_id)
            .values(account_id=keeper_id)
        )

        keeper_users = select(EmergencyFundAccount.user_id).where(EmergencyFundAccount.account_id == keeper_id)
        await session.execute(
            delete(EmergencyFundAccount).where(
                EmergencyFundAccount.account_id == redundant_id,
                EmergencyFundAccount.user_id.in_(keeper_users),
            )
        )
        await session.execute(
            update(EmergencyFundAccount)
            .where(EmergencyFundAccount.account_id == redundant_id)
            .values(account_id=keeper_id)
        )

        await session.execute(delete(Account).where(Account.id == redundant_id))

    async def _retire_redundant_connections(self, institution_id: str, result: MergeResult) -> None:
        """Disconnect connections that are empty or duplicate a better-populated one."""
        async with self._session_factory() as session:
            rows = (await session.execute(
                select(Connection, func.count(Account.id))
                .outerjoin(Account, Account.connection_id == Connection.id)
                .where(
                    Connection.institution_id == institution_id,
                    Connection.status == STATUS_ACTIVE,
                    Connection.access_token != MANUAL_ACCESS_TOKEN,
                )
                .group_by(Connection.id)
            )).all()

        retire = [connection for connection, count in rows if count == 0]
        populated = [(connection, count) for connection, count in rows if count > 0]
        if len(populated) > 1:
            populated.sort(key=lambda row: (-row[1], ensure_utc(row[0].created_at) or _EPOCH, row[0].id))
            retire.extend(connection for connection, _ in populated[1:])

        if not retire:
            return

        for connection in retire:
            outcome = await self._connections.revoke(connection)
            if outcome.error:
                result.disconnect_errors.append(outcome)
        await self._connections.mark_disconnected([c.id for c in retire])
        result.disconnected_connections.extend(c.id for c in retire)
        logger.info(
            "Disconnected %d redundant connection(s) for institution %s (%d revocation failures)",
            len(retire), institution_id, len(result.disconnect_errors),
        )
