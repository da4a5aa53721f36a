#!/usr/bin/env python
"""Detect and merge duplicate accounts created by re-linking an institution.

Dry-run by default (detect + display only); pass --apply to merge.

Usage:
    python -m scripts.cleanup_duplicates
    python -m scripts.cleanup_duplicates --institution ins_3
    python -m scripts.cleanup_duplicates --institution ins_3 --apply
"""

import argparse
import asyncio

from sqlalchemy import select

from database import get_session_factory, init_db
from logging_config import setup_logging
from models import Connection
from models.connection import MANUAL_ACCESS_TOKEN
from services.duplicate_resolution_service import is_unified_login_institution
from services.sync_engine import SyncEngine, build_sync_engine


async def _institution_ids(session_factory) -> list[str]:
    async with session_factory() as session:
        return list((await session.execute(
            select(Connection.institution_id)
            .where(
                Connection.institution_id.is_not(None),
                Connection.access_token != MANUAL_ACCESS_TOKEN,
            )
            .distinct()
            .order_by(Connection.institution_id)
        )).scalars().all())


async def cleanup_duplicates(
    engine: SyncEngine,
    session_factory,
    institution_id: str | None = None,
    apply: bool = False,
) -> int:
    """Report (and optionally merge) duplicates.

    Returns:
        Number of duplicate accounts found (dry run) or removed (apply).
    """
    if institution_id:
        institution_ids = [institution_id]
    else:
        institution_ids = await _institution_ids(session_factory)

    total = 0
    for iid in institution_ids:
        group = await engine.duplicates.detect(iid)
        if group is None:
            continue

        unified = " (unified login)" if is_unified_login_institution(group.institution_name) else ""
        print(f"\n{group.institution_name} [{iid}]{unified}: {len(group.accounts)} duplicate accounts")
        for account in group.accounts:
            mask = f" ...{account.mask}" if account.mask else ""
            print(f"  - {account.name}{mask} ({account.type}/{account.subtype}) id={account.id}")

        if not apply:
            total += len(group.accounts) - len(group.sets)
            continue

        result = await engine.duplicates.merge(group)
        total += len(result.removed)
        print(f"  {result.message}")
        if result.disconnected_connections:
            print(f"  Disconnected connections: {', '.join(result.disconnected_connections)}")
        for failure in result.disconnect_errors:
            print(f"  Revocation failed for {failure.connection_id}: {failure.error}")

    if apply:
        print(f"\nRemoved {total} duplicate accounts")
    else:
        print(f"\n[DRY RUN] {total} duplicate accounts would be removed. Run with --apply to merge.")
    return total


async def main(institution_id: str | None, apply: bool) -> None:
    await init_db()
    session_factory = get_session_factory()
    engine = build_sync_engine(session_factory)
    await cleanup_duplicates(engine, session_factory, institution_id, apply)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Detect and merge duplicate accounts")
    parser.add_argument("--institution", help="Only this institution id")
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Merge duplicates (default is a dry run)",
    )
    args = parser.parse_args()

    setup_logging()
    asyncio.run(main(args.institution, args.apply))
