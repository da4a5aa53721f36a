#!/usr/bin/env python
"""Refresh balances (and optionally transactions) outside the web server.

Intended for cron or a systemd timer. Scheduled refreshes are not counted
against the manual refresh limit.

Usage:
    python -m scripts.refresh_data
    python -m scripts.refresh_data --force --transactions
    python -m scripts.refresh_data --transactions-only
"""

import argparse
import asyncio
import sys

from database import get_session_factory, init_db
from logging_config import setup_logging
from services.sync_engine import SyncEngine, build_sync_engine


async def run_refresh(
    engine: SyncEngine,
    force: bool = False,
    transactions: bool = False,
    transactions_only: bool = False,
) -> int:
    """Run one refresh cycle.

    Returns:
        Process exit code: 0 if every account succeeded, 1 otherwise.
    """
    if transactions_only:
        sync = await engine.transactions.smart_sync(force=force)
        print(
            f"Transactions: {len(sync.synced)} synced, {len(sync.skipped)} skipped, "
            f"{len(sync.errors)} errors, {sync.total_transactions} new"
        )
        for error in sync.errors:
            print(f"  ! {error.account_id}: {error.message}")
        return 1 if sync.errors else 0

    result = await engine.balances.smart_refresh(
        engine.settings.DEFAULT_USER_ID,
        force=force,
        include_transactions=transactions,
    )
    print(
        f"Balances: {len(result.refreshed)} refreshed, {len(result.skipped)} skipped, "
        f"{len(result.errors)} errors"
    )
    for error in result.errors:
        print(f"  ! {error.account_id}: {error.message}")
    if result.reconnect_required:
        print(f"Reconnect required: {', '.join(result.reconnect_required)}")

    failed = bool(result.errors)
    if result.transaction_sync is not None:
        sync = result.transaction_sync
        print(f"Transactions: {len(sync.synced)} synced, {sync.total_transactions} new")
        failed = failed or bool(sync.errors)
    return 1 if failed else 0


async def main(args: argparse.Namespace) -> int:
    await init_db()
    engine = build_sync_engine(get_session_factory())
    return await run_refresh(
        engine,
        force=args.force,
        transactions=args.transactions,
        transactions_only=args.transactions_only,
    )


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Refresh linked account data")
    parser.add_argument("--force", action="store_true", help="Ignore cache freshness")
    parser.add_argument("--transactions", action="store_true", help="Also sync transactions")
    parser.add_argument(
        "--transactions-only",
        action="store_true",
        help="Sync transactions without refreshing balances",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    args = parser.parse_args()

    setup_logging("DEBUG" if args.verbose else None)
    sys.exit(asyncio.run(main(args)))
