"""Wire the sync services together around one shared SyncState."""

from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Settings, settings as default_settings
from integrations.parsing_utils import utc_now
from integrations.provider_registry import ProviderRegistry
from services.balance_refresh_service import BalanceRefreshService, RefreshConfig
from services.connection_service import ConnectionService
from services.credential_backup_service import CredentialBackupService
from services.duplicate_resolution_service import DuplicateResolutionService
from services.scheduler import SyncScheduler
from services.sync_state import SyncState
from services.transaction_sync_service import TransactionSyncConfig, TransactionSyncService
from services.upstream_call_log_service import UpstreamCallRecorder


@dataclass
class SyncEngine:
    """Everything the API, scheduler and scripts need, built once per process."""

    settings: Settings
    state: SyncState
    registry: ProviderRegistry
    recorder: UpstreamCallRecorder
    connections: ConnectionService
    transactions: TransactionSyncService
    balances: BalanceRefreshService
    duplicates: DuplicateResolutionService
    backups: CredentialBackupService
    scheduler: SyncScheduler


def build_sync_engine(
    session_factory: async_sessionmaker[AsyncSession],
    registry: ProviderRegistry | None = None,
    settings: Settings | None = None,
    state: SyncState | None = None,
    **overrides,
) -> SyncEngine:
    """Build a SyncEngine.

    Args:
        session_factory: Async session factory every service opens sessions from.
        registry: Provider clients (defaults to Plaid and Coinbase).
        settings: Configuration (defaults to the process settings).
        state: Shared cache/deduplicator/limiter/locks (built from settings if omitted).
        **overrides: Passed to BalanceRefreshService, e.g. ``random_source``.

    Returns:
        The wired SyncEngine. The scheduler is created but not started.
    """
    settings = settings or default_settings
    registry = registry or ProviderRegistry.with_default_providers()
    state = state or SyncState(
        clock=utc_now,
        manual_refresh_limit=settings.MANUAL_REFRESH_LIMIT,
        manual_refresh_window=timedelta(hours=settings.MANUAL_REFRESH_WINDOW_HOURS),
    )

    recorder = UpstreamCallRecorder(session_factory, clock=state.clock)
    connections = ConnectionService(session_factory, registry, recorder, state.cache)
    transactions = TransactionSyncService(
        session_factory,
        registry,
        state,
        recorder,
        connections,
        config=TransactionSyncConfig.from_settings(settings),
    )
    balances = BalanceRefreshService(
        session_factory,
        registry,
        state,
        recorder,
        connections,
        config=RefreshConfig.from_settings(settings),
        transaction_sync=transactions,
        **overrides,
    )
    duplicates = DuplicateResolutionService(session_factory, state, connections)
    backups = CredentialBackupService(
        session_factory,
        backup_dir=settings.BACKUP_DIR,
        user_id=settings.DEFAULT_USER_ID,
        clock=state.clock,
    )
    scheduler = SyncScheduler(
        backups,
        balances,
        user_id=settings.DEFAULT_USER_ID,
        backup_hour=settings.BACKUP_HOUR,
        backup_retention_days=settings.BACKUP_RETENTION_DAYS,
        refresh_interval=timedelta(minutes=settings.SCHEDULED_REFRESH_INTERVAL_MINUTES),
    )

    return SyncEngine(
        settings=settings,
        state=state,
        registry=registry,
        recorder=recorder,
        connections=connections,
        transactions=transactions,
        balances=balances,
        duplicates=duplicates,
        backups=backups,
        scheduler=scheduler,
    )
