"""Connection lifecycle: listing, disconnection and credential revocation."""

import logging
from dataclasses import dataclass

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from integrations.exceptions import ProviderError
from integrations.provider_registry import ProviderRegistry
from models import Account, Connection
from models.connection import STATUS_ACTIVE, STATUS_DISCONNECTED
from services.refresh_cache import RefreshCache
from services.upstream_call_log_service import UpstreamCallRecorder

logger = logging.getLogger(__name__)


@dataclass
class ConnectionSummary:
    connection: Connection
    account_count: int

    @property
    def reconnect_required(self) -> bool:
        """Disconnected because the provider rejected the credential."""
        return self.connection.status == STATUS_DISCONNECTED and bool(self.connection.error_code)


@dataclass
class RevocationOutcome:
    connection_id: str
    revoked: bool
    error: str | None = None


class ConnectionService:
    """Reads and transitions Connection rows.

    Connections are never deleted; disconnection only flips ``status``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ProviderRegistry,
        recorder: UpstreamCallRecorder,
        cache: RefreshCache,
    ):
        self._session_factory = session_factory
        self._registry = registry
        self._recorder = recorder
        self._cache = cache

    async def list_connections(self, include_manual: bool = False) -> list[ConnectionSummary]:
        """List connections with their account counts, oldest first."""
        async with self._session_factory() as session:
            counts = dict(
                (await session.execute(
                    select(Account.connection_id, func.count(Account.id)).group_by(Account.connection_id)
                )).all()
            )
            connections = (await session.execute(
                select(Connection).order_by(Connection.created_at, Connection.id)
            )).scalars().all()

        return [
            ConnectionSummary(connection=c, account_count=counts.get(c.id, 0))
            for c in connections
            if include_manual or not c.is_manual
        ]

    async def reconnect_required(self) -> list[ConnectionSummary]:
        return [s for s in await self.list_connections() if s.reconnect_required]

    async def mark_disconnected(self, connection_ids: list[str], error_code: str | None = None) -> None:
        """Flip connections to ``disconnected`` and drop their cache entries.

        Args:
            connection_ids: Connections to disconnect.
            error_code: Provider error that invalidated the credential, if any.
                Connections disconnected with an error code surface as
                "reconnect required".
        """
        if not connection_ids:
            return
        async with self._session_factory() as session:
            await session.execute(
                update(Connection)
                .where(Connection.id.in_(connection_ids))
                .values(status=STATUS_DISCONNECTED, error_code=error_code)
            )
            await session.commit()
        for connection_id in connection_ids:
            self._cache.invalidate_scope(connection_id)
        logger.info(
            "Marked %d connection(s) disconnected%s",
            len(connection_ids),
            f" ({error_code})" if error_code else "",
        )

    async def revoke(self, connection: Connection) -> RevocationOutcome:
        """Revoke a credential upstream, reporting failure instead of raising."""
        if connection.is_manual:
            return RevocationOutcome(connection_id=connection.id, revoked=False)
        try:
            provider = self._registry.get_provider(connection.provider)
            await self._recorder.call(provider, connection, "revoke_item", connection.access_token)
        except (ProviderError, ValueError) as exc:
            logger.warning("Failed to revoke credential for connection %s: %s", connection.id, exc)
            return RevocationOutcome(connection_id=connection.id, revoked=False, error=str(exc))
        return RevocationOutcome(connection_id=connection.id, revoked=True)

    async def disconnect(self, connection_id: str) -> RevocationOutcome:
        """Revoke (best-effort) and disconnect a single connection.

        Raises:
            ValueError: If the connection does not exist or is manual.
        """
        async with self._session_factory() as session:
            connection = await session.get(Connection, connection_id)
        if connection is None:
            raise ValueError(f"Connection {connection_id} not found")
        if connection.is_manual:
            raise ValueError("Manual connections have no upstream credential to disconnect")

        outcome = RevocationOutcome(connection_id=connection.id, revoked=False)
        if connection.status == STATUS_ACTIVE:
            outcome = await self.revoke(connection)
        await self.mark_disconnected([connection.id])
        return outcome
