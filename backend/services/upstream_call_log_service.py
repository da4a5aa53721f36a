"""Record every upstream provider call for usage and billing audits."""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from integrations.exceptions import ProviderAPIError, ProviderAuthError, ProviderConnectionError
from integrations.parsing_utils import utc_now
from models import Connection, UpstreamCallLog

logger = logging.getLogger(__name__)


def _status_for(exc: BaseException) -> int:
    """Best-effort HTTP-like status for a failed call."""
    if isinstance(exc, ProviderAPIError) and exc.status_code:
        return exc.status_code
    if isinstance(exc, ProviderAuthError):
        return 401
    if isinstance(exc, ProviderConnectionError):
        return 504
    if isinstance(exc, asyncio.CancelledError):
        return 499
    return 500


@dataclass
class EndpointUsage:
    """Aggregated call counts for one provider endpoint."""

    provider: str
    endpoint: str
    calls: int
    errors: int
    avg_duration_ms: float | None


class UpstreamCallRecorder:
    """Invoke provider operations and log one UpstreamCallLog row per call.

    Recording happens in its own session so a failure to log never breaks
    the call being recorded.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def call(self, provider, connection: Connection | None, operation: str, *args):
        """Await ``provider.<operation>(*args)`` and record the outcome.

        Args:
            provider: An UpstreamProvider implementation.
            connection: Connection the call is made for (None for global calls).
            operation: Protocol method name, e.g. ``"get_balances"``.
            *args: Positional arguments for the provider method.

        Returns:
            Whatever the provider method returns. Exceptions propagate
            unchanged after being recorded.
        """
        started = time.monotonic()
        status = 200
        error_message = None
        try:
            return await getattr(provider, operation)(*args)
        except (Exception, asyncio.CancelledError) as exc:
            status = _status_for(exc)
            error_message = str(exc) or type(exc).__name__
            raise
        finally:
            await self._record(
                provider=provider.provider_name,
                endpoint=operation,
                status=status,
                connection=connection,
                duration_ms=int((time.monotonic() - started) * 1000),
                error_message=error_message,
            )

    async def _record(
        self,
        provider: str,
        endpoint: str,
        status: int,
        connection: Connection | None,
        duration_ms: int,
        error_message: str | None,
    ) -> None:
        try:
            async with self._session_factory() as session:
                session.add(UpstreamCallLog(
                    timestamp=self._clock(),
                    provider=provider,
                    endpoint=endpoint,
                    response_status=status,
                    connection_id=connection.id if connection else None,
                    institution_id=connection.institution_id if connection else None,
                    duration_ms=duration_ms,
                    error_message=error_message,
                ))
                await session.commit()
        except SQLAlchemyError:
            logger.warning("Failed to record upstream call %s/%s", provider, endpoint, exc_info=True)

    async def usage_summary(self, since: datetime | None = None) -> list[EndpointUsage]:
        """Aggregate recorded calls per provider endpoint.

        Args:
            since: Only include calls at or after this time.

        Returns:
            One EndpointUsage per (provider, endpoint), busiest first.
        """
        stmt = select(
            UpstreamCallLog.provider,
            UpstreamCallLog.endpoint,
            func.count(UpstreamCallLog.id),
            func.sum(case((UpstreamCallLog.response_status >= 400, 1), else_=0)),
            func.avg(UpstreamCallLog.duration_ms),
        ).group_by(UpstreamCallLog.provider, UpstreamCallLog.endpoint)
        if since is not None:
            stmt = stmt.where(UpstreamCallLog.timestamp >= since)

        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()

        usage = [
            EndpointUsage(
                provider=provider,
                endpoint=endpoint,
                calls=calls,
                errors=int(errors or 0),
                avg_duration_ms=float(avg) if avg is not None else None,
            )
            for provider, endpoint, calls, errors, avg in rows
        ]
        usage.sort(key=lambda u: u.calls, reverse=True)
        return usage
