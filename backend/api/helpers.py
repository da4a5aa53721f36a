"""Shared API helpers for route handlers."""

from typing import TypeVar

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from database import Base
from services.sync_engine import SyncEngine

T = TypeVar("T", bound=Base)

# Set by the application lifespan; tests may set it directly or use dependency_overrides
_sync_engine: SyncEngine | None = None


def get_sync_engine() -> SyncEngine:
    """Get the process SyncEngine.

    Raises:
        HTTPException: 503 if the application has not finished starting.
    """
    if _sync_engine is None:
        raise HTTPException(status_code=503, detail="Sync engine is not initialized")
    return _sync_engine


def set_sync_engine(engine: SyncEngine | None) -> None:
    global _sync_engine
    _sync_engine = engine


async def get_or_404(db: AsyncSession, model: type[T], entity_id: str, detail: str = "Not found") -> T:
    """Fetch a single entity by primary key or raise 404.

    Args:
        db: Database session.
        model: SQLAlchemy model class.
        entity_id: Primary key value.
        detail: Error message for the 404 response.

    Returns:
        The entity instance.

    Raises:
        HTTPException: 404 if the entity doesn't exist.
    """
    entity = await db.get(model, entity_id)
    if not entity:
        raise HTTPException(status_code=404, detail=detail)
    return entity
