"""Connections API endpoints: listing, disconnection and duplicate resolution."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from api.helpers import get_or_404, get_sync_engine
from database import get_db
from models import Connection
from schemas import (
    ConnectionResponse,
    DisconnectResponse,
    DuplicateAccountResponse,
    DuplicateGroupResponse,
    MergeResultResponse,
)
from services.connection_service import ConnectionSummary
from services.duplicate_resolution_service import is_unified_login_institution
from services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/connections", tags=["connections"])


def _connection_response(summary: ConnectionSummary) -> ConnectionResponse:
    connection = summary.connection
    return ConnectionResponse(
        id=connection.id,
        item_id=connection.item_id,
        institution_id=connection.institution_id,
        institution_name=connection.institution_name,
        provider=connection.provider,
        status=connection.status,
        error_code=connection.error_code,
        account_count=summary.account_count,
        reconnect_required=summary.reconnect_required,
        created_at=connection.created_at,
        updated_at=connection.updated_at,
    )


@router.get("", response_model=list[ConnectionResponse])
async def list_connections(
    include_manual: bool = False,
    engine: SyncEngine = Depends(get_sync_engine),
):
    """List connections with their account counts."""
    summaries = await engine.connections.list_connections(include_manual=include_manual)
    return [_connection_response(s) for s in summaries]


@router.get("/reconnect-required", response_model=list[ConnectionResponse])
async def reconnect_required(engine: SyncEngine = Depends(get_sync_engine)):
    """List connections whose credential was rejected upstream."""
    return [_connection_response(s) for s in await engine.connections.reconnect_required()]


@router.post("/{connection_id}/disconnect", response_model=DisconnectResponse)
async def disconnect_connection(
    connection_id: str,
    db: AsyncSession = Depends(get_db),
    engine: SyncEngine = Depends(get_sync_engine),
):
    """Revoke a connection's credential (best-effort) and mark it disconnected.

    Raises:
        HTTPException:
            - 400 Bad Request: Manual connections cannot be disconnected
            - 404 Not Found: Connection does not exist
    """
    await get_or_404(db, Connection, connection_id, "Connection not found")
    try:
        return await engine.connections.disconnect(connection_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get(
    "/institutions/{institution_id}/duplicates",
    response_model=DuplicateGroupResponse | None,
)
async def detect_duplicates(institution_id: str, engine: SyncEngine = Depends(get_sync_engine)):
    """Detect duplicate accounts for an institution; ``null`` when there are none."""
    group = await engine.duplicates.detect(institution_id)
    if group is None:
        return None
    return DuplicateGroupResponse(
        institution_id=group.institution_id,
        institution_name=group.institution_name,
        unified_login=is_unified_login_institution(group.institution_name),
        accounts=[DuplicateAccountResponse.model_validate(a) for a in group.accounts],
    )


@router.post("/institutions/{institution_id}/merge", response_model=MergeResultResponse)
async def merge_duplicates(institution_id: str, engine: SyncEngine = Depends(get_sync_engine)):
    """Merge an institution's duplicate accounts and retire redundant connections."""
    result = await engine.duplicates.resolve_institution(institution_id)
    if result is None:
        return MergeResultResponse(message=f"No duplicates found for institution {institution_id}")
    logger.info("Duplicate merge for %s: %s", institution_id, result.message)
    return MergeResultResponse.model_validate(result)
