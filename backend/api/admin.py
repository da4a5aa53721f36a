"""Admin API endpoints: credential backups and upstream usage."""

import asyncio
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from api.helpers import get_sync_engine
from schemas import (
    BackupFileResponse,
    BackupOverviewResponse,
    BackupResultResponse,
    BackupStatsResponse,
    EndpointUsageResponse,
)
from services.sync_engine import SyncEngine

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/credential-backups", response_model=BackupResultResponse)
async def create_backup(engine: SyncEngine = Depends(get_sync_engine)):
    """Append any credentials not yet in today's backup file.

    Raises:
        HTTPException: 500 if the backup file could not be written.
    """
    result = await engine.backups.backup_all()
    if not result.success:
        raise HTTPException(status_code=500, detail=result.message)
    return result


@router.get("/credential-backups", response_model=BackupOverviewResponse)
async def list_backups(engine: SyncEngine = Depends(get_sync_engine)):
    """Describe today's backup file and list every backup on disk."""
    stats = await asyncio.to_thread(engine.backups.stats)
    files = await asyncio.to_thread(engine.backups.list_backups)
    return BackupOverviewResponse(
        current=BackupStatsResponse.model_validate(stats),
        files=[BackupFileResponse.model_validate(f) for f in files],
    )


@router.delete("/credential-backups/expired")
async def cleanup_backups(
    retention_days: Optional[int] = Query(None, ge=1),
    engine: SyncEngine = Depends(get_sync_engine),
):
    """Delete backup files older than the retention period."""
    days = retention_days or engine.settings.BACKUP_RETENTION_DAYS
    removed = await asyncio.to_thread(engine.backups.cleanup_old_backups, days)
    return {"files_removed": removed, "retention_days": days}


@router.get("/upstream-usage", response_model=list[EndpointUsageResponse])
async def upstream_usage(
    since: Optional[datetime] = None,
    engine: SyncEngine = Depends(get_sync_engine),
):
    """Aggregate recorded upstream calls per provider endpoint."""
    return await engine.recorder.usage_summary(since)
