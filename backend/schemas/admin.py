"""Pydantic schemas for admin endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class BackupResultResponse(BaseModel):
    success: bool
    message: str
    entries_added: int
    total_entries: int
    backup_file: str

    model_config = {"from_attributes": True}


class BackupFileResponse(BaseModel):
    filename: str
    date: str
    size: int
    entry_count: int

    model_config = {"from_attributes": True}


class BackupStatsResponse(BaseModel):
    backup_file: str
    exists: bool
    entry_count: int
    last_modified: Optional[datetime] = None

    model_config = {"from_attributes": True}


class BackupOverviewResponse(BaseModel):
    """Today's backup file plus every backup on disk."""

    current: BackupStatsResponse
    files: list[BackupFileResponse]


class EndpointUsageResponse(BaseModel):
    provider: str
    endpoint: str
    calls: int
    errors: int
    avg_duration_ms: Optional[float] = None

    model_config = {"from_attributes": True}
