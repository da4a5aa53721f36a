"""Pydantic schemas for balance refresh and transaction sync endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from integrations.provider_protocol import ErrorCategory
from services.refresh_cache import ActivityClass


class RefreshRequest(BaseModel):
    """Request body for a manual balance refresh."""

    force: bool = False
    include_transactions: bool = False


class SyncRequest(BaseModel):
    """Request body for a transaction sync."""

    force: bool = False
    account_ids: Optional[list[str]] = None


class AccountErrorResponse(BaseModel):
    account_id: str
    message: str
    category: ErrorCategory

    model_config = {"from_attributes": True}


class SkippedAccountResponse(BaseModel):
    account_id: str
    reason: str

    model_config = {"from_attributes": True}


class SyncResultResponse(BaseModel):
    """Summary of a transaction sync run."""

    synced: list[str] = Field(default_factory=list)
    skipped: list[SkippedAccountResponse] = Field(default_factory=list)
    errors: list[AccountErrorResponse] = Field(default_factory=list)
    total_transactions: int = 0

    model_config = {"from_attributes": True}


class RefreshResultResponse(BaseModel):
    """Summary of a balance refresh run."""

    status: str
    refreshed: list[str] = Field(default_factory=list)
    skipped: list[SkippedAccountResponse] = Field(default_factory=list)
    errors: list[AccountErrorResponse] = Field(default_factory=list)
    reconnect_required: list[str] = Field(default_factory=list)
    transaction_sync: Optional[SyncResultResponse] = None
    message: Optional[str] = None
    retry_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class RefreshQuotaResponse(BaseModel):
    """Manual refresh budget for the current user."""

    used: int
    limit: int
    remaining: int
    reset_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class AccountSyncResponse(BaseModel):
    """Outcome of syncing one account."""

    account_id: str
    transactions_added: int
    transactions_modified: int
    transactions_removed: int
    download_log_id: Optional[str] = None
    full_sync: bool
    skipped_reason: Optional[str] = None

    model_config = {"from_attributes": True}


class SyncStatusResponse(BaseModel):
    """Transaction sync state of one account."""

    account_id: str
    last_sync_time: Optional[datetime] = None
    has_cursor: bool
    activity_class: ActivityClass
    cache_ttl_hours: float
    needs_sync: bool
    needs_full_sync: bool

    model_config = {"from_attributes": True}
