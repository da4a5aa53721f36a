"""Pydantic schemas for API request/response validation."""

from .admin import (
    BackupFileResponse,
    BackupOverviewResponse,
    BackupResultResponse,
    BackupStatsResponse,
    EndpointUsageResponse,
)
from .connection import (
    ConnectionResponse,
    DisconnectResponse,
    DuplicateAccountResponse,
    DuplicateGroupResponse,
    MergeResultResponse,
)
from .sync import (
    AccountErrorResponse,
    AccountSyncResponse,
    RefreshQuotaResponse,
    RefreshRequest,
    RefreshResultResponse,
    SkippedAccountResponse,
    SyncRequest,
    SyncResultResponse,
    SyncStatusResponse,
)

__all__ = [
    "AccountErrorResponse",
    "AccountSyncResponse",
    "BackupFileResponse",
    "BackupOverviewResponse",
    "BackupResultResponse",
    "BackupStatsResponse",
    "ConnectionResponse",
    "DisconnectResponse",
    "DuplicateAccountResponse",
    "DuplicateGroupResponse",
    "EndpointUsageResponse",
    "MergeResultResponse",
    "RefreshQuotaResponse",
    "RefreshRequest",
    "RefreshResultResponse",
    "SkippedAccountResponse",
    "SyncRequest",
    "SyncResultResponse",
    "SyncStatusResponse",
]
