"""Pydantic schemas for connection and duplicate resolution endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class ConnectionResponse(BaseModel):
    """A linked institution login. The credential itself is never returned."""

    id: str
    item_id: str
    institution_id: Optional[str] = None
    institution_name: Optional[str] = None
    provider: str
    status: str
    error_code: Optional[str] = None
    account_count: int
    reconnect_required: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DisconnectResponse(BaseModel):
    connection_id: str
    revoked: bool
    error: Optional[str] = None

    model_config = {"from_attributes": True}


class DuplicateAccountResponse(BaseModel):
    id: str
    connection_id: str
    name: str
    type: str
    subtype: Optional[str] = None
    mask: Optional[str] = None

    model_config = {"from_attributes": True}


class DuplicateGroupResponse(BaseModel):
    """Duplicate accounts detected for an institution."""

    institution_id: str
    institution_name: str
    unified_login: bool
    accounts: list[DuplicateAccountResponse] = Field(default_factory=list)


class MergeResultResponse(BaseModel):
    """Outcome of merging an institution's duplicate accounts."""

    merged: int = 0
    kept: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    disconnected_connections: list[str] = Field(default_factory=list)
    disconnect_errors: list[DisconnectResponse] = Field(default_factory=list)
    message: str = ""

    model_config = {"from_attributes": True}
