"""Accounts API endpoints: balance refresh and transaction sync."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from api.helpers import get_or_404, get_sync_engine
from database import get_db
from integrations.exceptions import ProviderAuthError, ProviderError
from models import Account
from schemas import (
    AccountSyncResponse,
    RefreshQuotaResponse,
    RefreshRequest,
    RefreshResultResponse,
    SyncRequest,
    SyncResultResponse,
    SyncStatusResponse,
)
from services.account_eligibility import AccountValidationError
from services.sync_engine import SyncEngine
from services.sync_results import STATUS_RATE_LIMITED
from utils.query_params import validate_account_ids

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/accounts", tags=["accounts"])


@router.post("/refresh", response_model=RefreshResultResponse)
async def refresh_balances(
    request: RefreshRequest = RefreshRequest(),
    engine: SyncEngine = Depends(get_sync_engine),
):
    """Trigger a manual balance refresh for every visible account.

    Per-account failures are reported in the body; the request itself
    succeeds.

    Raises:
        HTTPException: Never; a throttled request returns 429 with a
            ``rate_limited`` body instead.
    """
    result = await engine.balances.smart_refresh(
        engine.settings.DEFAULT_USER_ID,
        force=request.force,
        include_transactions=request.include_transactions,
        manual=True,
    )
    if result.status == STATUS_RATE_LIMITED:
        body = RefreshResultResponse.model_validate(result).model_dump(mode="json")
        return JSONResponse(status_code=429, content=body)
    return result


@router.get("/refresh/quota", response_model=RefreshQuotaResponse)
def refresh_quota(engine: SyncEngine = Depends(get_sync_engine)):
    """Return the manual refresh budget of the current user."""
    quota = engine.state.limiter.usage(engine.settings.DEFAULT_USER_ID)
    return RefreshQuotaResponse.model_validate(quota)


@router.post("/sync", response_model=SyncResultResponse)
async def sync_transactions(
    request: SyncRequest = SyncRequest(),
    engine: SyncEngine = Depends(get_sync_engine),
):
    """Sync transactions for accounts that need it (or all eligible ones when forced)."""
    account_ids = validate_account_ids(request.account_ids)
    return await engine.transactions.smart_sync(force=request.force, account_ids=account_ids)


@router.post("/{account_id}/sync", response_model=AccountSyncResponse)
async def sync_account(
    account_id: str,
    force: bool = Query(False, description="Discard the stored cursor and sync from scratch"),
    db: AsyncSession = Depends(get_db),
    engine: SyncEngine = Depends(get_sync_engine),
):
    """Sync one account's transactions.

    Raises:
        HTTPException:
            - 400 Bad Request: Account is not eligible for upstream sync
            - 404 Not Found: Account does not exist
            - 502 Bad Gateway: Provider authentication or API error
    """
    await get_or_404(db, Account, account_id, "Account not found")
    try:
        return await engine.transactions.sync_account(account_id, force=force)
    except AccountValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProviderAuthError as e:
        raise HTTPException(status_code=502, detail=f"Reconnect required: {e}")
    except ProviderError as e:
        logger.warning("Transaction sync failed for account %s: %s", account_id, e)
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/{account_id}/sync-status", response_model=SyncStatusResponse)
async def sync_status(
    account_id: str,
    db: AsyncSession = Depends(get_db),
    engine: SyncEngine = Depends(get_sync_engine),
):
    """Return the transaction sync state of one account."""
    await get_or_404(db, Account, account_id, "Account not found")
    return await engine.transactions.sync_status(account_id)
