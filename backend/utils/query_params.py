"""Shared query parameter parsing utilities."""

import uuid

from fastapi import HTTPException


def validate_account_ids(account_ids: list[str] | None) -> list[str] | None:
    """Validate a list of account IDs.

    Args:
        account_ids: Account UUID strings, or None.

    Returns:
        The stripped, non-empty IDs, or None if there are none.

    Raises:
        HTTPException: If any ID is not a valid UUID.
    """
    if not account_ids:
        return None
    result = []
    for aid in account_ids:
        aid = aid.strip()
        if not aid:
            continue
        try:
            uuid.UUID(aid)
            result.append(aid)
        except ValueError:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid account ID format: {aid}",
            )
    return result if result else None
