"""Shared parsing utilities for provider payloads.

Provider responses arrive as loosely-typed dicts (Plaid SDK models
behave like dicts, Coinbase returns JSON). These helpers coerce the
individual values into the strict types used by the boundary records
in :mod:`integrations.provider_protocol`.
"""

from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Ensure a datetime is timezone-aware (UTC).

    SQLite drops tzinfo on storage, so values read back from the database
    are naive UTC. If the datetime is naive, attach UTC; otherwise return
    as-is.

    Args:
        dt: A datetime object, or None.

    Returns:
        The same datetime, guaranteed to be timezone-aware, or None.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value) -> datetime | None:
    """Parse an ISO 8601 string (or date/datetime object) to a UTC-aware datetime.

    Handles the formats produced by the providers:
    - Z suffix (Coinbase: "2024-01-15T10:30:00Z")
    - Standard ISO with colon offset ("2024-06-28T18:42:46+00:00")
    - Date-only strings (Plaid: "2024-06-28")
    - datetime/date objects passed through with UTC normalisation

    Args:
        value: A string, date, datetime, or None.

    Returns:
        A timezone-aware UTC datetime, or None if the value cannot be parsed.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    value_str = str(value)
    if value_str.endswith("Z"):
        value_str = value_str[:-1] + "+00:00"

    try:
        return ensure_utc(datetime.fromisoformat(value_str))
    except (ValueError, TypeError):
        return None


def parse_date(value) -> date | None:
    """Parse a Plaid-style date (``date`` object or ``YYYY-MM-DD`` string).

    Args:
        value: A string, date, datetime, or None.

    Returns:
        The calendar date, or None if the value cannot be parsed.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except (ValueError, TypeError):
        return None


def to_decimal(value) -> Decimal | None:
    """Convert a numeric payload value to Decimal.

    Returns None for missing values, non-numeric types, booleans, NaN and
    infinities so callers can drop the record rather than store garbage.
    """
    if value is None or isinstance(value, bool):
        return None
    if not isinstance(value, (int, float, str, Decimal)):
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not result.is_finite():
        return None
    return result
