"""
Utility functions for the application.
"""
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes.

    Some drivers (SQLite) hand back naive values for timezone-aware columns;
    everything stored by the service is UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_unix(value: datetime) -> int:
    return int(ensure_utc(value).timestamp())


def from_unix(value: Any) -> Optional[datetime]:
    """Platform timestamps are unix seconds, sometimes sent as strings."""
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def to_decimal(value: Any) -> Optional[Decimal]:
    """Parse a platform amount ("12.50", 12.5, {"amount": "12.50"}) or return None."""
    if isinstance(value, dict):
        value = value.get("amount", value.get("value"))
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None
