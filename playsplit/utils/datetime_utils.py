"""
Datetime utility functions.
Provides timezone-aware helpers used across the match and payment services.
"""

from datetime import datetime
from typing import Optional, Union
import pytz


def utcnow() -> datetime:
    """
    Get current UTC datetime using pytz.UTC.

    Returns:
        Current UTC datetime with pytz timezone information
    """
    return datetime.now(pytz.UTC)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to an aware UTC datetime.

    Naive values are assumed to already be in UTC (SQLite drops tzinfo on
    round-trips, PostgreSQL does not).

    Args:
        value: Datetime to normalize, or None

    Returns:
        Aware UTC datetime, or None when value is None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def isoformat_or_none(value: Optional[Union[datetime, str]]) -> Optional[str]:
    """Serialize a datetime to ISO 8601, passing strings and None through."""
    if value is None or isinstance(value, str):
        return value
    return ensure_utc(value).isoformat()


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from start to end, rounded to the nearest minute."""
    delta = ensure_utc(end) - ensure_utc(start)
    return int(round(delta.total_seconds() / 60))
