"""
UTC time helpers.

All scheduling arithmetic is done in aware UTC datetimes. SQLite hands
back naive values for DateTime(timezone=True) columns; `as_utc` treats
those as UTC.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso_z(value: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a `Z` suffix (2024-01-02T00:00:00.000Z)."""
    value = as_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def later_of(first: Optional[datetime], second: datetime) -> datetime:
    if first is None:
        return as_utc(second)
    return max(as_utc(first), as_utc(second))
