"""
Timestamp utilities for consistent time handling across the system.
"""

import time
from datetime import datetime, timezone
from typing import Optional, Union


def now_utc() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_epoch_seconds(value: Optional[datetime] = None) -> float:
    """Convert a datetime to Unix epoch seconds.

    Args:
        value: datetime to convert (optional, uses current time if None). Naive values are treated as UTC.

    Returns:
        Epoch seconds as float
    """
    if value is None:
        return time.time()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def to_datetime(timestamp: Optional[Union[int, float, str, datetime]] = None) -> datetime:
    """Convert a timestamp to a timezone-aware UTC datetime.

    Accepts epoch seconds, epoch milliseconds (values above 1e11), ISO-8601 strings or datetimes.

    Args:
        timestamp: Timestamp value (optional, uses current time if None)

    Returns:
        datetime object in UTC
    """
    if timestamp is None:
        return now_utc()
    if isinstance(timestamp, datetime):
        return timestamp if timestamp.tzinfo else timestamp.replace(tzinfo=timezone.utc)
    if isinstance(timestamp, str):
        try:
            timestamp = float(timestamp)
        except ValueError:
            parsed = datetime.fromisoformat(timestamp.replace('Z', '+00:00'))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    if timestamp > 1e11:
        timestamp = timestamp / 1000.0
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)
