"""
Datetime helper utilities to ensure consistent timezone handling across the application.

Payment timestamps are stored as timezone-aware UTC. SQLite drops tzinfo on the way
back out, so anything read from the database goes through ensure_aware_utc before
being compared with utc_now().
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Treat naive datetimes as UTC and convert aware ones to UTC.

    Example:
        >>> ensure_aware_utc(datetime(2024, 1, 1)).tzinfo is timezone.utc
        True
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return ensure_aware_utc(dt).isoformat()


def from_timestamp_ms(value: int) -> datetime:
    """Explorer APIs report block times in epoch milliseconds"""
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def to_timestamp_ms(dt: datetime) -> int:
    return int(ensure_aware_utc(dt).timestamp() * 1000)
