"""
Time utilities for the Todolisti backend.

This module provides a single source of truth for time operations,
ensuring consistency across services and preventing clock drift issues
between version checks, expiry checks and sync catch-up reads.
"""

from datetime import datetime, timezone, timedelta
from typing import Optional


def utc_now() -> datetime:
    """
    Get current UTC time.
    Single source of truth for "now" throughout the application.

    Returns:
        timezone-aware datetime in UTC
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to timezone-aware UTC.

    SQLite hands back naive datetimes for timezone-aware columns; those are
    stored in UTC, so a naive value is interpreted as UTC.

    Args:
        value: datetime to normalize (naive or aware), or None

    Returns:
        timezone-aware datetime in UTC, or None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_expired(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """
    Check if an expiry timestamp has passed.

    Args:
        expires_at: Expiry timestamp (naive UTC or aware)
        now: Reference time, defaults to utc_now()

    Returns:
        True if expires_at is set and strictly in the past
    """
    if expires_at is None:
        return False
    return ensure_utc(expires_at) < ensure_utc(now or utc_now())


def days_from_now(days: int) -> datetime:
    """Return a timezone-aware UTC datetime `days` days in the future."""
    return utc_now() + timedelta(days=days)


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
