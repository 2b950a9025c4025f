"""
Datetime utility functions.
Provides the UTC clock used by the lifecycle manager.
"""

from datetime import datetime
import pytz


def utcnow() -> datetime:
    """
    Get current UTC datetime using pytz.UTC.

    Returns:
        Current UTC datetime with pytz timezone information
    """
    return datetime.now(pytz.UTC)


def ensure_utc(value: datetime) -> datetime:
    """
    Normalize a datetime to an aware UTC datetime.

    Naive datetimes are interpreted as already being in UTC (this is how
    SQLite hands back DateTime columns and how clients usually send ISO
    strings without an offset).

    Args:
        value: Datetime, naive or aware

    Returns:
        Aware datetime in UTC
    """
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


class SystemClock:
    """Clock backed by the system time. Swap for a fixed clock in tests."""

    def now(self) -> datetime:
        return utcnow()
