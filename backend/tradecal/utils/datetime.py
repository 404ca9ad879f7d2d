"""
Centralized datetime helpers for the calibration engine.

All timestamps are stored as naive UTC datetimes, the same convention the
ORM defaults use.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values pass through."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def days_between(earlier: datetime, later: datetime) -> float:
    """Fractional days elapsed from earlier to later.

    Examples:
        >>> days_between(datetime(2025, 10, 1), datetime(2025, 10, 7, 12))
        6.5
    """
    delta = to_naive_utc(later) - to_naive_utc(earlier)
    return delta.total_seconds() / 86400.0
