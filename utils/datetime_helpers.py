"""
Datetime helper utilities to keep timestamp handling consistent.

All model timestamps are stored as naive UTC datetimes (DateTime without
timezone), so aware values coming from callers must be normalized before
they are compared with or written to the database.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Args:
        dt: Datetime that may be timezone-aware or naive

    Returns:
        Naive datetime in UTC, or None if input is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Current UTC time as a naive datetime (the storage convention for all models)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def current_month_bounds(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Return [start, end) of the calendar month containing ``now``"""
    now = ensure_naive_datetime(now) or get_naive_utc_now()
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    # Day 28 + 4 days always lands in the next month
    next_month = (start.replace(day=28) + timedelta(days=4)).replace(day=1)
    return start, next_month
