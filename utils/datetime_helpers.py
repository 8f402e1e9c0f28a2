"""
Datetime helper utilities to ensure consistent timezone handling.

All persisted timestamps are naive UTC (``DateTime(timezone=False)``), so
every comparison against stored values must go through these helpers.
"""

from datetime import datetime, timezone
from typing import Optional


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Example:
        >>> aware_dt = datetime.now(timezone.utc)
        >>> naive_dt = ensure_naive_datetime(aware_dt)
        >>> assert naive_dt.tzinfo is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Current UTC time without timezone info"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
