"""
Datetime helper utilities to ensure consistent timezone handling across the application.

CRITICAL: every model column uses timezone-naive datetimes (DateTime(timezone=False))
holding UTC. This module provides the helpers that keep aware datetimes (from the
ledger or from Telegram) out of those columns.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

logger = logging.getLogger(__name__)


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime for storage or comparison against stored columns.

    Aware values are converted to UTC and stripped; naive values are assumed
    to be UTC already and returned unchanged. None passes through.
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """
    Get current UTC time as naive datetime.

    This is the recommended way to get timestamps for model fields.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix_timestamp(value: Optional[int]) -> Optional[datetime]:
    """Convert a ledger unix timestamp to naive UTC; 0 means unset on-chain"""
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def release_window_elapsed(funded_at: Optional[datetime], window_hours: int, now: datetime) -> bool:
    """True once funded_at + window is at or before now"""
    if funded_at is None:
        return False
    return ensure_naive_datetime(funded_at) + timedelta(hours=window_hours) <= ensure_naive_datetime(now)


def format_utc(dt: Optional[datetime]) -> str:
    """Short human-readable UTC timestamp for chat replies"""
    if dt is None:
        return "-"
    return ensure_naive_datetime(dt).strftime("%Y-%m-%d %H:%M UTC")
