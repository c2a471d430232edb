"""
Time rules service.
Timezone conversions and minute arithmetic shared by shifts and attendance.
"""
import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple

import pytz


def utc_now() -> datetime:
    return datetime.now(tz=pytz.UTC)


def ensure_utc(dt: datetime) -> datetime:
    """
    Normalize a datetime to an aware UTC datetime.
    Naive values (e.g. read back from SQLite) are assumed to be UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def utc_to_local(utc_datetime: datetime, timezone_str: str) -> datetime:
    """
    Convert UTC datetime to local timezone.

    Args:
        utc_datetime: UTC datetime (timezone-aware or naive UTC)
        timezone_str: Timezone string (e.g., "America/Vancouver")

    Returns:
        Local datetime (timezone-aware)
    """
    tz = pytz.timezone(timezone_str)
    return ensure_utc(utc_datetime).astimezone(tz)


def local_day_bounds(day: date, timezone_str: str) -> Tuple[datetime, datetime]:
    """UTC instants of local midnight at the start of the day and of the next day."""
    tz = pytz.timezone(timezone_str)
    start = tz.localize(datetime.combine(day, time.min))
    end = tz.localize(datetime.combine(day + timedelta(days=1), time.min))
    return ensure_utc(start), ensure_utc(end)


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from start to end, floored (negative when end < start)."""
    if (start.tzinfo is None) != (end.tzinfo is None):
        start = ensure_utc(start)
        end = ensure_utc(end)
    return math.floor((end - start).total_seconds() / 60)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()
