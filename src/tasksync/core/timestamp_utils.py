"""Timestamp utilities for tasksync.

All stored and transmitted instants are integer milliseconds since the
Unix epoch. Calendar days (due dates) are ``datetime.date`` values
serialized as ``YYYY-MM-DD``.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta, timezone
from typing import Optional


def now_ms() -> int:
    """Get current time as epoch milliseconds."""
    return int(datetime.now(tz=timezone.utc).timestamp() * 1000)


def format_timestamp(ts: Optional[int]) -> str:
    """Format epoch milliseconds in the local timezone for display.

    Args:
        ts: Epoch milliseconds or None

    Returns:
        Formatted string "YYYY-MM-DD HH:MM:SS" in local timezone,
        or empty string if ts is None
    """
    if ts is None:
        return ""
    utc_dt = datetime.fromtimestamp(ts / 1000, tz=timezone.utc)
    local_dt = utc_dt.astimezone()
    return local_dt.strftime("%Y-%m-%d %H:%M:%S")


def format_day(day: Optional[date]) -> Optional[str]:
    """Serialize a calendar day as YYYY-MM-DD (None passes through)."""
    if day is None:
        return None
    return day.isoformat()


def parse_day(value: str) -> date:
    """Parse a calendar day.

    Accepts plain ``YYYY-MM-DD`` and full ISO-8601 datetimes (which some
    clients send for due dates); the time part is dropped.

    Raises:
        ValueError: if the value is not a recognizable date
    """
    value = value.strip()
    if len(value) == 10:
        return date.fromisoformat(value)
    # datetime.fromisoformat() rejects a trailing Z before Python 3.11
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value).date()


def add_months(day: date, months: int) -> date:
    """Add calendar months, clamping to the last day of the target month."""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def add_days(day: date, days: int) -> date:
    """Add whole days to a calendar day."""
    return day + timedelta(days=days)
