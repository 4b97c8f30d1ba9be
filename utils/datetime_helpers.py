"""
Datetime helper utilities to ensure consistent timezone handling across the application.

All writes use timezone-aware UTC datetimes. SQLite hands back naive values for
DateTime(timezone=True) columns, so anything read from the database must go
through ensure_utc() before it is compared with utc_now().
"""

import calendar
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to timezone-aware UTC.

    Naive values are assumed to already be UTC (that is how they were written).

    Example:
        >>> ensure_utc(datetime(2024, 1, 1)).tzinfo is timezone.utc
        True
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def add_months(dt: datetime, months: int) -> datetime:
    """
    Add calendar months, clamping the day to the end of the target month.

    Jan 31 + 1 month is Feb 28 (or 29), not Mar 3.
    """
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def add_years(dt: datetime, years: int) -> datetime:
    """Add calendar years; Feb 29 maps to Feb 28 in non-leap years"""
    return add_months(dt, 12 * years)
