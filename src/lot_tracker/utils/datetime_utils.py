"""Datetime utilities for timezone-aware UTC timestamps.

This module provides a replacement for the deprecated datetime.utcnow()
function, plus the ISO week helpers used by lot numbering.

Usage:
    from lot_tracker.utils.datetime_utils import utc_now

    # Instead of datetime.utcnow()
    timestamp = utc_now()

    # For SQLAlchemy Column defaults
    created_at = Column(DateTime, default=utc_now)
"""

from datetime import date, datetime, timezone
from typing import Tuple, Union


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime.

    This is the replacement for the deprecated datetime.utcnow().

    Returns:
        Current UTC datetime with timezone info
    """
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC.

    SQLite drops tzinfo on round-trip, so values read back from the
    database are naive even though they were written as UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def iso_week_info(when: Union[date, datetime]) -> Tuple[int, int]:
    """
    Get the ISO week number and ISO year for a date.

    The first days of January can belong to the last week of the previous
    year (and late December to week 1 of the next year), so the ISO year
    can differ from the calendar year.

    Args:
        when: Date or datetime to inspect

    Returns:
        Tuple of (week, iso_year)
    """
    iso_year, week, _weekday = when.isocalendar()
    return week, iso_year
