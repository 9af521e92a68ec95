"""Datetime utilities for timezone-aware UTC timestamps.

Usage:
    from press_tracker.utils.datetime_utils import utc_now

    # For SQLAlchemy Column defaults
    created_at = Column(DateTime, default=utc_now)
"""

from datetime import date, datetime, timezone


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def to_run_date(value=None) -> date:
    """
    Normalize a datetime/date/None into the calendar date used for naming.

    Args:
        value: datetime, date, or None for today (UTC)

    Returns:
        The date portion of the value
    """
    if value is None:
        return utc_now().date()
    if isinstance(value, datetime):
        return value.date()
    return value
