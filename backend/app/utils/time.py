"""UTC clock helpers.

All timestamps are stored as naive UTC datetimes.
"""

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_month(moment: datetime) -> datetime:
    return start_of_day(moment).replace(day=1)


def days_ago(days: int, moment: datetime | None = None) -> datetime:
    return (moment or utcnow()) - timedelta(days=days)
