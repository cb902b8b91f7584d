"""UTC helpers shared by the store, quota ledger and event log."""
from datetime import datetime, timezone
from typing import Optional

from dateutil.relativedelta import relativedelta


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime"""
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime read back from the database (SQLite drops tzinfo)"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def first_instant_of_next_month(now: Optional[datetime] = None) -> datetime:
    """Start of the calendar month after ``now``, in UTC"""
    now = as_utc(now) or utcnow()
    start_of_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return start_of_month + relativedelta(months=1)


def to_unix(dt: Optional[datetime]) -> Optional[int]:
    if dt is None:
        return None
    return int(as_utc(dt).timestamp())


def from_unix(ts: Optional[int]) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)
