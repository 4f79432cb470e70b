"""
Attempt deadline arithmetic.

Everything here is a pure function of (start_time, duration_minutes, now);
no timer state is kept between requests.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def deadline(start_time: datetime, duration_minutes: int) -> datetime:
    return as_utc(start_time) + timedelta(minutes=duration_minutes)


def remaining_seconds(start_time: datetime, duration_minutes: int, now: Optional[datetime] = None) -> int:
    now = as_utc(now or utcnow())
    left = (deadline(start_time, duration_minutes) - now).total_seconds()
    return max(0, int(left))


def is_expired(start_time: datetime, duration_minutes: int, now: Optional[datetime] = None,
               grace_seconds: int = 0) -> bool:
    now = as_utc(now or utcnow())
    return now >= deadline(start_time, duration_minutes) + timedelta(seconds=grace_seconds)
