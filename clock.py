"""Wall-clock helpers. Derived statuses take ``now`` explicitly; these supply the default."""

import math
from datetime import datetime, timedelta, timezone

SECONDS_PER_DAY = 24 * 60 * 60


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # MongoDB hands back naive datetimes that are already UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_mongo(value: datetime) -> datetime:
    """Naive UTC datetime, the form BSON stores and compares."""
    return as_utc(value).replace(tzinfo=None)


def start_of_day(value: datetime) -> datetime:
    value = as_utc(value)
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def days_until(target: datetime, now: datetime) -> int:
    """Whole days left before ``target``, rounded up; negative once it has passed."""
    return math.ceil((as_utc(target) - as_utc(now)).total_seconds() / SECONDS_PER_DAY)


def days_from(now: datetime, days: int) -> datetime:
    return as_utc(now) + timedelta(days=days)
