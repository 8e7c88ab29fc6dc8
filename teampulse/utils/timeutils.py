"""
Time helpers shared by the aggregation engine and storage layer.

Every timestamp handled by the engine is a timezone-aware UTC datetime.
Bucket days are UTC calendar days; vacation weeks are anchored to a
configurable weekday and timezone and stored as the UTC instant of the
week start.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert to the naive UTC representation stored in DuckDB TIMESTAMP columns."""
    if value is None:
        return None
    return ensure_utc(value).replace(tzinfo=None)


def bucket_day(value: datetime | date) -> date:
    """UTC calendar day a timestamp folds into."""
    if isinstance(value, datetime):
        return ensure_utc(value).date()
    return value


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """Half-open UTC window [day 00:00, next day 00:00)."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def week_start_for(
    value: datetime,
    week_start_day: int = 5,
    tz_name: str = "America/Chicago",
) -> datetime:
    """
    Start of the vacation week containing ``value``.

    The week begins at 00:00 local time on ``week_start_day`` (Monday=0) in
    ``tz_name``. The result is returned as a UTC instant so that vacation rows
    and check-in weeks normalized with the same settings compare equal.

    Args:
        value: Any instant inside the week
        week_start_day: Weekday the week starts on (default Saturday)
        tz_name: IANA timezone the week boundary is defined in

    Returns:
        Timezone-aware UTC datetime of the week start
    """
    tz = ZoneInfo(tz_name)
    local = ensure_utc(value).astimezone(tz)
    offset = (local.weekday() - week_start_day) % 7
    start_day = local.date() - timedelta(days=offset)
    local_start = datetime.combine(start_day, time.min, tzinfo=tz)
    return local_start.astimezone(timezone.utc)
