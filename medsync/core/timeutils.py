"""
Time helpers shared across services
HH:MM clock arithmetic, UTC timestamps and ISO parsing
"""

import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import TypeAdapter

TIME_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")
ISO_DATETIME_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}")

MINUTES_PER_DAY = 24 * 60

_datetime_adapter = TypeAdapter(datetime)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are treated as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(_datetime_adapter.validate_python(value))


def looks_like_datetime(value: Any) -> bool:
    return isinstance(value, str) and bool(ISO_DATETIME_PATTERN.match(value))


def is_valid_time(value: Any) -> bool:
    return isinstance(value, str) and bool(TIME_PATTERN.match(value))


def time_to_minutes(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def minutes_to_time(minutes: int) -> str:
    minutes = int(minutes) % MINUTES_PER_DAY
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def normalize_time(value: str) -> str:
    """'8:05' -> '08:05'"""
    return minutes_to_time(time_to_minutes(value))


def get_zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def is_valid_timezone(name: Optional[str]) -> bool:
    if not name:
        return False
    try:
        ZoneInfo(name)
        return True
    except (ZoneInfoNotFoundError, ValueError):
        return False


def combine_local(day: date, clock: str, tz_name: str) -> datetime:
    """Local wall-clock time on a given day, returned in UTC"""
    hours, minutes = (int(part) for part in clock.split(":"))
    local = datetime(day.year, day.month, day.day, hours, minutes, tzinfo=ZoneInfo(tz_name))
    return local.astimezone(timezone.utc)


def previous_day_bounds(tz_name: str, now: Optional[datetime] = None) -> Tuple[datetime, datetime, str]:
    """Yesterday's local midnight-to-midnight window in UTC, plus its YYYY-MM-DD label

    The end bound is exclusive (today's local midnight).
    """
    zone = ZoneInfo(tz_name)
    local_now = ensure_utc(now or utcnow()).astimezone(zone)
    today = local_now.date()
    yesterday = today - timedelta(days=1)
    start = datetime(yesterday.year, yesterday.month, yesterday.day, tzinfo=zone)
    end = datetime(today.year, today.month, today.day, tzinfo=zone)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc), yesterday.isoformat()
