"""Pure time and interval helpers shared by the scheduling services."""

from __future__ import annotations

import math
import re
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Iterator

from slotbook.services.exceptions import MalformedTime

_HHMM = re.compile(r"^(\d{2}):(\d{2})$")

MINUTES_PER_DAY = 24 * 60


def parse_time_to_minutes(value: str) -> int:
    """Convert ``HH:MM`` (24-hour) into minutes from midnight."""

    if not isinstance(value, str):
        raise MalformedTime(value)
    match = _HHMM.match(value.strip())
    if not match:
        raise MalformedTime(value)
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise MalformedTime(value)
    return hours * 60 + minutes


def format_minutes(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def overlaps(start_a, end_a, start_b, end_b) -> bool:
    """Half-open interval test: touching intervals do not overlap."""

    return start_a < end_b and end_a > start_b


def day_of_week(value: date) -> int:
    """Weekday index with 0 = Sunday through 6 = Saturday."""

    return (value.weekday() + 1) % 7


def ensure_aware(value: datetime, tz: tzinfo) -> datetime:
    """Interpret naive datetimes as local wall-clock time in ``tz``."""

    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value


def local_midnight(moment: datetime, tz: tzinfo) -> datetime:
    local = ensure_aware(moment, tz).astimezone(tz)
    return datetime.combine(local.date(), time(0), tzinfo=tz)


def at_minutes(day: date, minutes: int, tz: tzinfo) -> datetime:
    return datetime.combine(day, time(0), tzinfo=tz) + timedelta(minutes=minutes)


def minutes_since_midnight(moment: datetime) -> int:
    return moment.hour * 60 + moment.minute


def round_up(minutes: int, step: int) -> int:
    return int(math.ceil(minutes / step)) * step


def candidate_offsets(first: int, last_start: int, step: int) -> Iterator[int]:
    """Yield slot start offsets ``first, first+step, ...`` up to ``last_start``."""

    current = first
    while current <= last_start:
        yield current
        current += step


def iter_days(start: date, end: date) -> Iterator[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def minutes_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / 60
