"""
Time helpers
HH:MM parsing, patient-local day boundaries and quiet-hour windows
"""

import re
from datetime import datetime, date, time, timedelta, timezone
from typing import Callable, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


HHMM_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")

MINUTES_PER_DAY = 24 * 60

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Timezone-aware current UTC time (the default clock)."""
    return datetime.now(timezone.utc)


def is_valid_hhmm(value) -> bool:
    return isinstance(value, str) and bool(HHMM_PATTERN.match(value))


def parse_hhmm(value: str) -> int:
    """Minutes after midnight for a 24-hour HH:MM string."""
    if not is_valid_hhmm(value):
        raise ValueError(f"Invalid time format '{value}', expected HH:MM (24-hour)")
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def format_hhmm(minutes: int) -> str:
    minutes = int(minutes) % MINUTES_PER_DAY
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def normalize_hhmm(value: str) -> str:
    """'8:05' -> '08:05'"""
    return format_hhmm(parse_hhmm(value))


def get_zone(tz_name: Optional[str], fallback: str = "UTC") -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or fallback)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(fallback)


def is_valid_timezone(tz_name: str) -> bool:
    try:
        ZoneInfo(tz_name)
        return True
    except (ZoneInfoNotFoundError, ValueError):
        return False


def local_date(instant: datetime, tz_name: str) -> date:
    return instant.astimezone(get_zone(tz_name)).date()


def day_bounds(day: date, tz_name: str) -> Tuple[datetime, datetime]:
    """UTC [start, end) of a patient-local calendar day."""
    zone = get_zone(tz_name)
    start = datetime.combine(day, time.min, tzinfo=zone)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def local_instant(day: date, hhmm: str, tz_name: str) -> datetime:
    """UTC instant for a local clock time on a local date."""
    minutes = parse_hhmm(hhmm)
    local = datetime.combine(day, time(minutes // 60, minutes % 60), tzinfo=get_zone(tz_name))
    return local.astimezone(timezone.utc)


def in_clock_window(minute_of_day: int, start: str, end: str) -> bool:
    """
    Whether a minute-of-day falls inside [start, end).
    Windows whose start is after their end wrap past midnight (22:00-07:00).
    """
    start_m = parse_hhmm(start)
    end_m = parse_hhmm(end)
    if start_m == end_m:
        return False
    if start_m < end_m:
        return start_m <= minute_of_day < end_m
    return minute_of_day >= start_m or minute_of_day < end_m


def quiet_window_end(now: datetime, start: str, end: str, tz_name: str) -> Optional[datetime]:
    """
    If now (an instant) is inside the local quiet window, return the UTC
    instant the window ends; otherwise None.
    """
    local_now = now.astimezone(get_zone(tz_name))
    minute = local_now.hour * 60 + local_now.minute
    if not in_clock_window(minute, start, end):
        return None

    end_day = local_now.date()
    if minute >= parse_hhmm(end):
        end_day = end_day + timedelta(days=1)
    return local_instant(end_day, end, tz_name)


def iter_dates(start: date, end: date):
    """Inclusive date range."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)
