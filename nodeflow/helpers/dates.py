"""Date utilities for node code (helpers.dates).

All functions accept a datetime, an ISO-8601 string or epoch seconds and
return timezone-aware UTC datetimes. Naive datetimes are taken as UTC.
"""

from __future__ import annotations

import calendar
import math
import re
from datetime import UTC, datetime, timedelta

__all__ = [
    "to_datetime",
    "format_date",
    "parse_date",
    "add_days",
    "add_hours",
    "add_minutes",
    "add_seconds",
    "subtract_days",
    "diff_days",
    "diff_hours",
    "diff_minutes",
    "is_past",
    "is_future",
    "is_today",
    "start_of_day",
    "end_of_day",
    "start_of_month",
    "end_of_month",
    "get_day_of_week",
    "get_day_name",
    "get_month_name",
    "is_leap_year",
    "get_days_in_month",
    "time_ago",
    "get_timestamp",
    "from_timestamp",
    "to_iso_string",
    "is_same_day",
    "now",
    "create",
]

DateLike = datetime | str | int | float

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]

_FORMAT_TOKEN = re.compile(r"YYYY|YY|MM|DD|HH|mm|ss|SSS")


def now() -> datetime:
    return datetime.now(UTC)


def to_datetime(value: DateLike) -> datetime:
    """
    Convert a date-like value to an aware UTC datetime.

    Raises:
        ValueError: If the value cannot be interpreted as a date
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, bool):
        raise ValueError(f"Unable to parse date: {value!r}")
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value, tz=UTC)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError as e:
            raise ValueError(f"Unable to parse date: {value}") from e
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    raise ValueError(f"Unable to parse date: {value!r}")


def format_date(date: DateLike, fmt: str = "YYYY-MM-DD") -> str:
    """Format with the tokens YYYY YY MM DD HH mm ss SSS."""
    d = to_datetime(date)
    tokens = {
        "YYYY": f"{d.year:04d}",
        "YY": f"{d.year:04d}"[-2:],
        "MM": f"{d.month:02d}",
        "DD": f"{d.day:02d}",
        "HH": f"{d.hour:02d}",
        "mm": f"{d.minute:02d}",
        "ss": f"{d.second:02d}",
        "SSS": f"{d.microsecond // 1000:03d}",
    }
    return _FORMAT_TOKEN.sub(lambda m: tokens[m.group(0)], fmt)


def parse_date(text: str) -> datetime:
    return to_datetime(text)


def add_days(date: DateLike, days: float) -> datetime:
    return to_datetime(date) + timedelta(days=days)


def add_hours(date: DateLike, hours: float) -> datetime:
    return to_datetime(date) + timedelta(hours=hours)


def add_minutes(date: DateLike, minutes: float) -> datetime:
    return to_datetime(date) + timedelta(minutes=minutes)


def add_seconds(date: DateLike, seconds: float) -> datetime:
    return to_datetime(date) + timedelta(seconds=seconds)


def subtract_days(date: DateLike, days: float) -> datetime:
    return add_days(date, -days)


def _abs_seconds(date1: DateLike, date2: DateLike) -> float:
    return abs((to_datetime(date2) - to_datetime(date1)).total_seconds())


def diff_days(date1: DateLike, date2: DateLike) -> int:
    """Absolute difference in days, rounded up."""
    return math.ceil(_abs_seconds(date1, date2) / 86400)


def diff_hours(date1: DateLike, date2: DateLike) -> int:
    return math.ceil(_abs_seconds(date1, date2) / 3600)


def diff_minutes(date1: DateLike, date2: DateLike) -> int:
    return math.ceil(_abs_seconds(date1, date2) / 60)


def is_past(date: DateLike) -> bool:
    return to_datetime(date) < now()


def is_future(date: DateLike) -> bool:
    return to_datetime(date) > now()


def is_same_day(date1: DateLike, date2: DateLike) -> bool:
    return to_datetime(date1).date() == to_datetime(date2).date()


def is_today(date: DateLike) -> bool:
    return is_same_day(date, now())


def start_of_day(date: DateLike) -> datetime:
    return to_datetime(date).replace(hour=0, minute=0, second=0, microsecond=0)


def end_of_day(date: DateLike) -> datetime:
    return to_datetime(date).replace(hour=23, minute=59, second=59, microsecond=999000)


def start_of_month(date: DateLike) -> datetime:
    return start_of_day(date).replace(day=1)


def end_of_month(date: DateLike) -> datetime:
    d = end_of_day(date)
    return d.replace(day=get_days_in_month(d))


def get_day_of_week(date: DateLike) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (to_datetime(date).weekday() + 1) % 7


def get_day_name(date: DateLike, short: bool = False) -> str:
    name = DAY_NAMES[get_day_of_week(date)]
    return name[:3] if short else name


def get_month_name(date: DateLike, short: bool = False) -> str:
    name = MONTH_NAMES[to_datetime(date).month - 1]
    return name[:3] if short else name


def is_leap_year(year: int) -> bool:
    return calendar.isleap(year)


def get_days_in_month(date: DateLike) -> int:
    d = to_datetime(date)
    return calendar.monthrange(d.year, d.month)[1]


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'s' if count > 1 else ''} ago"


def time_ago(date: DateLike, reference: DateLike | None = None) -> str:
    """Relative description such as "just now" or "3 hours ago"."""
    ref = to_datetime(reference) if reference is not None else now()
    seconds = math.floor((ref - to_datetime(date)).total_seconds())
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24

    if seconds < 60:
        return "just now"
    if minutes < 60:
        return _plural(minutes, "minute")
    if hours < 24:
        return _plural(hours, "hour")
    if days < 7:
        return _plural(days, "day")
    if days // 7 < 4:
        return _plural(days // 7, "week")
    if days // 30 < 12:
        return _plural(days // 30, "month")
    return _plural(days // 365, "year")


def get_timestamp(date: DateLike | None = None) -> int:
    """Epoch seconds."""
    return math.floor((to_datetime(date) if date is not None else now()).timestamp())


def from_timestamp(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=UTC)


def to_iso_string(date: DateLike) -> str:
    return to_datetime(date).isoformat()


def create(
    year: int, month: int, day: int = 1, hour: int = 0, minute: int = 0, second: int = 0
) -> datetime:
    """Build a UTC datetime; month is 1-based."""
    return datetime(year, month, day, hour, minute, second, tzinfo=UTC)
