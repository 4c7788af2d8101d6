from __future__ import annotations

import datetime
from typing import Optional, Union

from errors import InvalidDay, InvalidRange

DAYS_OF_WEEK = {
    1: ("Monday", "Mon"),
    2: ("Tuesday", "Tue"),
    3: ("Wednesday", "Wed"),
    4: ("Thursday", "Thu"),
    5: ("Friday", "Fri"),
    6: ("Saturday", "Sat"),
    7: ("Sunday", "Sun"),
}

ClockValue = Union[str, datetime.time]


def parse_clock(value: ClockValue, *, field: str = "time") -> datetime.time:
    """Return a wall-clock time from a ``datetime.time`` or an ``HH:MM[:SS]`` label."""
    if isinstance(value, datetime.datetime):
        return value.time().replace(tzinfo=None)
    if isinstance(value, datetime.time):
        return value.replace(tzinfo=None, microsecond=0)
    label = (value or "").strip() if isinstance(value, str) else ""
    if not label or ":" not in label:
        raise InvalidRange(f"{field} must be HH:MM, got {value!r}.", field=field, value=value)
    try:
        parsed = datetime.time.fromisoformat(label.zfill(5) if label.count(":") == 1 else label)
    except ValueError as exc:
        raise InvalidRange(f"{field} must be HH:MM, got {value!r}.", field=field, value=value) from exc
    return parsed.replace(microsecond=0)


def format_clock(value: Optional[datetime.time]) -> Optional[str]:
    if value is None:
        return None
    return value.strftime("%H:%M")


def validate_window(start: ClockValue, end: ClockValue) -> tuple[datetime.time, datetime.time]:
    """Parse and check a same-day window; overnight wraparound is rejected."""
    start_time = parse_clock(start, field="start_time")
    end_time = parse_clock(end, field="end_time")
    if start_time >= end_time:
        raise InvalidRange(
            f"start_time {format_clock(start_time)} must be before end_time {format_clock(end_time)}.",
            start_time=format_clock(start_time),
            end_time=format_clock(end_time),
        )
    return start_time, end_time


def validate_day(day_of_week, allowed_days) -> int:
    try:
        day = int(day_of_week)
    except (TypeError, ValueError) as exc:
        raise InvalidDay(f"day_of_week must be an integer, got {day_of_week!r}.", day_of_week=day_of_week) from exc
    allowed = sorted(int(d) for d in allowed_days)
    if day not in allowed:
        raise InvalidDay(
            f"day_of_week {day} is not a scheduling day.",
            day_of_week=day,
            allowed=allowed,
        )
    return day


def intervals_overlap(
    a_start: datetime.time,
    a_end: datetime.time,
    b_start: datetime.time,
    b_end: datetime.time,
) -> bool:
    """Half-open intervals [a, b) and [c, d) overlap iff a < d and c < b."""
    return a_start < b_end and b_start < a_end


def day_label(day_of_week: int, short: bool = False) -> str:
    names = DAYS_OF_WEEK.get(int(day_of_week))
    if not names:
        return str(day_of_week)
    return names[1] if short else names[0]


def normalize_week_start(date_value: datetime.date | datetime.datetime | str) -> datetime.date:
    """Return the Monday for the provided date."""
    if isinstance(date_value, str):
        try:
            date_value = datetime.date.fromisoformat(date_value.strip())
        except ValueError as exc:
            raise InvalidRange(f"week must be YYYY-MM-DD, got {date_value!r}.", value=date_value) from exc
    if isinstance(date_value, datetime.datetime):
        date_value = date_value.date()
    if not isinstance(date_value, datetime.date):
        raise TypeError("week must be a date, datetime or ISO date string.")
    weekday = date_value.weekday()
    if weekday == 0:
        return date_value
    return date_value - datetime.timedelta(days=weekday)


def resolve_week(week: datetime.date | datetime.datetime | str | None, today: Optional[datetime.date] = None) -> datetime.date:
    """Resolve ``current``/``next``/``previous`` or a concrete date to that week's Monday."""
    today = today or datetime.date.today()
    if week is None:
        return normalize_week_start(today)
    if isinstance(week, str):
        token = week.strip().lower()
        if token in ("", "current"):
            return normalize_week_start(today)
        if token == "next":
            return normalize_week_start(today + datetime.timedelta(days=7))
        if token == "previous":
            return normalize_week_start(today - datetime.timedelta(days=7))
    return normalize_week_start(week)


def date_for_day(week_start: datetime.date, day_of_week: int) -> datetime.date:
    return week_start + datetime.timedelta(days=int(day_of_week) - 1)


def format_week_label(week_start: datetime.date) -> str:
    iso_year, iso_week, _ = week_start.isocalendar()
    end = week_start + datetime.timedelta(days=6)
    start_str = week_start.strftime("%b %d")
    end_str = end.strftime("%b %d")
    if week_start.year != end.year:
        start_str = week_start.strftime("%b %d %Y")
        end_str = end.strftime("%b %d %Y")
    return f"{iso_year} W{iso_week:02d} ({start_str} - {end_str})"
