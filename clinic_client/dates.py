"""Calendar helpers that never route a picked day or clock time through UTC.

A date the user taps is a calendar day, and a slot is a wall-clock time at the
clinic. Both are serialized from their own components; converting an aware
datetime to UTC first would move the day for users far from UTC.
"""
from __future__ import annotations
import re
from datetime import date, datetime

SLOT_TIME_REGEX = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")
DATE_ISO_REGEX = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def local_date_format(value: date | datetime) -> str:
    """YYYY-MM-DD from the value's own year/month/day.

    An aware datetime keeps the offset it was created with; it is never
    normalised to UTC.
    """
    return f"{value.year:04d}-{value.month:02d}-{value.day:02d}"


def local_day(value: date | datetime) -> date:
    """Calendar day of a tapped date or datetime."""
    return date(value.year, value.month, value.day)


def parse_local_date(value: str) -> date:
    if not DATE_ISO_REGEX.match(value or ""):
        raise ValueError("Invalid date; use YYYY-MM-DD")
    return date.fromisoformat(value)


def normalize_slot_time(value: str) -> str:
    """Accept H:MM, HH:MM or HH:MM:SS and return HH:MM."""
    match = SLOT_TIME_REGEX.match(value.strip())
    if not match:
        raise ValueError(f"Invalid slot time {value!r}; use HH:MM")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Invalid slot time {value!r}; use HH:MM")
    return f"{hour:02d}:{minute:02d}"


def wall_clock_timestamp(day: date | datetime, slot_time: str) -> str:
    """Combine a calendar day and an HH:MM slot into ``YYYY-MM-DDTHH:MM:SS``.

    The result carries no UTC offset; the backend reads it as clinic local time.
    """
    return f"{local_date_format(day)}T{normalize_slot_time(slot_time)}:00"
