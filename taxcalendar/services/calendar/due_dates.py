from __future__ import annotations

from datetime import datetime, timedelta
import re

from taxcalendar.core.config import DEFAULT_DUE_TIME_LOCAL
from taxcalendar.core.errors import ValidationError


_TIME_PATTERN = re.compile(r"^\s*(\d{1,2})(?::(\d{2}))?\s*$")


def parse_time_of_day(value: str | None) -> tuple[int, int] | None:
    # Return None for anything that is not a real wall clock time.
    if value is None:
        return None
    match = _TIME_PATTERN.match(value)
    if match is None:
        return None
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    if hour > 23 or minute > 59:
        return None
    return hour, minute


def validate_due_time_local(value: str | None) -> str | None:
    # Boundary check for admin input; computation itself stays lenient.
    if value is None:
        return None
    parsed = parse_time_of_day(value)
    if parsed is None:
        raise ValidationError(f"Invalid dueTimeLocal, expected HH:MM: {value}")
    return f"{parsed[0]:02d}:{parsed[1]:02d}"


def compute_due_at(
    period_end: datetime,
    due_offset_days: int,
    due_time_local: str | None,
    *,
    default_time_local: str = DEFAULT_DUE_TIME_LOCAL,
) -> datetime:
    """Shift the period end by whole calendar days and pin the time of day.

    The wall clock is applied as-is; no timezone conversion happens here.
    """
    parsed = parse_time_of_day(due_time_local) or parse_time_of_day(default_time_local)
    if parsed is None:
        parsed = parse_time_of_day(DEFAULT_DUE_TIME_LOCAL)
    hour, minute = parsed
    try:
        shifted = period_end + timedelta(days=due_offset_days)
    except OverflowError as exc:
        raise ValidationError(f"dueOffsetDays out of range: {due_offset_days}") from exc
    return shifted.replace(hour=hour, minute=minute, second=0, microsecond=0)
