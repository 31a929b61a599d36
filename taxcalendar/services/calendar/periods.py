"""Calendar-aligned period arithmetic.

Periods are half-open ``[start, end)`` windows on real calendar boundaries in
UTC: months of varying length, quarters starting in January/April/July/October,
and calendar years.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from taxcalendar.core.errors import ValidationError


_MONTHS_PER_MODE = {"MONTH": 1, "QUARTER": 3, "YEAR": 12}


@dataclass(frozen=True)
class Period:
    start: datetime
    end: datetime

    def contains(self, value: datetime) -> bool:
        return self.start <= value < self.end


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _months_in(mode: str) -> int:
    try:
        return _MONTHS_PER_MODE[mode]
    except KeyError as exc:
        raise ValidationError(f"Unsupported period mode: {mode}") from exc


def _month_index(value: datetime) -> int:
    # Months elapsed since year 0; lets all three modes share one stepping rule.
    return value.year * 12 + (value.month - 1)


def _from_month_index(index: int) -> datetime:
    year, month0 = divmod(index, 12)
    return datetime(year, month0 + 1, 1, tzinfo=timezone.utc)


def period_containing(mode: str, value: datetime) -> Period:
    step = _months_in(mode)
    index = _month_index(_as_utc(value))
    start_index = index - (index % step)
    return Period(
        start=_from_month_index(start_index),
        end=_from_month_index(start_index + step),
    )


def period_ordinal(mode: str, period: Period) -> int:
    return _month_index(period.start) // _months_in(mode)


def enumerate_periods(
    mode: str,
    range_start: datetime,
    range_end: datetime,
    *,
    interval: int = 1,
) -> list[Period]:
    """Return the periods of ``mode`` overlapping ``[range_start, range_end)``.

    The first period is the one containing ``range_start``; enumeration stops
    once a period starts at or after ``range_end``. With ``interval > 1`` only
    periods whose calendar ordinal is a multiple of the interval are kept, so
    the selection does not depend on where the window starts.
    """
    if interval <= 0:
        raise ValidationError(f"Invalid interval: {interval}")
    start = _as_utc(range_start)
    end = _as_utc(range_end)
    periods: list[Period] = []
    current = period_containing(mode, start)
    while current.start < end:
        if period_ordinal(mode, current) % interval == 0:
            periods.append(current)
        current = period_containing(mode, current.end)
    return periods
