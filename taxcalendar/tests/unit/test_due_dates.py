from __future__ import annotations

from datetime import datetime, timezone

import pytest

from taxcalendar.core.errors import ValidationError
from taxcalendar.services.calendar.due_dates import (
    compute_due_at,
    parse_time_of_day,
    validate_due_time_local,
)


def _utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def test_quarter_report_due_twenty_days_after_period_end() -> None:
    due_at = compute_due_at(_utc(2025, 4, 1), 20, "18:00")
    assert due_at == _utc(2025, 4, 21, 18, 0)


def test_offset_crosses_month_and_year_boundaries() -> None:
    assert compute_due_at(_utc(2025, 2, 1), 30, "09:30") == _utc(2025, 3, 3, 9, 30)
    assert compute_due_at(_utc(2025, 12, 20), 15, "10:00") == _utc(2026, 1, 4, 10, 0)


def test_zero_offset_keeps_the_day() -> None:
    assert compute_due_at(_utc(2025, 2, 1), 0, "10:00") == _utc(2025, 2, 1, 10, 0)


def test_offset_beyond_calendar_range_is_rejected() -> None:
    with pytest.raises(ValidationError):
        compute_due_at(_utc(2025, 4, 1), 5_000_000, "18:00")


@pytest.mark.parametrize("raw", [None, "", "25:00", "12:61", "noon", "12:5"])
def test_missing_or_malformed_time_uses_default(raw: str | None) -> None:
    assert compute_due_at(_utc(2025, 4, 1), 20, raw) == _utc(2025, 4, 21, 18, 0)


def test_configured_default_time_is_used() -> None:
    due_at = compute_due_at(_utc(2025, 4, 1), 0, None, default_time_local="07:15")
    assert due_at == _utc(2025, 4, 1, 7, 15)


def test_seconds_are_zeroed() -> None:
    period_end = datetime(2025, 4, 1, 0, 0, 42, 1234, tzinfo=timezone.utc)
    due_at = compute_due_at(period_end, 1, "08:05")
    assert (due_at.second, due_at.microsecond) == (0, 0)


def test_parse_time_of_day_accepts_hour_only() -> None:
    assert parse_time_of_day("9") == (9, 0)
    assert parse_time_of_day("23:59") == (23, 59)
    assert parse_time_of_day("24:00") is None


def test_validate_due_time_local_normalizes_or_rejects() -> None:
    assert validate_due_time_local("9:05") == "09:05"
    assert validate_due_time_local(None) is None
    with pytest.raises(ValidationError):
        validate_due_time_local("18h")
