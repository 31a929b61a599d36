from __future__ import annotations

from dataclasses import dataclass

from taxcalendar.core.errors import ValidationError
from taxcalendar.domain.calendar import FREQUENCY_PERIOD_MODES


_DEFAULT_FREQ = "MONTHLY"


@dataclass(frozen=True)
class RecurrenceRule:
    freq: str
    interval: int

    @property
    def period_mode(self) -> str:
        return FREQUENCY_PERIOD_MODES[self.freq]


def parse_rrule(rrule: str) -> RecurrenceRule:
    """Decode ``FREQ=QUARTERLY;INTERVAL=1`` style rules.

    Keys are case-insensitive and unknown keys are ignored. FREQ falls back to
    MONTHLY and INTERVAL to 1 when absent.
    """
    if rrule is None:
        raise ValidationError("RRULE is required")
    pairs: dict[str, str] = {}
    for raw_part in rrule.split(";"):
        part = raw_part.strip()
        if not part:
            continue
        key, sep, value = part.partition("=")
        if not sep:
            raise ValidationError(f"Malformed RRULE part: {part}")
        pairs[key.strip().upper()] = value.strip()

    freq = (pairs.get("FREQ") or _DEFAULT_FREQ).upper()
    if freq not in FREQUENCY_PERIOD_MODES:
        raise ValidationError(f"Unsupported RRULE freq: {freq}")

    raw_interval = pairs.get("INTERVAL") or "1"
    # Plain ASCII digits only; int() alone also accepts "+2" and "1_0".
    if not (raw_interval.isascii() and raw_interval.isdigit()):
        raise ValidationError(f"Invalid RRULE interval: {raw_interval}")
    interval = int(raw_interval)
    if interval <= 0:
        raise ValidationError(f"Invalid RRULE interval: {raw_interval}")
    return RecurrenceRule(freq=freq, interval=interval)
