from __future__ import annotations


class TaxCalendarError(Exception):
    """Base error for the compliance calendar."""


class ValidationError(TaxCalendarError):
    """Malformed rule string, date, time of day, or missing required field."""


class NotFoundError(TaxCalendarError):
    """Profile, template, instance or document missing or owned by another organization."""


class ForbiddenError(TaxCalendarError):
    """Feature not entitled for the organization's plan."""


class ConflictError(TaxCalendarError):
    """Duplicate (template, period) creation; callers treat this as an idempotent skip."""


class InvalidTransitionError(TaxCalendarError):
    """Requested lifecycle action is not allowed from the instance's current status."""

    def __init__(self, message: str, *, current_status: str, action: str) -> None:
        super().__init__(message)
        self.current_status = current_status
        self.action = action


class DatabaseError(TaxCalendarError):
    """Database layer failure."""
