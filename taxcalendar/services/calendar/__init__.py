from __future__ import annotations

from taxcalendar.services.calendar.due_dates import compute_due_at, validate_due_time_local
from taxcalendar.services.calendar.estimator import InvoiceRevenueSource, RevenueSource, estimate_revenue
from taxcalendar.services.calendar.events import CalendarEvent, list_events
from taxcalendar.services.calendar.horizon import HorizonRunSummary, extend_generation_horizon
from taxcalendar.services.calendar.lifecycle import (
    attach_document,
    mark_done,
    mark_skipped,
    mark_started,
    sweep_all_overdue,
    sweep_overdue,
)
from taxcalendar.services.calendar.materializer import GenerationResult, InstanceMaterializer
from taxcalendar.services.calendar.periods import Period, enumerate_periods
from taxcalendar.services.calendar.profiles import (
    ProfileWithTemplates,
    create_template,
    get_profile,
    list_templates,
    update_template,
    upsert_profile,
)
from taxcalendar.services.calendar.rules import RecurrenceRule, parse_rrule
from taxcalendar.services.calendar.seeding import TemplateDraft, default_templates, seed_default_templates


__all__ = [
    "CalendarEvent",
    "GenerationResult",
    "HorizonRunSummary",
    "InstanceMaterializer",
    "InvoiceRevenueSource",
    "Period",
    "ProfileWithTemplates",
    "RecurrenceRule",
    "RevenueSource",
    "TemplateDraft",
    "attach_document",
    "compute_due_at",
    "create_template",
    "default_templates",
    "enumerate_periods",
    "estimate_revenue",
    "extend_generation_horizon",
    "get_profile",
    "list_events",
    "list_templates",
    "mark_done",
    "mark_skipped",
    "mark_started",
    "parse_rrule",
    "seed_default_templates",
    "sweep_all_overdue",
    "sweep_overdue",
    "update_template",
    "upsert_profile",
    "validate_due_time_local",
]
