from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from taxcalendar.domain.calendar import ProfileSettings
from taxcalendar.domain.models import TaxEventTemplate


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TemplateDraft:
    title: str
    kind: str
    rrule: str
    due_offset_days: int
    due_time_local: str
    description: str
    rule: dict[str, Any] = field(default_factory=dict)


BASE_TEMPLATES: tuple[TemplateDraft, ...] = (
    TemplateDraft(
        title="Prepare tax data for the period",
        kind="TASK",
        rrule="FREQ=MONTHLY;INTERVAL=1",
        due_offset_days=0,
        due_time_local="10:00",
        description="Reconcile income and invoices, prepare exports and files.",
        rule={"period": "MONTH"},
    ),
    TemplateDraft(
        title="File the quarterly report (configurable)",
        kind="REPORT",
        rrule="FREQ=QUARTERLY;INTERVAL=1",
        due_offset_days=20,
        due_time_local="18:00",
        description="Quarterly reporting deadline; adjust to your case.",
        rule={"period": "QUARTER"},
    ),
    TemplateDraft(
        title="Pay tax (estimated from paid invoices)",
        kind="PAYMENT",
        rrule="FREQ=QUARTERLY;INTERVAL=1",
        due_offset_days=25,
        due_time_local="18:00",
        description="Amount is estimated from invoices paid during the period.",
        rule={"period": "QUARTER", "estimateFrom": "PAID_INVOICES"},
    ),
)

PAYROLL_TEMPLATE = TemplateDraft(
    title="Payroll taxes and contributions (configurable)",
    kind="PAYMENT",
    rrule="FREQ=MONTHLY;INTERVAL=1",
    due_offset_days=10,
    due_time_local="18:00",
    description="Employees on staff: configure the exact payroll rules.",
    rule={"period": "MONTH", "estimateFrom": "MANUAL"},
)


def default_templates(settings: ProfileSettings, jurisdiction: str) -> list[TemplateDraft]:
    # Static defaults; the only jurisdiction-sensitive switch is the employees flag.
    drafts = list(BASE_TEMPLATES)
    if settings.for_jurisdiction(jurisdiction).has_employees:
        drafts.append(PAYROLL_TEMPLATE)
    return drafts


async def seed_default_templates(
    session: AsyncSession,
    *,
    organization_id: str,
    profile_id: str,
    created_by_id: str,
    settings: ProfileSettings,
    jurisdiction: str,
) -> list[TaxEventTemplate]:
    # Caller decides when to seed (zero templates) and owns the commit.
    seeded_at = datetime.now(timezone.utc)
    templates = [
        TaxEventTemplate(
            id=uuid4().hex,
            organization_id=organization_id,
            profile_id=profile_id,
            created_by_id=created_by_id,
            title=draft.title,
            description=draft.description,
            kind=draft.kind,
            rrule=draft.rrule,
            due_offset_days=draft.due_offset_days,
            due_time_local=draft.due_time_local,
            rule_json=dict(draft.rule),
            is_active=True,
            # Distinct timestamps keep creation order stable within one transaction.
            created_at=seeded_at + timedelta(microseconds=index),
        )
        for index, draft in enumerate(default_templates(settings, jurisdiction))
    ]
    session.add_all(templates)
    logger.info(
        "default_templates_seeded organization_id=%s profile_id=%s count=%s",
        organization_id,
        profile_id,
        len(templates),
    )
    return templates
