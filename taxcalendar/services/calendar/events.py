from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from taxcalendar.core.errors import ValidationError
from taxcalendar.domain.models import TaxEventAttachment, TaxEventInstance, TaxEventTemplate
from taxcalendar.persistence.repos import instances as instances_repo
from taxcalendar.persistence.repos import templates as templates_repo
from taxcalendar.services.calendar.lifecycle import sweep_overdue


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CalendarEvent:
    instance: TaxEventInstance
    template: TaxEventTemplate | None
    attachments: list[TaxEventAttachment]


async def list_events(
    session: AsyncSession,
    organization_id: str,
    range_start: datetime,
    range_end: datetime,
    *,
    now: datetime | None = None,
) -> list[CalendarEvent]:
    """Return instances due in ``[range_start, range_end)`` ordered by due time.

    The overdue sweep runs first so statuses read here are never stale.
    """
    if range_start >= range_end:
        raise ValidationError("'from' must be earlier than 'to'")
    await sweep_overdue(session, organization_id, now=now)

    instances = await instances_repo.list_instances_due_between(
        session, organization_id, due_from=range_start, due_to=range_end
    )
    template_ids = sorted({instance.template_id for instance in instances})
    templates = await templates_repo.get_templates_by_ids(session, organization_id, template_ids)
    attachments = await instances_repo.list_attachments_for_events(
        session, [instance.id for instance in instances]
    )
    logger.debug(
        "tax_events_listed organization_id=%s count=%s", organization_id, len(instances)
    )
    return [
        CalendarEvent(
            instance=instance,
            template=templates.get(instance.template_id),
            attachments=attachments.get(instance.id, []),
        )
        for instance in instances
    ]
