from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from taxcalendar.domain.calendar import STATUS_OVERDUE, STATUS_UPCOMING, SWEEPABLE_STATUSES
from taxcalendar.domain.models import TaxEventAttachment, TaxEventInstance


async def get_instance_for_organization(
    session: AsyncSession, organization_id: str, instance_id: str
) -> TaxEventInstance | None:
    # Return None for organization mismatch to keep 404 semantics.
    result = await session.execute(
        select(TaxEventInstance).where(
            TaxEventInstance.id == instance_id,
            TaxEventInstance.organization_id == organization_id,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_by_period(
    session: AsyncSession,
    *,
    template_id: str,
    period_start: datetime,
    period_end: datetime,
) -> TaxEventInstance | None:
    result = await session.execute(
        select(TaxEventInstance).where(
            TaxEventInstance.template_id == template_id,
            TaxEventInstance.period_start == period_start,
            TaxEventInstance.period_end == period_end,
        )
    )
    return result.scalar_one_or_none()


def build_instance(
    *,
    instance_id: str,
    organization_id: str,
    template_id: str,
    period_start: datetime,
    period_end: datetime,
    due_at: datetime,
    meta_json: dict[str, Any],
) -> TaxEventInstance:
    # Instances always start UPCOMING; lifecycle actions own every later change.
    return TaxEventInstance(
        id=instance_id,
        organization_id=organization_id,
        template_id=template_id,
        period_start=period_start,
        period_end=period_end,
        due_at=due_at,
        status=STATUS_UPCOMING,
        meta_json=meta_json,
    )


async def mark_overdue(
    session: AsyncSession,
    *,
    now: datetime,
    organization_id: str | None = None,
) -> int:
    # Single conditional UPDATE; concurrent sweeps converge on the same rows.
    stmt = (
        update(TaxEventInstance)
        .where(
            TaxEventInstance.due_at < now,
            TaxEventInstance.status.in_(SWEEPABLE_STATUSES),
        )
        .values(status=STATUS_OVERDUE)
        .execution_options(synchronize_session=False)
    )
    if organization_id is not None:
        stmt = stmt.where(TaxEventInstance.organization_id == organization_id)
    result = await session.execute(stmt)
    return result.rowcount or 0


async def list_instances_due_between(
    session: AsyncSession,
    organization_id: str,
    *,
    due_from: datetime,
    due_to: datetime,
) -> list[TaxEventInstance]:
    result = await session.execute(
        select(TaxEventInstance)
        .where(
            TaxEventInstance.organization_id == organization_id,
            TaxEventInstance.due_at >= due_from,
            TaxEventInstance.due_at < due_to,
        )
        .order_by(TaxEventInstance.due_at, TaxEventInstance.id)
        # Bulk sweeps bypass the identity map; reload status from the row.
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def count_instances(
    session: AsyncSession, organization_id: str, *, template_id: str | None = None
) -> int:
    stmt = (
        select(func.count())
        .select_from(TaxEventInstance)
        .where(TaxEventInstance.organization_id == organization_id)
    )
    if template_id is not None:
        stmt = stmt.where(TaxEventInstance.template_id == template_id)
    result = await session.execute(stmt)
    return int(result.scalar() or 0)


async def create_attachment(
    session: AsyncSession, *, attachment_id: str, event_id: str, document_id: str
) -> TaxEventAttachment:
    attachment = TaxEventAttachment(id=attachment_id, event_id=event_id, document_id=document_id)
    session.add(attachment)
    return attachment


async def list_attachments_for_events(
    session: AsyncSession, event_ids: list[str]
) -> dict[str, list[TaxEventAttachment]]:
    # Group attachments per event in one query instead of one per instance.
    if not event_ids:
        return {}
    result = await session.execute(
        select(TaxEventAttachment)
        .where(TaxEventAttachment.event_id.in_(event_ids))
        .order_by(TaxEventAttachment.created_at, TaxEventAttachment.id)
    )
    grouped: dict[str, list[TaxEventAttachment]] = {}
    for attachment in result.scalars().all():
        grouped.setdefault(attachment.event_id, []).append(attachment)
    return grouped
