from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from taxcalendar.domain.models import (
    ApiKey,
    AuditEvent,
    Document,
    GenerationCursor,
    Invoice,
    OrganizationFeatureOverride,
    OrganizationPlanAssignment,
    TaxEventAttachment,
    TaxEventInstance,
    TaxEventTemplate,
    TaxProfile,
    User,
)
from taxcalendar.persistence.db import SessionLocal


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def new_organization_id(label: str = "org") -> str:
    return f"{label}-{uuid4().hex}"


async def create_profile(
    session: AsyncSession,
    organization_id: str,
    *,
    settings: dict[str, Any] | None = None,
    entity_type: str = "FOP",
) -> TaxProfile:
    # Bypasses upsert so tests control exactly which templates exist.
    profile = TaxProfile(
        id=uuid4().hex,
        organization_id=organization_id,
        created_by_id="test-user",
        jurisdiction="UA",
        entity_type=entity_type,
        settings_json=settings or {},
        timezone="Europe/Kyiv",
    )
    session.add(profile)
    await session.commit()
    return profile


async def create_template(
    session: AsyncSession,
    profile: TaxProfile,
    *,
    rrule: str = "FREQ=MONTHLY;INTERVAL=1",
    kind: str = "TASK",
    due_offset_days: int = 0,
    due_time_local: str | None = "18:00",
    rule: dict[str, Any] | None = None,
    is_active: bool = True,
    created_at: datetime | None = None,
) -> TaxEventTemplate:
    template = TaxEventTemplate(
        id=uuid4().hex,
        organization_id=profile.organization_id,
        profile_id=profile.id,
        created_by_id="test-user",
        title=f"{kind.title()} template",
        description=None,
        kind=kind,
        rrule=rrule,
        due_offset_days=due_offset_days,
        due_time_local=due_time_local,
        rule_json=rule,
        is_active=is_active,
    )
    if created_at is not None:
        template.created_at = created_at
    session.add(template)
    await session.commit()
    return template


async def create_instance(
    session: AsyncSession,
    template: TaxEventTemplate,
    *,
    period_start: datetime,
    due_at: datetime,
    status: str = "UPCOMING",
) -> TaxEventInstance:
    instance = TaxEventInstance(
        id=uuid4().hex,
        organization_id=template.organization_id,
        template_id=template.id,
        period_start=period_start,
        period_end=period_start + timedelta(days=28),
        due_at=due_at,
        status=status,
        meta_json={},
    )
    session.add(instance)
    await session.commit()
    return instance


async def create_invoice(
    session: AsyncSession,
    organization_id: str,
    *,
    total: str,
    paid_at: datetime | None,
    status: str = "PAID",
) -> Invoice:
    invoice = Invoice(
        id=uuid4().hex,
        organization_id=organization_id,
        status=status,
        total=Decimal(total),
        currency="UAH",
        paid_at=paid_at,
    )
    session.add(invoice)
    await session.commit()
    return invoice


async def create_document(session: AsyncSession, organization_id: str) -> Document:
    document = Document(
        id=uuid4().hex,
        organization_id=organization_id,
        filename="declaration.pdf",
        content_type="application/pdf",
    )
    session.add(document)
    await session.commit()
    return document


async def list_instances(session: AsyncSession, organization_id: str) -> list[TaxEventInstance]:
    result = await session.execute(
        select(TaxEventInstance)
        .where(TaxEventInstance.organization_id == organization_id)
        .order_by(TaxEventInstance.due_at, TaxEventInstance.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def cleanup_organization(organization_id: str) -> None:
    # Delete children before parents to satisfy FK constraints.
    async with SessionLocal() as session:
        instance_ids = select(TaxEventInstance.id).where(
            TaxEventInstance.organization_id == organization_id
        )
        await session.execute(
            delete(TaxEventAttachment).where(TaxEventAttachment.event_id.in_(instance_ids))
        )
        await session.execute(
            delete(TaxEventInstance).where(TaxEventInstance.organization_id == organization_id)
        )
        await session.execute(
            delete(TaxEventTemplate).where(TaxEventTemplate.organization_id == organization_id)
        )
        await session.execute(delete(TaxProfile).where(TaxProfile.organization_id == organization_id))
        await session.execute(
            delete(GenerationCursor).where(GenerationCursor.organization_id == organization_id)
        )
        await session.execute(delete(Invoice).where(Invoice.organization_id == organization_id))
        await session.execute(delete(Document).where(Document.organization_id == organization_id))
        await session.execute(delete(AuditEvent).where(AuditEvent.organization_id == organization_id))
        await session.execute(delete(ApiKey).where(ApiKey.organization_id == organization_id))
        await session.execute(delete(User).where(User.organization_id == organization_id))
        await session.execute(
            delete(OrganizationFeatureOverride).where(
                OrganizationFeatureOverride.organization_id == organization_id
            )
        )
        await session.execute(
            delete(OrganizationPlanAssignment).where(
                OrganizationPlanAssignment.organization_id == organization_id
            )
        )
        await session.commit()
