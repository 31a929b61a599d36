from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from taxcalendar.domain.models import TaxEventTemplate


async def list_templates(
    session: AsyncSession,
    organization_id: str,
    profile_id: str,
    *,
    active_only: bool = False,
) -> list[TaxEventTemplate]:
    # Creation order matches the order admins see and the order generation runs in.
    stmt = select(TaxEventTemplate).where(
        TaxEventTemplate.organization_id == organization_id,
        TaxEventTemplate.profile_id == profile_id,
    )
    if active_only:
        stmt = stmt.where(TaxEventTemplate.is_active.is_(True))
    result = await session.execute(
        stmt.order_by(TaxEventTemplate.created_at, TaxEventTemplate.id)
    )
    return list(result.scalars().all())


async def count_templates(session: AsyncSession, organization_id: str, profile_id: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(TaxEventTemplate)
        .where(
            TaxEventTemplate.organization_id == organization_id,
            TaxEventTemplate.profile_id == profile_id,
        )
    )
    return int(result.scalar() or 0)


async def get_template_for_organization(
    session: AsyncSession, organization_id: str, template_id: str
) -> TaxEventTemplate | None:
    # Return None for organization mismatch to keep 404 semantics.
    result = await session.execute(
        select(TaxEventTemplate).where(
            TaxEventTemplate.id == template_id,
            TaxEventTemplate.organization_id == organization_id,
        )
    )
    return result.scalar_one_or_none()


async def get_templates_by_ids(
    session: AsyncSession, organization_id: str, template_ids: list[str]
) -> dict[str, TaxEventTemplate]:
    if not template_ids:
        return {}
    result = await session.execute(
        select(TaxEventTemplate).where(
            TaxEventTemplate.organization_id == organization_id,
            TaxEventTemplate.id.in_(template_ids),
        )
    )
    return {template.id: template for template in result.scalars().all()}
