from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taxcalendar.domain.models import TaxProfile


async def get_profile_for_organization(session: AsyncSession, organization_id: str) -> TaxProfile | None:
    result = await session.execute(
        select(TaxProfile).where(TaxProfile.organization_id == organization_id)
    )
    return result.scalar_one_or_none()


async def list_profile_organization_ids(session: AsyncSession) -> list[str]:
    # Stable ordering keeps scheduler runs reproducible across restarts.
    result = await session.execute(
        select(TaxProfile.organization_id).order_by(TaxProfile.organization_id)
    )
    return list(result.scalars().all())
