from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taxcalendar.domain.models import GenerationCursor


async def get_cursor(session: AsyncSession, organization_id: str) -> GenerationCursor | None:
    result = await session.execute(
        select(GenerationCursor).where(GenerationCursor.organization_id == organization_id)
    )
    return result.scalar_one_or_none()


async def record_run(
    session: AsyncSession,
    organization_id: str,
    *,
    run_at: datetime,
    status: str,
    generated_through: datetime | None = None,
    error: str | None = None,
) -> GenerationCursor:
    # Only advance the high-water mark on success; failures keep the old mark for retry.
    cursor = await get_cursor(session, organization_id)
    if cursor is None:
        cursor = GenerationCursor(organization_id=organization_id)
        session.add(cursor)
    cursor.last_run_at = run_at
    cursor.last_status = status
    cursor.last_error = error
    if generated_through is not None:
        cursor.generated_through = generated_through
    return cursor
