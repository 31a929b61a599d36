from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from taxcalendar.domain.models import Invoice


INVOICE_STATUS_PAID = "PAID"


async def sum_paid_totals(
    session: AsyncSession,
    organization_id: str,
    *,
    paid_from: datetime,
    paid_to: datetime,
) -> Decimal | None:
    # Half-open window so an invoice paid exactly at a boundary counts once.
    result = await session.execute(
        select(func.sum(Invoice.total)).where(
            Invoice.organization_id == organization_id,
            Invoice.status == INVOICE_STATUS_PAID,
            Invoice.paid_at >= paid_from,
            Invoice.paid_at < paid_to,
        )
    )
    value = result.scalar()
    if value is None:
        return None
    return Decimal(str(value))
