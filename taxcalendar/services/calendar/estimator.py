from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from taxcalendar.persistence.repos import invoices as invoices_repo
from taxcalendar.services.calendar.periods import Period


class RevenueSource(Protocol):
    async def sum_paid_totals(
        self, organization_id: str, *, paid_from: datetime, paid_to: datetime
    ) -> Decimal | None:
        ...


class InvoiceRevenueSource:
    # Aggregate paid invoice totals from the billing read model.
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def sum_paid_totals(
        self, organization_id: str, *, paid_from: datetime, paid_to: datetime
    ) -> Decimal | None:
        return await invoices_repo.sum_paid_totals(
            self._session, organization_id, paid_from=paid_from, paid_to=paid_to
        )


async def estimate_revenue(source: RevenueSource, organization_id: str, period: Period) -> str:
    # Serialize as a string so the frozen snapshot never goes through float.
    total = await source.sum_paid_totals(
        organization_id, paid_from=period.start, paid_to=period.end
    )
    if total is None:
        return "0"
    return str(total)
