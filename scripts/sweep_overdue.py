from __future__ import annotations

import asyncio

from taxcalendar.core.logging import configure_logging
from taxcalendar.persistence.db import SessionLocal
from taxcalendar.services.calendar.lifecycle import sweep_all_overdue


async def sweep() -> None:
    async with SessionLocal() as session:
        updated = await sweep_all_overdue(session)
        print(f"instances_marked_overdue={updated}")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(sweep())
