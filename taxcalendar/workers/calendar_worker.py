from __future__ import annotations

import asyncio
import logging

from arq import cron
from arq.connections import RedisSettings

from taxcalendar.core.config import get_settings
from taxcalendar.core.logging import configure_logging
from taxcalendar.persistence.db import SessionLocal
from taxcalendar.services.calendar.horizon import extend_generation_horizon
from taxcalendar.services.calendar.lifecycle import sweep_all_overdue


logger = logging.getLogger(__name__)


async def extend_horizon(ctx) -> dict[str, int]:
    # Daily materialization run; per-organization failures are isolated inside.
    summary = await extend_generation_horizon(session_factory=SessionLocal)
    return summary.as_dict()


async def sweep_overdue_job(ctx) -> int:
    async with SessionLocal() as session:
        return await sweep_all_overdue(session)


async def _sweep_loop() -> None:
    # Keep statuses fresh for organizations nobody is currently reading.
    settings = get_settings()
    interval_s = max(60, int(settings.sweep_interval_minutes) * 60)
    while True:
        try:
            async with SessionLocal() as session:
                await sweep_all_overdue(session)
        except Exception:  # noqa: BLE001 - keep the sweep loop alive while surfacing failures in worker logs.
            logger.exception("overdue sweep loop failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    ctx["sweep_task"] = asyncio.create_task(_sweep_loop())


async def _shutdown(ctx) -> None:
    task = ctx.get("sweep_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.worker_queue_name
    functions = [extend_horizon, sweep_overdue_job]
    cron_jobs = [
        cron(
            extend_horizon,
            hour={settings.generation_cron_hour},
            minute={settings.generation_cron_minute},
            run_at_startup=False,
            unique=True,
        )
    ]
    on_startup = _startup
    on_shutdown = _shutdown
