from __future__ import annotations

import pytest

from taxcalendar.core.config import get_settings
from taxcalendar.persistence.db import SessionLocal
from taxcalendar.tests.utils.calendar import (
    cleanup_organization,
    create_instance,
    create_profile,
    create_template,
    list_instances,
    new_organization_id,
    utc,
)
from taxcalendar.workers.calendar_worker import WorkerSettings, extend_horizon, sweep_overdue_job


def test_worker_registers_daily_horizon_cron() -> None:
    settings = get_settings()
    assert extend_horizon in WorkerSettings.functions
    assert sweep_overdue_job in WorkerSettings.functions
    assert WorkerSettings.queue_name == settings.worker_queue_name
    (job,) = WorkerSettings.cron_jobs
    assert job.hour == {settings.generation_cron_hour}
    assert job.minute == {settings.generation_cron_minute}
    assert job.unique is True


@pytest.mark.asyncio
async def test_sweep_job_marks_past_due_instances() -> None:
    organization_id = new_organization_id()
    try:
        async with SessionLocal() as session:
            template = await create_template(session, await create_profile(session, organization_id))
            await create_instance(session, template, period_start=utc(2024, 1, 1), due_at=utc(2024, 2, 1))

        updated = await sweep_overdue_job({})

        async with SessionLocal() as session:
            statuses = [instance.status for instance in await list_instances(session, organization_id)]
        assert updated >= 1
        assert statuses == ["OVERDUE"]
    finally:
        await cleanup_organization(organization_id)


@pytest.mark.asyncio
async def test_extend_horizon_job_returns_run_summary() -> None:
    summary = await extend_horizon({})
    assert set(summary) == {"organizations", "succeeded", "failed", "created", "skipped"}
