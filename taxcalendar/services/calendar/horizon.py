from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from taxcalendar.core.config import get_settings
from taxcalendar.persistence.db import SessionLocal
from taxcalendar.persistence.repos import cursors as cursors_repo
from taxcalendar.persistence.repos import profiles as profiles_repo
from taxcalendar.services.audit import HORIZON_EXTENDED, OUTCOME_FAILURE, record_event
from taxcalendar.services.calendar.lifecycle import sweep_overdue
from taxcalendar.services.calendar.materializer import GenerationResult, InstanceMaterializer
from taxcalendar.services.calendar.periods import period_containing
from taxcalendar.services.entitlements import (
    FEATURE_COMPLIANCE_CALENDAR,
    list_entitled_organization_ids,
)


logger = logging.getLogger(__name__)

RUN_STATUS_SUCCEEDED = "succeeded"
RUN_STATUS_PARTIAL = "partial"
RUN_STATUS_FAILED = "failed"

_MAX_ERROR_LENGTH = 500


@dataclass
class HorizonRunSummary:
    organizations: int = 0
    succeeded: int = 0
    failed: int = 0
    created: int = 0
    skipped: int = 0
    failed_organization_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, int]:
        return {
            "organizations": self.organizations,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "created": self.created,
            "skipped": self.skipped,
        }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generation_window(
    now: datetime,
    generated_through: datetime | None,
    horizon_days: int,
) -> tuple[datetime, datetime]:
    # Every run re-covers the current month; an older mark held back by failures starts earlier.
    start = period_containing("MONTH", now).start
    if generated_through is not None and generated_through < start:
        start = generated_through
    return start, now + timedelta(days=horizon_days)


async def extend_organization_horizon(
    session: AsyncSession,
    organization_id: str,
    *,
    now: datetime,
    horizon_days: int,
    materializer: InstanceMaterializer,
) -> GenerationResult:
    await sweep_overdue(session, organization_id, now=now)
    cursor = await cursors_repo.get_cursor(session, organization_id)
    previous_mark = cursor.generated_through if cursor is not None else None
    start, end = generation_window(now, previous_mark, horizon_days)
    if start >= end:
        result = GenerationResult()
    else:
        result = await materializer.generate(session, organization_id, start, end)

    # Hold the mark back while periods failed so the next run retries them.
    clean = result.failed == 0
    await cursors_repo.record_run(
        session,
        organization_id,
        run_at=now,
        status=RUN_STATUS_SUCCEEDED if clean else RUN_STATUS_PARTIAL,
        generated_through=max(end, previous_mark or end) if clean else None,
    )
    await session.commit()
    return result


async def _record_failure(
    session_factory: Callable[[], AsyncSession],
    organization_id: str,
    *,
    now: datetime,
    error: str,
) -> None:
    async with session_factory() as session:
        await cursors_repo.record_run(
            session,
            organization_id,
            run_at=now,
            status=RUN_STATUS_FAILED,
            error=error[:_MAX_ERROR_LENGTH],
        )
        await session.commit()


async def extend_generation_horizon(
    *,
    session_factory: Callable[[], AsyncSession] = SessionLocal,
    now: datetime | None = None,
    horizon_days: int | None = None,
    materializer: InstanceMaterializer | None = None,
) -> HorizonRunSummary:
    """Sweep and materialize up to ``now + horizon_days`` for every entitled organization.

    Every organization runs in its own session; a failure is logged and stored
    on that organization's cursor and the loop moves on to the next one.
    """
    settings = get_settings()
    resolved_now = now or _utc_now()
    resolved_horizon = horizon_days if horizon_days is not None else settings.generation_horizon_days
    resolved_materializer = materializer or InstanceMaterializer()

    async with session_factory() as session:
        organization_ids = await profiles_repo.list_profile_organization_ids(session)
        organization_ids = await list_entitled_organization_ids(
            session, organization_ids, FEATURE_COMPLIANCE_CALENDAR
        )

    summary = HorizonRunSummary(organizations=len(organization_ids))
    for organization_id in organization_ids:
        try:
            async with session_factory() as session:
                result = await extend_organization_horizon(
                    session,
                    organization_id,
                    now=resolved_now,
                    horizon_days=resolved_horizon,
                    materializer=resolved_materializer,
                )
        except Exception as exc:  # noqa: BLE001 - one organization must not stop the scheduler run.
            logger.exception("horizon_extension_failed organization_id=%s", organization_id)
            summary.failed += 1
            summary.failed_organization_ids.append(organization_id)
            await _record_failure(session_factory, organization_id, now=resolved_now, error=str(exc))
            await record_event(
                organization_id=organization_id,
                event_type=HORIZON_EXTENDED,
                outcome=OUTCOME_FAILURE,
                resource_type="generation_cursor",
                resource_id=organization_id,
                error_code=type(exc).__name__,
            )
            continue

        summary.succeeded += 1
        summary.created += result.created
        summary.skipped += result.skipped
        await record_event(
            organization_id=organization_id,
            event_type=HORIZON_EXTENDED,
            resource_type="generation_cursor",
            resource_id=organization_id,
            metadata={**result.as_dict(), "horizon_days": resolved_horizon},
        )

    logger.info(
        "horizon_extension_completed organizations=%s succeeded=%s failed=%s created=%s",
        summary.organizations,
        summary.succeeded,
        summary.failed,
        summary.created,
    )
    return summary
