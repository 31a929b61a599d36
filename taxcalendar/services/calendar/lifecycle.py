from __future__ import annotations

from datetime import datetime, timezone
import logging
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from taxcalendar.core.errors import InvalidTransitionError, NotFoundError
from taxcalendar.domain.calendar import (
    STATUS_DONE,
    STATUS_IN_PROGRESS,
    STATUS_OVERDUE,
    STATUS_SKIPPED,
    STATUS_UPCOMING,
)
from taxcalendar.domain.models import TaxEventAttachment, TaxEventInstance
from taxcalendar.persistence.repos import documents as documents_repo
from taxcalendar.persistence.repos import instances as instances_repo


logger = logging.getLogger(__name__)

ACTION_START = "start"
ACTION_DONE = "done"
ACTION_SKIP = "skip"

# Source statuses each explicit action accepts. Re-marking DONE overwrites
# done_at/done_by; skipping is allowed from every status, DONE included.
ALLOWED_SOURCES: dict[str, frozenset[str]] = {
    ACTION_START: frozenset({STATUS_UPCOMING}),
    ACTION_DONE: frozenset({STATUS_UPCOMING, STATUS_IN_PROGRESS, STATUS_OVERDUE, STATUS_DONE}),
    ACTION_SKIP: frozenset(
        {STATUS_UPCOMING, STATUS_IN_PROGRESS, STATUS_OVERDUE, STATUS_DONE, STATUS_SKIPPED}
    ),
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_transition_allowed(action: str, current_status: str) -> None:
    if current_status not in ALLOWED_SOURCES[action]:
        raise InvalidTransitionError(
            f"Cannot {action} an event in status {current_status}",
            current_status=current_status,
            action=action,
        )


async def sweep_overdue(
    session: AsyncSession,
    organization_id: str,
    *,
    now: datetime | None = None,
) -> int:
    """Promote past-due UPCOMING/IN_PROGRESS instances of one organization to OVERDUE.

    A single conditional UPDATE, so repeated or concurrent sweeps converge and
    never touch DONE or SKIPPED rows.
    """
    updated = await instances_repo.mark_overdue(
        session, now=now or _utc_now(), organization_id=organization_id
    )
    await session.commit()
    if updated:
        logger.info("instances_marked_overdue organization_id=%s count=%s", organization_id, updated)
    return updated


async def sweep_all_overdue(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Scheduler variant without the organization predicate.
    updated = await instances_repo.mark_overdue(session, now=now or _utc_now())
    await session.commit()
    logger.info("instances_marked_overdue scope=all count=%s", updated)
    return updated


async def _require_instance(
    session: AsyncSession, organization_id: str, instance_id: str
) -> TaxEventInstance:
    instance = await instances_repo.get_instance_for_organization(session, organization_id, instance_id)
    if instance is None:
        raise NotFoundError("Event not found")
    return instance


async def mark_started(
    session: AsyncSession,
    *,
    organization_id: str,
    instance_id: str,
) -> TaxEventInstance:
    instance = await _require_instance(session, organization_id, instance_id)
    ensure_transition_allowed(ACTION_START, instance.status)
    instance.status = STATUS_IN_PROGRESS
    await session.commit()
    await session.refresh(instance)
    return instance


async def mark_done(
    session: AsyncSession,
    *,
    organization_id: str,
    instance_id: str,
    actor_id: str,
    note: str | None = None,
    now: datetime | None = None,
) -> TaxEventInstance:
    instance = await _require_instance(session, organization_id, instance_id)
    ensure_transition_allowed(ACTION_DONE, instance.status)
    instance.status = STATUS_DONE
    instance.done_at = now or _utc_now()
    instance.done_by_id = actor_id
    if note is not None:
        instance.note = note
    await session.commit()
    await session.refresh(instance)
    return instance


async def mark_skipped(
    session: AsyncSession,
    *,
    organization_id: str,
    instance_id: str,
    note: str | None = None,
) -> TaxEventInstance:
    instance = await _require_instance(session, organization_id, instance_id)
    ensure_transition_allowed(ACTION_SKIP, instance.status)
    instance.status = STATUS_SKIPPED
    if note is not None:
        instance.note = note
    await session.commit()
    await session.refresh(instance)
    return instance


async def attach_document(
    session: AsyncSession,
    *,
    organization_id: str,
    instance_id: str,
    document_id: str,
) -> TaxEventAttachment:
    document = await documents_repo.get_document(session, organization_id, document_id)
    if document is None:
        raise NotFoundError("Document not found in this organization")
    instance = await _require_instance(session, organization_id, instance_id)
    attachment = await instances_repo.create_attachment(
        session,
        attachment_id=uuid4().hex,
        event_id=instance.id,
        document_id=document.id,
    )
    await session.commit()
    await session.refresh(attachment)
    return attachment
