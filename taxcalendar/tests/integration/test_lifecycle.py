from __future__ import annotations

import pytest

from taxcalendar.core.errors import InvalidTransitionError, NotFoundError
from taxcalendar.persistence.db import SessionLocal
from taxcalendar.services.calendar import (
    attach_document,
    mark_done,
    mark_skipped,
    mark_started,
    sweep_all_overdue,
    sweep_overdue,
)
from taxcalendar.tests.utils.calendar import (
    cleanup_organization,
    create_document,
    create_instance,
    create_profile,
    create_template,
    list_instances,
    new_organization_id,
    utc,
)


NOW = utc(2025, 3, 10, 12, 0)


@pytest.mark.asyncio
async def test_sweep_promotes_only_open_past_due_instances() -> None:
    organization_id = new_organization_id()
    try:
        async with SessionLocal() as session:
            profile = await create_profile(session, organization_id)
            template = await create_template(session, profile)
            statuses = {
                "UPCOMING": utc(2025, 3, 1),
                "IN_PROGRESS": utc(2025, 3, 2),
                "DONE": utc(2025, 3, 3),
                "SKIPPED": utc(2025, 3, 4),
            }
            past = {}
            for status, period_start in statuses.items():
                instance = await create_instance(
                    session, template, period_start=period_start, due_at=utc(2025, 3, 9), status=status
                )
                past[status] = instance.id
            future = await create_instance(
                session, template, period_start=utc(2025, 4, 1), due_at=utc(2025, 4, 20)
            )

            updated = await sweep_overdue(session, organization_id, now=NOW)
            again = await sweep_overdue(session, organization_id, now=NOW)
            by_id = {instance.id: instance.status for instance in await list_instances(session, organization_id)}

        assert (updated, again) == (2, 0)
        assert by_id[past["UPCOMING"]] == "OVERDUE"
        assert by_id[past["IN_PROGRESS"]] == "OVERDUE"
        assert by_id[past["DONE"]] == "DONE"
        assert by_id[past["SKIPPED"]] == "SKIPPED"
        assert by_id[future.id] == "UPCOMING"
    finally:
        await cleanup_organization(organization_id)


@pytest.mark.asyncio
async def test_sweep_is_scoped_to_the_organization() -> None:
    organization_id = new_organization_id()
    other_organization_id = new_organization_id("other")
    try:
        async with SessionLocal() as session:
            own = await create_template(session, await create_profile(session, organization_id))
            other = await create_template(session, await create_profile(session, other_organization_id))
            await create_instance(session, own, period_start=utc(2025, 2, 1), due_at=utc(2025, 3, 1))
            await create_instance(session, other, period_start=utc(2025, 2, 1), due_at=utc(2025, 3, 1))

            await sweep_overdue(session, organization_id, now=NOW)
            other_statuses = [i.status for i in await list_instances(session, other_organization_id)]
            assert other_statuses == ["UPCOMING"]

            await sweep_all_overdue(session, now=NOW)
            other_statuses = [i.status for i in await list_instances(session, other_organization_id)]
        assert other_statuses == ["OVERDUE"]
    finally:
        await cleanup_organization(organization_id)
        await cleanup_organization(other_organization_id)


@pytest.mark.asyncio
async def test_done_records_actor_time_and_note() -> None:
    organization_id = new_organization_id()
    try:
        async with SessionLocal() as session:
            template = await create_template(session, await create_profile(session, organization_id))
            instance = await create_instance(
                session, template, period_start=utc(2025, 2, 1), due_at=utc(2025, 3, 1), status="OVERDUE"
            )
            done = await mark_done(
                session,
                organization_id=organization_id,
                instance_id=instance.id,
                actor_id="user-1",
                note="filed late",
                now=NOW,
            )
            # Repeating done keeps the event DONE and leaves the note alone when omitted.
            repeated = await mark_done(
                session,
                organization_id=organization_id,
                instance_id=instance.id,
                actor_id="user-2",
                now=NOW,
            )

        assert done.status == "DONE"
        assert done.done_at == NOW
        assert repeated.done_by_id == "user-2"
        assert repeated.note == "filed late"
    finally:
        await cleanup_organization(organization_id)


@pytest.mark.asyncio
async def test_skipped_events_cannot_be_completed_but_done_can_be_skipped() -> None:
    organization_id = new_organization_id()
    try:
        async with SessionLocal() as session:
            template = await create_template(session, await create_profile(session, organization_id))
            skipped = await create_instance(
                session, template, period_start=utc(2025, 2, 1), due_at=utc(2025, 3, 1), status="SKIPPED"
            )
            done = await create_instance(
                session, template, period_start=utc(2025, 3, 1), due_at=utc(2025, 4, 1), status="DONE"
            )

            with pytest.raises(InvalidTransitionError):
                await mark_done(
                    session, organization_id=organization_id, instance_id=skipped.id, actor_id="user-1"
                )
            result = await mark_skipped(
                session, organization_id=organization_id, instance_id=done.id, note="not applicable"
            )
            statuses = {i.id: i.status for i in await list_instances(session, organization_id)}

        assert result.status == "SKIPPED"
        assert result.note == "not applicable"
        assert statuses[skipped.id] == "SKIPPED"
    finally:
        await cleanup_organization(organization_id)


@pytest.mark.asyncio
async def test_start_moves_upcoming_to_in_progress_only() -> None:
    organization_id = new_organization_id()
    try:
        async with SessionLocal() as session:
            template = await create_template(session, await create_profile(session, organization_id))
            upcoming = await create_instance(
                session, template, period_start=utc(2025, 4, 1), due_at=utc(2025, 5, 1)
            )
            overdue = await create_instance(
                session, template, period_start=utc(2025, 2, 1), due_at=utc(2025, 3, 1), status="OVERDUE"
            )

            started = await mark_started(session, organization_id=organization_id, instance_id=upcoming.id)
            with pytest.raises(InvalidTransitionError):
                await mark_started(session, organization_id=organization_id, instance_id=overdue.id)
            with pytest.raises(InvalidTransitionError):
                await mark_started(session, organization_id=organization_id, instance_id=upcoming.id)

        assert started.status == "IN_PROGRESS"
    finally:
        await cleanup_organization(organization_id)


@pytest.mark.asyncio
async def test_actions_on_other_organization_events_are_not_found() -> None:
    organization_id = new_organization_id()
    other_organization_id = new_organization_id("other")
    try:
        async with SessionLocal() as session:
            template = await create_template(session, await create_profile(session, organization_id))
            instance = await create_instance(
                session, template, period_start=utc(2025, 4, 1), due_at=utc(2025, 5, 1)
            )
            with pytest.raises(NotFoundError):
                await mark_skipped(session, organization_id=other_organization_id, instance_id=instance.id)
            with pytest.raises(NotFoundError):
                await mark_done(
                    session, organization_id=organization_id, instance_id="missing", actor_id="user-1"
                )
    finally:
        await cleanup_organization(organization_id)
        await cleanup_organization(other_organization_id)


@pytest.mark.asyncio
async def test_attach_document_requires_same_organization_document() -> None:
    organization_id = new_organization_id()
    other_organization_id = new_organization_id("other")
    try:
        async with SessionLocal() as session:
            template = await create_template(session, await create_profile(session, organization_id))
            instance = await create_instance(
                session, template, period_start=utc(2025, 4, 1), due_at=utc(2025, 5, 1)
            )
            own_document = await create_document(session, organization_id)
            foreign_document = await create_document(session, other_organization_id)

            attachment = await attach_document(
                session,
                organization_id=organization_id,
                instance_id=instance.id,
                document_id=own_document.id,
            )
            with pytest.raises(NotFoundError, match="Document not found"):
                await attach_document(
                    session,
                    organization_id=organization_id,
                    instance_id=instance.id,
                    document_id=foreign_document.id,
                )
            with pytest.raises(NotFoundError, match="Event not found"):
                await attach_document(
                    session,
                    organization_id=organization_id,
                    instance_id="missing",
                    document_id=own_document.id,
                )

        assert attachment.event_id == instance.id
        assert attachment.document_id == own_document.id
    finally:
        await cleanup_organization(organization_id)
        await cleanup_organization(other_organization_id)
