from __future__ import annotations

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from taxcalendar.core.errors import NotFoundError, ValidationError
from taxcalendar.persistence.db import SessionLocal
from taxcalendar.persistence.repos import instances as instances_repo
from taxcalendar.services.calendar import InstanceMaterializer
from taxcalendar.tests.utils.calendar import (
    cleanup_organization,
    create_invoice,
    create_profile,
    create_template,
    list_instances,
    new_organization_id,
    utc,
)


@pytest.mark.asyncio
async def test_monthly_template_materializes_one_instance_per_month() -> None:
    organization_id = new_organization_id()
    try:
        async with SessionLocal() as session:
            profile = await create_profile(session, organization_id)
            await create_template(session, profile, due_offset_days=5, due_time_local="10:30")

            result = await InstanceMaterializer().generate(
                session, organization_id, utc(2025, 1, 1), utc(2025, 4, 1)
            )
            instances = await list_instances(session, organization_id)

        assert (result.created, result.skipped, result.failed) == (3, 0, 0)
        assert [instance.period_start for instance in instances] == [
            utc(2025, 1, 1),
            utc(2025, 2, 1),
            utc(2025, 3, 1),
        ]
        assert instances[0].period_end == utc(2025, 2, 1)
        assert instances[0].due_at == utc(2025, 2, 6, 10, 30)
        assert {instance.status for instance in instances} == {"UPCOMING"}
    finally:
        await cleanup_organization(organization_id)


@pytest.mark.asyncio
async def test_repeated_and_overlapping_ranges_do_not_duplicate() -> None:
    organization_id = new_organization_id()
    try:
        async with SessionLocal() as session:
            profile = await create_profile(session, organization_id)
            await create_template(session, profile)
            materializer = InstanceMaterializer()

            await materializer.generate(session, organization_id, utc(2025, 1, 1), utc(2025, 4, 1))
            repeat = await materializer.generate(
                session, organization_id, utc(2025, 1, 1), utc(2025, 4, 1)
            )
            overlap = await materializer.generate(
                session, organization_id, utc(2025, 2, 15), utc(2025, 5, 1)
            )
            instances = await list_instances(session, organization_id)

        assert (repeat.created, repeat.skipped) == (0, 3)
        # February and March already exist; only April is new.
        assert (overlap.created, overlap.skipped) == (1, 2)
        assert len(instances) == 4
    finally:
        await cleanup_organization(organization_id)


@pytest.mark.asyncio
async def test_unique_violation_from_concurrent_run_counts_as_skip(monkeypatch) -> None:
    organization_id = new_organization_id()
    try:
        async with SessionLocal() as session:
            profile = await create_profile(session, organization_id)
            await create_template(session, profile)
            await InstanceMaterializer().generate(
                session, organization_id, utc(2025, 1, 1), utc(2025, 2, 1)
            )

            async def _never_found(*args, **kwargs):
                return None

            # Simulate a racing run that inserted the row after the pre-check.
            monkeypatch.setattr(instances_repo, "find_by_period", _never_found)
            result = await InstanceMaterializer().generate(
                session, organization_id, utc(2025, 1, 1), utc(2025, 2, 1)
            )
            instances = await list_instances(session, organization_id)

        assert (result.created, result.skipped, result.failed) == (0, 1, 0)
        assert len(instances) == 1
    finally:
        await cleanup_organization(organization_id)


@pytest.mark.asyncio
async def test_invalid_template_does_not_block_others() -> None:
    organization_id = new_organization_id()
    try:
        async with SessionLocal() as session:
            profile = await create_profile(session, organization_id)
            broken = await create_template(session, profile, rrule="FREQ=WEEKLY")
            healthy = await create_template(session, profile, rrule="FREQ=QUARTERLY")

            result = await InstanceMaterializer().generate(
                session, organization_id, utc(2025, 1, 1), utc(2025, 7, 1)
            )
            instances = await list_instances(session, organization_id)

        assert result.created == 2
        assert result.failed_template_ids == [broken.id]
        assert {instance.template_id for instance in instances} == {healthy.id}
    finally:
        await cleanup_organization(organization_id)


@pytest.mark.asyncio
async def test_failed_period_is_counted_and_later_periods_continue(monkeypatch) -> None:
    organization_id = new_organization_id()
    try:
        async with SessionLocal() as session:
            profile = await create_profile(session, organization_id)
            monthly_id = (await create_template(session, profile)).id
            real_find_by_period = instances_repo.find_by_period

            async def _locked_in_february(session, *, template_id, period_start, period_end):
                if period_start == utc(2025, 2, 1):
                    raise OperationalError("SELECT tax_event_instances", {}, Exception("database is locked"))
                return await real_find_by_period(
                    session, template_id=template_id, period_start=period_start, period_end=period_end
                )

            monkeypatch.setattr(instances_repo, "find_by_period", _locked_in_february)
            result = await InstanceMaterializer().generate(
                session, organization_id, utc(2025, 1, 1), utc(2025, 4, 1)
            )
            instances = await list_instances(session, organization_id)

        assert (result.created, result.skipped, result.failed) == (2, 0, 1)
        assert result.failed_template_ids == [monthly_id]
        assert [instance.period_start.month for instance in instances] == [1, 3]
    finally:
        await cleanup_organization(organization_id)


@pytest.mark.asyncio
async def test_template_with_unrepresentable_due_date_does_not_block_others() -> None:
    organization_id = new_organization_id()
    try:
        async with SessionLocal() as session:
            profile = await create_profile(session, organization_id)
            # Written directly; the service layer refuses offsets this large.
            broken_id = (await create_template(session, profile, due_offset_days=5_000_000)).id
            healthy_id = (
                await create_template(session, profile, kind="PAYMENT", due_offset_days=19)
            ).id

            result = await InstanceMaterializer().generate(
                session, organization_id, utc(2025, 1, 1), utc(2025, 4, 1)
            )
            instances = await list_instances(session, organization_id)

        assert result.created == 3
        assert result.failed == 1
        assert result.failed_template_ids == [broken_id]
        assert {instance.template_id for instance in instances} == {healthy_id}
    finally:
        await cleanup_organization(organization_id)


@pytest.mark.asyncio
async def test_paid_invoice_estimate_is_frozen_into_meta() -> None:
    organization_id = new_organization_id()
    other_organization_id = new_organization_id("other")
    try:
        async with SessionLocal() as session:
            profile = await create_profile(session, organization_id)
            await create_template(
                session,
                profile,
                rrule="FREQ=QUARTERLY;INTERVAL=1",
                kind="PAYMENT",
                due_offset_days=25,
                rule={"period": "QUARTER", "estimateFrom": "PAID_INVOICES"},
            )
            await create_invoice(session, organization_id, total="1000.25", paid_at=utc(2025, 1, 10))
            await create_invoice(session, organization_id, total="499.75", paid_at=utc(2025, 3, 31, 23, 59))
            # Outside the quarter, unpaid, or another organization's: none of these count.
            await create_invoice(session, organization_id, total="700.00", paid_at=utc(2025, 4, 1))
            await create_invoice(
                session, organization_id, total="50.00", paid_at=utc(2025, 2, 1), status="DRAFT"
            )
            await create_invoice(
                session, other_organization_id, total="900.00", paid_at=utc(2025, 2, 1)
            )

            await InstanceMaterializer().generate(
                session, organization_id, utc(2025, 1, 1), utc(2025, 4, 1)
            )
            # Invoices paid later never rewrite an existing estimate.
            await create_invoice(session, organization_id, total="1.00", paid_at=utc(2025, 2, 2))
            await InstanceMaterializer().generate(
                session, organization_id, utc(2025, 1, 1), utc(2025, 4, 1)
            )
            instances = await list_instances(session, organization_id)

        assert len(instances) == 1
        assert Decimal(instances[0].meta_json["estimatedRevenue"]) == Decimal("1500.00")
        assert instances[0].due_at == utc(2025, 4, 26, 18, 0)
    finally:
        await cleanup_organization(organization_id)
        await cleanup_organization(other_organization_id)


@pytest.mark.asyncio
async def test_paid_invoice_estimate_defaults_to_zero() -> None:
    organization_id = new_organization_id()
    try:
        async with SessionLocal() as session:
            profile = await create_profile(session, organization_id)
            await create_template(
                session, profile, rule={"estimateFrom": "PAID_INVOICES"}
            )
            await InstanceMaterializer().generate(
                session, organization_id, utc(2025, 1, 1), utc(2025, 2, 1)
            )
            instances = await list_instances(session, organization_id)

        assert instances[0].meta_json == {"estimatedRevenue": "0"}
    finally:
        await cleanup_organization(organization_id)


@pytest.mark.asyncio
async def test_inactive_templates_and_intervals() -> None:
    organization_id = new_organization_id()
    try:
        async with SessionLocal() as session:
            profile = await create_profile(session, organization_id)
            await create_template(session, profile, is_active=False)
            every_other = await create_template(session, profile, rrule="FREQ=MONTHLY;INTERVAL=2")

            await InstanceMaterializer().generate(
                session, organization_id, utc(2025, 1, 1), utc(2025, 7, 1)
            )
            instances = await list_instances(session, organization_id)

        assert {instance.template_id for instance in instances} == {every_other.id}
        assert [instance.period_start.month for instance in instances] == [1, 3, 5]
    finally:
        await cleanup_organization(organization_id)


@pytest.mark.asyncio
async def test_generate_rejects_bad_input() -> None:
    organization_id = new_organization_id()
    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await InstanceMaterializer().generate(
                session, organization_id, utc(2025, 2, 1), utc(2025, 2, 1)
            )
        with pytest.raises(NotFoundError):
            await InstanceMaterializer().generate(
                session, organization_id, utc(2025, 1, 1), utc(2025, 2, 1)
            )


@pytest.mark.asyncio
async def test_injected_id_factory_and_default_time() -> None:
    organization_id = new_organization_id()
    ids = iter(["fixed-instance-1", "fixed-instance-2"])
    try:
        async with SessionLocal() as session:
            profile = await create_profile(session, organization_id)
            await create_template(session, profile, due_time_local="not-a-time")
            materializer = InstanceMaterializer(
                id_factory=lambda: next(ids), default_due_time_local="09:15"
            )
            await materializer.generate(session, organization_id, utc(2025, 1, 1), utc(2025, 3, 1))
            instances = await list_instances(session, organization_id)

        assert [instance.id for instance in instances] == ["fixed-instance-1", "fixed-instance-2"]
        assert isinstance(instances[0].due_at, datetime)
        assert instances[0].due_at == utc(2025, 2, 1, 9, 15)
    finally:
        await cleanup_organization(organization_id)
