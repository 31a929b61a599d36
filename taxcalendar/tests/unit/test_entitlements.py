from __future__ import annotations

import pytest

from taxcalendar.domain.models import OrganizationFeatureOverride
from taxcalendar.persistence.db import SessionLocal
from taxcalendar.services.entitlements import (
    FEATURE_COMPLIANCE_CALENDAR,
    FeatureNotEnabledError,
    get_effective_entitlements,
    invalidate_entitlements_cache,
    list_entitled_organization_ids,
    require_feature,
)
from taxcalendar.tests.utils.auth import assign_plan
from taxcalendar.tests.utils.calendar import cleanup_organization, new_organization_id


@pytest.mark.asyncio
async def test_plan_features_and_default_plan() -> None:
    paid = new_organization_id("pro")
    unassigned = new_organization_id("none")
    try:
        await assign_plan(paid, "pro")
        async with SessionLocal() as session:
            paid_entitlements = await get_effective_entitlements(session, paid)
            default_entitlements = await get_effective_entitlements(session, unassigned)
        assert paid_entitlements[FEATURE_COMPLIANCE_CALENDAR].enabled is True
        assert default_entitlements[FEATURE_COMPLIANCE_CALENDAR].enabled is False
    finally:
        await cleanup_organization(paid)


@pytest.mark.asyncio
async def test_override_takes_precedence_over_plan() -> None:
    organization_id = new_organization_id()
    try:
        await assign_plan(organization_id, "free")
        async with SessionLocal() as session:
            with pytest.raises(FeatureNotEnabledError) as exc_info:
                await require_feature(
                    session=session,
                    organization_id=organization_id,
                    feature_key=FEATURE_COMPLIANCE_CALENDAR,
                )
            assert exc_info.value.feature_key == FEATURE_COMPLIANCE_CALENDAR

            session.add(
                OrganizationFeatureOverride(
                    organization_id=organization_id,
                    feature_key=FEATURE_COMPLIANCE_CALENDAR,
                    enabled=True,
                    config_json={"horizon_days": 30},
                )
            )
            await session.commit()
            invalidate_entitlements_cache(organization_id)

            await require_feature(
                session=session,
                organization_id=organization_id,
                feature_key=FEATURE_COMPLIANCE_CALENDAR,
            )
            entitlements = await get_effective_entitlements(session, organization_id)
        assert entitlements[FEATURE_COMPLIANCE_CALENDAR].config == {"horizon_days": 30}
    finally:
        await cleanup_organization(organization_id)


@pytest.mark.asyncio
async def test_entitled_organization_filter_keeps_order() -> None:
    first = new_organization_id("a")
    blocked = new_organization_id("b")
    last = new_organization_id("c")
    try:
        await assign_plan(first, "pro")
        await assign_plan(blocked, "free")
        await assign_plan(last, "pro")
        async with SessionLocal() as session:
            entitled = await list_entitled_organization_ids(
                session, [last, blocked, first], FEATURE_COMPLIANCE_CALENDAR
            )
        assert entitled == [last, first]
    finally:
        for organization_id in (first, blocked, last):
            await cleanup_organization(organization_id)
