from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import asyncio
import logging
import time
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from taxcalendar.core.config import get_settings
from taxcalendar.core.errors import ForbiddenError
from taxcalendar.domain.models import (
    OrganizationFeatureOverride,
    OrganizationPlanAssignment,
    PlanFeature,
)


logger = logging.getLogger(__name__)

DEFAULT_PLAN_ID = "free"

FEATURE_COMPLIANCE_CALENDAR = "feature.compliance_calendar"

FEATURE_KEYS = {FEATURE_COMPLIANCE_CALENDAR}


@dataclass(frozen=True)
class FeatureEntitlement:
    # Capture feature flags plus optional configuration payloads.
    enabled: bool
    config: dict[str, Any] | None = None


class FeatureNotEnabledError(ForbiddenError):
    def __init__(self, feature_key: str) -> None:
        super().__init__("Feature not enabled for organization plan")
        self.feature_key = feature_key


_entitlement_cache: dict[str, tuple[float, dict[str, FeatureEntitlement]]] = {}
_entitlement_cache_lock = asyncio.Lock()


async def get_effective_entitlements(
    session: AsyncSession,
    organization_id: str,
) -> dict[str, FeatureEntitlement]:
    # Return effective entitlements with a short-lived cache to reduce DB load.
    now = time.time()
    cached = _entitlement_cache.get(organization_id)
    if cached and cached[0] > now:
        return cached[1]

    entitlements = await _compute_entitlements(session, organization_id)
    ttl = get_settings().entitlement_cache_ttl_s
    async with _entitlement_cache_lock:
        _entitlement_cache[organization_id] = (now + ttl, entitlements)
    return entitlements


def invalidate_entitlements_cache(organization_id: str) -> None:
    # Drop cached entitlements after plan/override updates.
    _entitlement_cache.pop(organization_id, None)


def reset_entitlements_cache() -> None:
    # Clear cached entitlements for deterministic tests.
    _entitlement_cache.clear()


async def is_feature_enabled(
    session: AsyncSession, organization_id: str, feature_key: str
) -> bool:
    entitlements = await get_effective_entitlements(session, organization_id)
    return entitlements.get(feature_key, FeatureEntitlement(False, None)).enabled


async def require_feature(
    *,
    session: AsyncSession,
    organization_id: str,
    feature_key: str,
) -> None:
    # Enforce organization entitlements for a single feature.
    if not await is_feature_enabled(session, organization_id, feature_key):
        raise FeatureNotEnabledError(feature_key)


async def list_entitled_organization_ids(
    session: AsyncSession,
    organization_ids: list[str],
    feature_key: str,
) -> list[str]:
    # Preserve caller order so scheduler runs stay reproducible.
    entitled: list[str] = []
    for organization_id in organization_ids:
        if await is_feature_enabled(session, organization_id, feature_key):
            entitled.append(organization_id)
        else:
            logger.info(
                "organization_not_entitled organization_id=%s feature_key=%s",
                organization_id,
                feature_key,
            )
    return entitled


async def get_active_plan_assignment(
    session: AsyncSession, organization_id: str
) -> OrganizationPlanAssignment | None:
    # Select the active plan assignment for the organization if present.
    now = datetime.now(timezone.utc)
    result = await session.execute(
        select(OrganizationPlanAssignment)
        .where(
            OrganizationPlanAssignment.organization_id == organization_id,
            OrganizationPlanAssignment.is_active.is_(True),
            OrganizationPlanAssignment.effective_from <= now,
            or_(
                OrganizationPlanAssignment.effective_to.is_(None),
                OrganizationPlanAssignment.effective_to > now,
            ),
        )
        .order_by(OrganizationPlanAssignment.effective_from.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _compute_entitlements(
    session: AsyncSession, organization_id: str
) -> dict[str, FeatureEntitlement]:
    plan_id = await _resolve_plan_id(session, organization_id)
    plan_features = await _load_plan_features(session, plan_id)
    overrides = await _load_overrides(session, organization_id)

    entitlements: dict[str, FeatureEntitlement] = {
        key: FeatureEntitlement(False, None) for key in FEATURE_KEYS
    }

    for feature in plan_features:
        entitlements[feature.feature_key] = FeatureEntitlement(
            enabled=bool(feature.enabled),
            config=feature.config_json,
        )

    for override in overrides:
        current = entitlements.get(override.feature_key, FeatureEntitlement(False, None))
        enabled = current.enabled if override.enabled is None else bool(override.enabled)
        config = current.config if override.config_json is None else override.config_json
        entitlements[override.feature_key] = FeatureEntitlement(enabled=enabled, config=config)

    return entitlements


async def _resolve_plan_id(session: AsyncSession, organization_id: str) -> str:
    assignment = await get_active_plan_assignment(session, organization_id)
    if assignment is None:
        return DEFAULT_PLAN_ID
    return assignment.plan_id


async def _load_plan_features(session: AsyncSession, plan_id: str) -> list[PlanFeature]:
    result = await session.execute(select(PlanFeature).where(PlanFeature.plan_id == plan_id))
    features = list(result.scalars().all())
    if features or plan_id == DEFAULT_PLAN_ID:
        return features
    # Fall back to the default plan when assignments reference missing plan ids.
    logger.warning("plan_features_missing plan_id=%s", plan_id)
    result = await session.execute(select(PlanFeature).where(PlanFeature.plan_id == DEFAULT_PLAN_ID))
    return list(result.scalars().all())


async def _load_overrides(
    session: AsyncSession, organization_id: str
) -> list[OrganizationFeatureOverride]:
    result = await session.execute(
        select(OrganizationFeatureOverride).where(
            OrganizationFeatureOverride.organization_id == organization_id
        )
    )
    return list(result.scalars().all())
