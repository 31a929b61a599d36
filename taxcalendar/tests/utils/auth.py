from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import select

from taxcalendar.domain.models import ApiKey, OrganizationPlanAssignment, User
from taxcalendar.persistence.db import SessionLocal
from taxcalendar.services.auth.api_keys import issue_api_key, normalize_role


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def assign_plan(organization_id: str, plan_id: str) -> None:
    # Replace the active assignment so entitlement checks see exactly one plan.
    now = _utc_now()
    async with SessionLocal() as session:
        result = await session.execute(
            select(OrganizationPlanAssignment).where(
                OrganizationPlanAssignment.organization_id == organization_id,
                OrganizationPlanAssignment.is_active.is_(True),
            )
        )
        for assignment in result.scalars().all():
            assignment.is_active = False
            assignment.effective_to = now
        session.add(
            OrganizationPlanAssignment(
                organization_id=organization_id,
                plan_id=plan_id,
                effective_from=now,
                effective_to=None,
                is_active=True,
            )
        )
        await session.commit()


async def create_test_api_key(
    *,
    organization_id: str,
    role: str,
    name: str = "test-key",
    user_active: bool = True,
    key_revoked: bool = False,
    key_expires_at: datetime | None = None,
    plan_id: str | None = "pro",
) -> tuple[str, dict[str, str], str, str]:
    # Provision a user + API key pair for integration tests.
    normalized_role = normalize_role(role)
    user_id = uuid4().hex
    issued = issue_api_key()

    async with SessionLocal() as session:
        session.add(
            User(
                id=user_id,
                organization_id=organization_id,
                email=None,
                role=normalized_role,
                is_active=user_active,
            )
        )
        # Flush the user insert before the API key to satisfy FK constraints.
        await session.flush()
        session.add(
            ApiKey(
                id=issued.key_id,
                user_id=user_id,
                organization_id=organization_id,
                key_prefix=issued.key_prefix,
                key_hash=issued.key_hash,
                name=name,
                expires_at=key_expires_at,
                revoked_at=_utc_now() if key_revoked else None,
            )
        )
        await session.commit()
    if plan_id is not None:
        await assign_plan(organization_id, plan_id)

    return issued.raw_key, issued.authorization_header, user_id, issued.key_id
