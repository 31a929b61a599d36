from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, get_args
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from taxcalendar.core.config import get_settings
from taxcalendar.core.errors import NotFoundError, ValidationError
from taxcalendar.domain.calendar import (
    MAX_DUE_OFFSET_DAYS,
    EntityType,
    EventKind,
    Jurisdiction,
    parse_profile_settings,
    parse_template_rule,
)
from taxcalendar.domain.models import TaxEventTemplate, TaxProfile
from taxcalendar.persistence.repos import profiles as profiles_repo
from taxcalendar.persistence.repos import templates as templates_repo
from taxcalendar.services.calendar.due_dates import validate_due_time_local
from taxcalendar.services.calendar.rules import parse_rrule
from taxcalendar.services.calendar.seeding import seed_default_templates


logger = logging.getLogger(__name__)

_JURISDICTIONS = frozenset(get_args(Jurisdiction))
_ENTITY_TYPES = frozenset(get_args(EntityType))
_EVENT_KINDS = frozenset(get_args(EventKind))

# Attributes a partial template update may touch; ownership columns never change.
UPDATABLE_TEMPLATE_FIELDS = frozenset(
    {
        "title",
        "description",
        "kind",
        "rrule",
        "due_offset_days",
        "due_time_local",
        "rule",
        "is_active",
    }
)


@dataclass(frozen=True)
class ProfileWithTemplates:
    profile: TaxProfile
    templates: list[TaxEventTemplate]


def _require_choice(value: str, allowed: frozenset[str], label: str) -> str:
    if value not in allowed:
        raise ValidationError(f"Unsupported {label}: {value}")
    return value


def _validate_offset(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError("dueOffsetDays must be a non-negative integer")
    if value > MAX_DUE_OFFSET_DAYS:
        raise ValidationError(f"dueOffsetDays must not exceed {MAX_DUE_OFFSET_DAYS}")
    return value


async def get_profile(session: AsyncSession, organization_id: str) -> ProfileWithTemplates | None:
    profile = await profiles_repo.get_profile_for_organization(session, organization_id)
    if profile is None:
        return None
    templates = await templates_repo.list_templates(session, organization_id, profile.id)
    return ProfileWithTemplates(profile=profile, templates=templates)


async def upsert_profile(
    session: AsyncSession,
    *,
    organization_id: str,
    actor_id: str,
    jurisdiction: str,
    entity_type: str,
    settings: dict[str, Any] | None,
    timezone: str | None = None,
) -> ProfileWithTemplates:
    """Create or update the organization's profile, seeding defaults on first use.

    Seeding happens whenever the profile ends up with zero templates, so a
    profile whose templates were never created gets them on its next upsert.
    """
    _require_choice(jurisdiction, _JURISDICTIONS, "jurisdiction")
    _require_choice(entity_type, _ENTITY_TYPES, "entityType")
    parsed_settings = parse_profile_settings(settings)
    settings_document = parsed_settings.model_dump(by_alias=True, exclude_none=True)

    profile = await profiles_repo.get_profile_for_organization(session, organization_id)
    if profile is None:
        profile = TaxProfile(
            id=uuid4().hex,
            organization_id=organization_id,
            created_by_id=actor_id,
            jurisdiction=jurisdiction,
            entity_type=entity_type,
            settings_json=settings_document,
            timezone=timezone,
        )
        session.add(profile)
        try:
            await session.flush()
        except IntegrityError:
            # A concurrent upsert created the profile first; update that row instead.
            await session.rollback()
            profile = await profiles_repo.get_profile_for_organization(session, organization_id)
            if profile is None:
                raise
            logger.info("tax_profile_upsert_race organization_id=%s", organization_id)
    profile.jurisdiction = jurisdiction
    profile.entity_type = entity_type
    profile.settings_json = settings_document
    profile.timezone = timezone

    if await templates_repo.count_templates(session, organization_id, profile.id) == 0:
        await seed_default_templates(
            session,
            organization_id=organization_id,
            profile_id=profile.id,
            created_by_id=actor_id,
            settings=parsed_settings,
            jurisdiction=jurisdiction,
        )

    await session.commit()
    await session.refresh(profile)
    templates = await templates_repo.list_templates(session, organization_id, profile.id)
    logger.info(
        "tax_profile_upserted organization_id=%s profile_id=%s templates=%s",
        organization_id,
        profile.id,
        len(templates),
    )
    return ProfileWithTemplates(profile=profile, templates=templates)


async def list_templates(session: AsyncSession, organization_id: str) -> list[TaxEventTemplate]:
    profile = await profiles_repo.get_profile_for_organization(session, organization_id)
    if profile is None:
        return []
    return await templates_repo.list_templates(session, organization_id, profile.id)


async def create_template(
    session: AsyncSession,
    *,
    organization_id: str,
    actor_id: str,
    title: str,
    kind: str,
    rrule: str,
    due_offset_days: int = 0,
    due_time_local: str | None = None,
    description: str | None = None,
    rule: dict[str, Any] | None = None,
    is_active: bool = True,
) -> TaxEventTemplate:
    profile = await profiles_repo.get_profile_for_organization(session, organization_id)
    if profile is None:
        raise NotFoundError("Tax profile not found")
    _require_choice(kind, _EVENT_KINDS, "kind")
    parse_rrule(rrule)
    template = TaxEventTemplate(
        id=uuid4().hex,
        organization_id=organization_id,
        profile_id=profile.id,
        created_by_id=actor_id,
        title=title,
        description=description,
        kind=kind,
        rrule=rrule,
        due_offset_days=_validate_offset(due_offset_days),
        due_time_local=validate_due_time_local(due_time_local)
        or get_settings().default_due_time_local,
        rule_json=parse_template_rule(rule).to_document(),
        is_active=is_active,
    )
    session.add(template)
    await session.commit()
    await session.refresh(template)
    logger.info(
        "tax_template_created organization_id=%s template_id=%s kind=%s",
        organization_id,
        template.id,
        kind,
    )
    return template


async def update_template(
    session: AsyncSession,
    *,
    organization_id: str,
    template_id: str,
    changes: dict[str, Any],
) -> TaxEventTemplate:
    """Apply a partial update; keys absent from ``changes`` are left untouched.

    Existing instances keep their frozen due dates and estimates; only future
    generation sees the new values.
    """
    unknown = set(changes) - UPDATABLE_TEMPLATE_FIELDS
    if unknown:
        raise ValidationError(f"Unsupported template fields: {', '.join(sorted(unknown))}")
    template = await templates_repo.get_template_for_organization(session, organization_id, template_id)
    if template is None:
        raise NotFoundError("Template not found")

    if "title" in changes:
        if not changes["title"]:
            raise ValidationError("title must not be empty")
        template.title = changes["title"]
    if "description" in changes:
        template.description = changes["description"]
    if "kind" in changes:
        template.kind = _require_choice(changes["kind"], _EVENT_KINDS, "kind")
    if "rrule" in changes:
        parse_rrule(changes["rrule"])
        template.rrule = changes["rrule"]
    if "due_offset_days" in changes:
        template.due_offset_days = _validate_offset(changes["due_offset_days"])
    if "due_time_local" in changes:
        template.due_time_local = validate_due_time_local(changes["due_time_local"])
    if "rule" in changes:
        template.rule_json = parse_template_rule(changes["rule"]).to_document()
    if "is_active" in changes:
        if changes["is_active"] is None:
            raise ValidationError("isActive must be a boolean")
        template.is_active = bool(changes["is_active"])

    await session.commit()
    await session.refresh(template)
    logger.info(
        "tax_template_updated organization_id=%s template_id=%s fields=%s",
        organization_id,
        template_id,
        ",".join(sorted(changes)),
    )
    return template
