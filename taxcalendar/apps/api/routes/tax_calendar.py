from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from taxcalendar.apps.api.deps import Principal, ensure_organization_access, get_db, require_scope
from taxcalendar.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from taxcalendar.apps.api.response import SuccessEnvelope, success_response
from taxcalendar.core.errors import DatabaseError
from taxcalendar.domain.calendar import (
    MAX_DUE_OFFSET_DAYS,
    EntityType,
    EventKind,
    EventStatus,
    Jurisdiction,
)
from taxcalendar.domain.models import TaxEventAttachment, TaxEventInstance, TaxEventTemplate
from taxcalendar.services import audit
from taxcalendar.services.auth.api_keys import (
    SCOPE_CALENDAR_READ,
    SCOPE_EVENTS_WRITE,
    SCOPE_SETUP_WRITE,
)
from taxcalendar.services.calendar import (
    CalendarEvent,
    InstanceMaterializer,
    ProfileWithTemplates,
    attach_document,
    create_template,
    get_profile,
    list_events,
    list_templates,
    mark_done,
    mark_skipped,
    mark_started,
    update_template,
    upsert_profile,
)


router = APIRouter(prefix="/tax-calendar", tags=["tax-calendar"], responses=DEFAULT_ERROR_RESPONSES)


class CamelModel(BaseModel):
    # Accept and emit the camelCase field names existing clients already use.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UpsertProfileRequest(CamelModel):
    organization_id: str = Field(min_length=1)
    jurisdiction: Jurisdiction = "UA"
    entity_type: EntityType
    settings: dict[str, Any] = Field(default_factory=dict)
    timezone: str | None = None


class CreateTemplateRequest(CamelModel):
    organization_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str | None = None
    kind: EventKind
    rrule: str = Field(min_length=1)
    due_offset_days: int = Field(default=0, ge=0, le=MAX_DUE_OFFSET_DAYS)
    due_time_local: str | None = None
    rule: dict[str, Any] | None = None
    is_active: bool = True


class UpdateTemplateRequest(CamelModel):
    id: str = Field(min_length=1)
    organization_id: str = Field(min_length=1)
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    kind: EventKind | None = None
    rrule: str | None = Field(default=None, min_length=1)
    due_offset_days: int | None = Field(default=None, ge=0, le=MAX_DUE_OFFSET_DAYS)
    due_time_local: str | None = None
    rule: dict[str, Any] | None = None
    is_active: bool | None = None


class GenerateEventsRequest(CamelModel):
    organization_id: str = Field(min_length=1)
    range_from: datetime = Field(alias="from")
    range_to: datetime = Field(alias="to")


class OrganizationRequest(CamelModel):
    organization_id: str = Field(min_length=1)


class EventNoteRequest(CamelModel):
    organization_id: str = Field(min_length=1)
    note: str | None = None


class AttachDocumentRequest(CamelModel):
    organization_id: str = Field(min_length=1)
    document_id: str = Field(min_length=1)


class TemplateResponse(CamelModel):
    id: str
    organization_id: str
    profile_id: str
    title: str
    description: str | None
    kind: str
    rrule: str
    due_offset_days: int
    due_time_local: str | None
    rule: dict[str, Any] | None
    is_active: bool
    created_at: str
    updated_at: str


class ProfileResponse(CamelModel):
    id: str
    organization_id: str
    jurisdiction: str
    entity_type: str
    settings: dict[str, Any]
    timezone: str | None
    created_at: str
    updated_at: str
    templates: list[TemplateResponse]


class AttachmentResponse(CamelModel):
    id: str
    event_id: str
    document_id: str
    created_at: str


class EventResponse(CamelModel):
    id: str
    organization_id: str
    template_id: str
    period_start: str
    period_end: str
    due_at: str
    status: EventStatus
    done_at: str | None
    done_by_id: str | None
    note: str | None
    meta: dict[str, Any] | None
    created_at: str
    updated_at: str
    template: TemplateResponse | None = None
    attachments: list[AttachmentResponse] = Field(default_factory=list)


class GenerateEventsResponse(BaseModel):
    created: int
    skipped: int
    failed: int


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps from clients are read as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(by_alias=True)


def _template_payload(template: TaxEventTemplate) -> TemplateResponse:
    return TemplateResponse(
        id=template.id,
        organization_id=template.organization_id,
        profile_id=template.profile_id,
        title=template.title,
        description=template.description,
        kind=template.kind,
        rrule=template.rrule,
        due_offset_days=template.due_offset_days,
        due_time_local=template.due_time_local,
        rule=template.rule_json,
        is_active=template.is_active,
        created_at=_iso(template.created_at) or "",
        updated_at=_iso(template.updated_at) or "",
    )


def _profile_payload(result: ProfileWithTemplates) -> ProfileResponse:
    profile = result.profile
    return ProfileResponse(
        id=profile.id,
        organization_id=profile.organization_id,
        jurisdiction=profile.jurisdiction,
        entity_type=profile.entity_type,
        settings=profile.settings_json or {},
        timezone=profile.timezone,
        created_at=_iso(profile.created_at) or "",
        updated_at=_iso(profile.updated_at) or "",
        templates=[_template_payload(template) for template in result.templates],
    )


def _attachment_payload(attachment: TaxEventAttachment) -> AttachmentResponse:
    return AttachmentResponse(
        id=attachment.id,
        event_id=attachment.event_id,
        document_id=attachment.document_id,
        created_at=_iso(attachment.created_at) or "",
    )


def _event_payload(
    instance: TaxEventInstance,
    *,
    template: TaxEventTemplate | None = None,
    attachments: list[TaxEventAttachment] | None = None,
) -> EventResponse:
    return EventResponse(
        id=instance.id,
        organization_id=instance.organization_id,
        template_id=instance.template_id,
        period_start=_iso(instance.period_start) or "",
        period_end=_iso(instance.period_end) or "",
        due_at=_iso(instance.due_at) or "",
        status=instance.status,
        done_at=_iso(instance.done_at),
        done_by_id=instance.done_by_id,
        note=instance.note,
        meta=instance.meta_json,
        created_at=_iso(instance.created_at) or "",
        updated_at=_iso(instance.updated_at) or "",
        template=_template_payload(template) if template is not None else None,
        attachments=[_attachment_payload(item) for item in attachments or []],
    )


def _calendar_event_payload(event: CalendarEvent) -> EventResponse:
    return _event_payload(event.instance, template=event.template, attachments=event.attachments)


async def _database_error(db: AsyncSession, exc: SQLAlchemyError) -> DatabaseError:
    # Roll back the request session; the handler logs the chained driver error.
    await db.rollback()
    return DatabaseError(f"{type(exc).__name__} in tax calendar request")


async def _audit(
    *,
    request: Request,
    db: AsyncSession,
    principal: Principal,
    event_type: str,
    resource_type: str,
    resource_id: str | None,
    metadata: dict[str, Any] | None = None,
) -> None:
    await audit.record_event(
        session=db,
        organization_id=principal.organization_id,
        event_type=event_type,
        actor_type=audit.ACTOR_API_KEY,
        actor_id=principal.api_key_id,
        actor_role=principal.role,
        resource_type=resource_type,
        resource_id=resource_id,
        context=audit.RequestContext.from_request(request),
        metadata=metadata,
    )


def get_materializer() -> InstanceMaterializer:
    return InstanceMaterializer()


@router.get(
    "/profile",
    response_model=SuccessEnvelope[ProfileResponse | None] | ProfileResponse | None,
)
async def read_profile(
    request: Request,
    organization_id: str = Query(alias="organizationId", min_length=1),
    principal: Principal = Depends(require_scope(SCOPE_CALENDAR_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict | None:
    ensure_organization_access(principal, organization_id)
    try:
        result = await get_profile(db, organization_id)
    except SQLAlchemyError as exc:
        raise await _database_error(db, exc) from exc
    data = _dump(_profile_payload(result)) if result is not None else None
    return success_response(request=request, data=data)


@router.post("/profile", response_model=SuccessEnvelope[ProfileResponse] | ProfileResponse)
async def save_profile(
    payload: UpsertProfileRequest,
    request: Request,
    principal: Principal = Depends(require_scope(SCOPE_SETUP_WRITE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    ensure_organization_access(principal, payload.organization_id)
    try:
        result = await upsert_profile(
            db,
            organization_id=payload.organization_id,
            actor_id=principal.subject_id,
            jurisdiction=payload.jurisdiction,
            entity_type=payload.entity_type,
            settings=payload.settings,
            timezone=payload.timezone,
        )
    except SQLAlchemyError as exc:
        raise await _database_error(db, exc) from exc
    response = _profile_payload(result)
    await _audit(
        request=request,
        db=db,
        principal=principal,
        event_type=audit.PROFILE_UPSERTED,
        resource_type="tax_profile",
        resource_id=response.id,
        metadata={"templates": len(response.templates)},
    )
    return success_response(request=request, data=_dump(response))


@router.get(
    "/templates",
    response_model=SuccessEnvelope[list[TemplateResponse]] | list[TemplateResponse],
)
async def read_templates(
    request: Request,
    organization_id: str = Query(alias="organizationId", min_length=1),
    principal: Principal = Depends(require_scope(SCOPE_CALENDAR_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict | list:
    ensure_organization_access(principal, organization_id)
    try:
        templates = await list_templates(db, organization_id)
    except SQLAlchemyError as exc:
        raise await _database_error(db, exc) from exc
    return success_response(
        request=request, data=[_dump(_template_payload(template)) for template in templates]
    )


@router.post("/templates", response_model=SuccessEnvelope[TemplateResponse] | TemplateResponse)
async def add_template(
    payload: CreateTemplateRequest,
    request: Request,
    principal: Principal = Depends(require_scope(SCOPE_SETUP_WRITE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    ensure_organization_access(principal, payload.organization_id)
    try:
        template = await create_template(
            db,
            organization_id=payload.organization_id,
            actor_id=principal.subject_id,
            title=payload.title,
            description=payload.description,
            kind=payload.kind,
            rrule=payload.rrule,
            due_offset_days=payload.due_offset_days,
            due_time_local=payload.due_time_local,
            rule=payload.rule,
            is_active=payload.is_active,
        )
    except SQLAlchemyError as exc:
        raise await _database_error(db, exc) from exc
    response = _template_payload(template)
    await _audit(
        request=request,
        db=db,
        principal=principal,
        event_type=audit.TEMPLATE_CREATED,
        resource_type="tax_event_template",
        resource_id=template.id,
        metadata={"kind": template.kind, "rrule": template.rrule},
    )
    return success_response(request=request, data=_dump(response))


@router.patch("/templates", response_model=SuccessEnvelope[TemplateResponse] | TemplateResponse)
async def patch_template(
    payload: UpdateTemplateRequest,
    request: Request,
    principal: Principal = Depends(require_scope(SCOPE_SETUP_WRITE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    ensure_organization_access(principal, payload.organization_id)
    # Only fields the client actually sent take part in the update.
    changes = payload.model_dump(exclude_unset=True, exclude={"id", "organization_id"})
    try:
        template = await update_template(
            db,
            organization_id=payload.organization_id,
            template_id=payload.id,
            changes=changes,
        )
    except SQLAlchemyError as exc:
        raise await _database_error(db, exc) from exc
    response = _template_payload(template)
    await _audit(
        request=request,
        db=db,
        principal=principal,
        event_type=audit.TEMPLATE_UPDATED,
        resource_type="tax_event_template",
        resource_id=template.id,
        metadata={"fields": sorted(changes)},
    )
    return success_response(request=request, data=_dump(response))


@router.get("/events", response_model=SuccessEnvelope[list[EventResponse]] | list[EventResponse])
async def read_events(
    request: Request,
    organization_id: str = Query(alias="organizationId", min_length=1),
    range_from: datetime = Query(alias="from"),
    range_to: datetime = Query(alias="to"),
    principal: Principal = Depends(require_scope(SCOPE_CALENDAR_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict | list:
    ensure_organization_access(principal, organization_id)
    try:
        events = await list_events(db, organization_id, _as_utc(range_from), _as_utc(range_to))
    except SQLAlchemyError as exc:
        raise await _database_error(db, exc) from exc
    return success_response(
        request=request, data=[_dump(_calendar_event_payload(event)) for event in events]
    )


@router.post(
    "/events/generate",
    response_model=SuccessEnvelope[GenerateEventsResponse] | GenerateEventsResponse,
)
async def generate_events(
    payload: GenerateEventsRequest,
    request: Request,
    principal: Principal = Depends(require_scope(SCOPE_EVENTS_WRITE)),
    db: AsyncSession = Depends(get_db),
    materializer: InstanceMaterializer = Depends(get_materializer),
) -> dict:
    ensure_organization_access(principal, payload.organization_id)
    try:
        result = await materializer.generate(
            db,
            payload.organization_id,
            _as_utc(payload.range_from),
            _as_utc(payload.range_to),
        )
    except SQLAlchemyError as exc:
        raise await _database_error(db, exc) from exc
    await _audit(
        request=request,
        db=db,
        principal=principal,
        event_type=audit.EVENTS_GENERATED,
        resource_type="tax_event_instance",
        resource_id=None,
        metadata={
            **result.as_dict(),
            "from": payload.range_from.isoformat(),
            "to": payload.range_to.isoformat(),
        },
    )
    return success_response(request=request, data=result.as_dict())


@router.post("/events/{event_id}/start", response_model=SuccessEnvelope[EventResponse] | EventResponse)
async def start_event(
    event_id: str,
    payload: OrganizationRequest,
    request: Request,
    principal: Principal = Depends(require_scope(SCOPE_EVENTS_WRITE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    ensure_organization_access(principal, payload.organization_id)
    try:
        instance = await mark_started(
            db, organization_id=payload.organization_id, instance_id=event_id
        )
    except SQLAlchemyError as exc:
        raise await _database_error(db, exc) from exc
    data = _dump(_event_payload(instance))
    await _audit(
        request=request,
        db=db,
        principal=principal,
        event_type=audit.EVENT_STARTED,
        resource_type="tax_event_instance",
        resource_id=instance.id,
    )
    return success_response(request=request, data=data)


@router.post("/events/{event_id}/done", response_model=SuccessEnvelope[EventResponse] | EventResponse)
async def complete_event(
    event_id: str,
    payload: EventNoteRequest,
    request: Request,
    principal: Principal = Depends(require_scope(SCOPE_EVENTS_WRITE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    ensure_organization_access(principal, payload.organization_id)
    try:
        instance = await mark_done(
            db,
            organization_id=payload.organization_id,
            instance_id=event_id,
            actor_id=principal.subject_id,
            note=payload.note,
        )
    except SQLAlchemyError as exc:
        raise await _database_error(db, exc) from exc
    data = _dump(_event_payload(instance))
    await _audit(
        request=request,
        db=db,
        principal=principal,
        event_type=audit.EVENT_DONE,
        resource_type="tax_event_instance",
        resource_id=instance.id,
        metadata={"note": payload.note},
    )
    return success_response(request=request, data=data)


@router.post("/events/{event_id}/skip", response_model=SuccessEnvelope[EventResponse] | EventResponse)
async def skip_event(
    event_id: str,
    payload: EventNoteRequest,
    request: Request,
    principal: Principal = Depends(require_scope(SCOPE_EVENTS_WRITE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    ensure_organization_access(principal, payload.organization_id)
    try:
        instance = await mark_skipped(
            db,
            organization_id=payload.organization_id,
            instance_id=event_id,
            note=payload.note,
        )
    except SQLAlchemyError as exc:
        raise await _database_error(db, exc) from exc
    data = _dump(_event_payload(instance))
    await _audit(
        request=request,
        db=db,
        principal=principal,
        event_type=audit.EVENT_SKIPPED,
        resource_type="tax_event_instance",
        resource_id=instance.id,
        metadata={"note": payload.note},
    )
    return success_response(request=request, data=data)


@router.post(
    "/events/{event_id}/attachments",
    response_model=SuccessEnvelope[AttachmentResponse] | AttachmentResponse,
)
async def add_event_attachment(
    event_id: str,
    payload: AttachDocumentRequest,
    request: Request,
    principal: Principal = Depends(require_scope(SCOPE_EVENTS_WRITE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    ensure_organization_access(principal, payload.organization_id)
    try:
        attachment = await attach_document(
            db,
            organization_id=payload.organization_id,
            instance_id=event_id,
            document_id=payload.document_id,
        )
    except SQLAlchemyError as exc:
        raise await _database_error(db, exc) from exc
    await _audit(
        request=request,
        db=db,
        principal=principal,
        event_type=audit.EVENT_DOCUMENT_ATTACHED,
        resource_type="tax_event_instance",
        resource_id=event_id,
        metadata={"document_id": payload.document_id},
    )
    return success_response(request=request, data=_dump(_attachment_payload(attachment)))
