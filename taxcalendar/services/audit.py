from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from taxcalendar.domain.models import AuditEvent
from taxcalendar.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

ACTOR_ANONYMOUS = "anonymous"
ACTOR_API_KEY = "api_key"
ACTOR_SYSTEM = "system"

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"

PROFILE_UPSERTED = "tax_calendar.profile.upserted"
TEMPLATE_CREATED = "tax_calendar.template.created"
TEMPLATE_UPDATED = "tax_calendar.template.updated"
EVENTS_GENERATED = "tax_calendar.events.generated"
EVENT_STARTED = "tax_calendar.event.started"
EVENT_DONE = "tax_calendar.event.done"
EVENT_SKIPPED = "tax_calendar.event.skipped"
EVENT_DOCUMENT_ATTACHED = "tax_calendar.event.document_attached"
HORIZON_EXTENDED = "tax_calendar.horizon.extended"

ACCESS_GRANTED = "auth.access.success"
ACCESS_DENIED = "auth.access.failure"
SCOPE_DENIED = "auth.scope.forbidden"
API_KEY_ISSUED = "auth.api_key.created"

_CREDENTIAL_FRAGMENTS = ("api_key", "authorization", "token", "secret", "password")
# User-typed text is reduced to its length.
_FREE_TEXT_KEYS = frozenset({"note", "description", "title"})
_REDACTED = "[REDACTED]"


def clean_metadata(value: Any) -> Any:
    """Make audit metadata safe and JSON-ready.

    Credential-like keys are redacted, free-text keys become ``<key>_length``
    and dates are written as ISO strings.
    """
    if isinstance(value, dict):
        cleaned: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            lowered = key.lower()
            if any(fragment in lowered for fragment in _CREDENTIAL_FRAGMENTS):
                cleaned[key] = _REDACTED
            elif lowered in _FREE_TEXT_KEYS and isinstance(raw_value, str):
                cleaned[f"{key}_length"] = len(raw_value)
            else:
                cleaned[key] = clean_metadata(raw_value)
        return cleaned
    if isinstance(value, (list, tuple, set, frozenset)):
        return [clean_metadata(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


@dataclass(frozen=True)
class RequestContext:
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    @classmethod
    def from_request(cls, request: Request | None) -> "RequestContext":
        if request is None:
            return cls()
        return cls(
            request_id=getattr(request.state, "request_id", None),
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )


async def _write(session: AsyncSession, event: AuditEvent) -> bool:
    try:
        session.add(event)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning(
            "audit_event_write_failed event_type=%s organization_id=%s request_id=%s",
            event.event_type,
            event.organization_id,
            event.request_id,
            exc_info=exc,
        )
        return False
    return True


async def record_event(
    *,
    session: AsyncSession | None = None,
    organization_id: str | None,
    event_type: str,
    actor_type: str = ACTOR_SYSTEM,
    actor_id: str | None = None,
    actor_role: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
    resource_type: str | None = None,
    resource_id: str | None = None,
    context: RequestContext | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    occurred_at: datetime | None = None,
) -> bool:
    """Append one audit row and commit it; returns False if the write failed.

    A passed session is committed, so callers finish their own work first.
    Without one the row gets a fresh session and survives a rolled back caller.
    """
    resolved_context = context or RequestContext()
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        organization_id=organization_id,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=resolved_context.request_id,
        ip_address=resolved_context.ip_address,
        user_agent=resolved_context.user_agent,
        metadata_json=clean_metadata(metadata or {}),
        error_code=error_code,
    )
    if session is not None:
        return await _write(session, event)
    async with SessionLocal() as audit_session:
        return await _write(audit_session, event)
