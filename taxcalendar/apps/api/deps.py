from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, AsyncGenerator
import asyncio
import time

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from taxcalendar.core.config import get_settings
from taxcalendar.domain.models import ApiKey, User
from taxcalendar.persistence.db import SessionLocal, get_session
from taxcalendar.services.audit import (
    ACCESS_DENIED,
    ACCESS_GRANTED,
    ACTOR_ANONYMOUS,
    ACTOR_API_KEY,
    ACTOR_SYSTEM,
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
    SCOPE_DENIED,
    RequestContext,
    record_event,
)
from taxcalendar.services.auth.api_keys import (
    hash_api_key,
    key_prefix_of,
    normalize_role,
    role_has_scope,
)
from taxcalendar.services.entitlements import FEATURE_COMPLIANCE_CALENDAR, require_feature


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Authenticated identity used for organization scoping and scope checks.
    subject_id: str
    organization_id: str
    role: str
    api_key_id: str
    auth_method: str = "api_key"


_auth_cache: dict[str, tuple[float, Principal]] = {}
_auth_cache_lock = asyncio.Lock()


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str, *, code: str = "AUTH_FORBIDDEN") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": code, "message": message},
    )


def _extract_error_code(exc: HTTPException) -> str | None:
    detail = exc.detail
    if isinstance(detail, dict):
        return detail.get("code")
    return None


def _request_metadata(request: Request) -> dict[str, str]:
    # Minimal request context; headers are never persisted.
    return {"path": request.url.path, "method": request.method}


async def _audit_auth(
    *,
    db: AsyncSession,
    request: Request,
    event_type: str,
    organization_id: str | None = None,
    actor_type: str = ACTOR_ANONYMOUS,
    actor_id: str | None = None,
    actor_role: str | None = None,
    metadata: dict[str, Any] | None = None,
    error: HTTPException | None = None,
) -> None:
    await record_event(
        session=db,
        organization_id=organization_id,
        event_type=event_type,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        outcome=OUTCOME_FAILURE if error is not None else OUTCOME_SUCCESS,
        resource_type="auth",
        context=RequestContext.from_request(request),
        metadata={**_request_metadata(request), **(metadata or {})},
        error_code=_extract_error_code(error) if error is not None else None,
    )


async def _get_cached_principal(key_hash: str, ttl_s: int) -> Principal | None:
    if ttl_s <= 0:
        return None
    now = time.time()
    async with _auth_cache_lock:
        entry = _auth_cache.get(key_hash)
        if not entry:
            return None
        expires_at, principal = entry
        if expires_at <= now:
            _auth_cache.pop(key_hash, None)
            return None
        return principal


async def _set_cached_principal(key_hash: str, principal: Principal, ttl_s: int) -> None:
    # Fixed expiry keeps revocations responsive.
    if ttl_s <= 0:
        return
    async with _auth_cache_lock:
        _auth_cache[key_hash] = (time.time() + ttl_s, principal)


def reset_auth_cache() -> None:
    # Clear cached principals for deterministic tests.
    _auth_cache.clear()


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def _principal_from_dev_headers(request: Request) -> Principal:
    # Identity headers are honored only when AUTH_DEV_BYPASS is explicitly enabled.
    organization_id = request.headers.get("X-Organization-Id")
    if not organization_id:
        raise _auth_error("X-Organization-Id header is required in dev bypass mode")
    user_id = request.headers.get("X-User-Id") or f"dev-{organization_id}"
    role_header = request.headers.get("X-Role", "admin")
    try:
        role = normalize_role(role_header)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    return Principal(
        subject_id=user_id,
        organization_id=organization_id,
        role=role,
        api_key_id="dev-bypass",
        auth_method="dev_bypass",
    )


async def _touch_last_used(api_key_id: str) -> None:
    # Runs outside the request transaction; a failed touch never fails auth.
    async with SessionLocal() as session:
        try:
            await session.execute(
                update(ApiKey)
                .where(ApiKey.id == api_key_id)
                .values(last_used_at=func.now())
            )
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()


async def _dev_bypass_principal(request: Request, db: AsyncSession) -> Principal:
    principal = _principal_from_dev_headers(request)
    await _audit_auth(
        db=db,
        request=request,
        event_type=ACCESS_GRANTED,
        organization_id=principal.organization_id,
        actor_type=ACTOR_SYSTEM,
        actor_id=principal.subject_id,
        actor_role=principal.role,
        metadata={"auth_mode": "dev_bypass"},
    )
    return principal


async def _reject(
    request: Request,
    db: AsyncSession,
    error: HTTPException,
    *,
    api_key: ApiKey | None = None,
    user: User | None = None,
    metadata: dict[str, Any] | None = None,
) -> HTTPException:
    details = dict(metadata or {})
    if user is not None:
        details["user_id"] = user.id
    await _audit_auth(
        db=db,
        request=request,
        event_type=ACCESS_DENIED,
        organization_id=api_key.organization_id if api_key is not None else None,
        actor_type=ACTOR_API_KEY if api_key is not None else ACTOR_ANONYMOUS,
        actor_id=api_key.id if api_key is not None else None,
        actor_role=user.role if user is not None else None,
        metadata=details,
        error=error,
    )
    return error


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    """Resolve the caller from a bearer API key, or from dev headers when allowed."""
    settings = get_settings()
    header_value = request.headers.get(settings.auth_api_key_header)
    try:
        bearer_token = _parse_bearer_token(header_value)
    except HTTPException as exc:
        raise await _reject(request, db, exc)

    if not settings.auth_enabled or not bearer_token:
        if settings.auth_dev_bypass:
            return await _dev_bypass_principal(request, db)
        if not settings.auth_enabled:
            raise await _reject(
                request,
                db,
                _auth_error("Authentication disabled; set AUTH_DEV_BYPASS=true for dev access"),
            )
        raise await _reject(request, db, _auth_error("Missing API key"))

    key_hash = hash_api_key(bearer_token)
    cached = await _get_cached_principal(key_hash, settings.auth_cache_ttl_s)
    if cached:
        await _audit_auth(
            db=db,
            request=request,
            event_type=ACCESS_GRANTED,
            organization_id=cached.organization_id,
            actor_type=ACTOR_API_KEY,
            actor_id=cached.api_key_id,
            actor_role=cached.role,
            metadata={"auth_cache": True},
        )
        return cached

    try:
        result = await db.execute(
            select(ApiKey, User)
            .join(User, ApiKey.user_id == User.id)
            .where(ApiKey.key_hash == key_hash)
        )
    except SQLAlchemyError as exc:
        error = HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Authentication unavailable"},
        )
        raise error from exc

    row = result.first()
    if row is None:
        # The prefix identifies which key was tried without storing the secret.
        raise await _reject(
            request,
            db,
            _auth_error("Invalid API key"),
            metadata={"key_prefix": key_prefix_of(bearer_token)},
        )
    api_key, user = row
    if api_key.revoked_at is not None or not user.is_active:
        raise await _reject(
            request, db, _auth_error("API key is revoked or inactive"), api_key=api_key, user=user
        )
    if api_key.expires_at is not None and api_key.expires_at <= datetime.now(timezone.utc):
        raise await _reject(request, db, _auth_error("API key expired"), api_key=api_key, user=user)
    if api_key.organization_id != user.organization_id:
        raise await _reject(
            request,
            db,
            _forbidden_error("Organization mismatch for API key"),
            api_key=api_key,
            user=user,
        )
    try:
        role = normalize_role(user.role)
    except ValueError as exc:
        error = await _reject(request, db, _forbidden_error(str(exc)), api_key=api_key, user=user)
        raise error from exc

    principal = Principal(
        subject_id=user.id,
        organization_id=user.organization_id,
        role=role,
        api_key_id=api_key.id,
    )
    await _set_cached_principal(key_hash, principal, settings.auth_cache_ttl_s)
    asyncio.create_task(_touch_last_used(api_key.id))
    await _audit_auth(
        db=db,
        request=request,
        event_type=ACCESS_GRANTED,
        organization_id=principal.organization_id,
        actor_type=ACTOR_API_KEY,
        actor_id=principal.api_key_id,
        actor_role=principal.role,
        metadata={"user_id": principal.subject_id},
    )
    return principal


def require_scope(scope: str):
    # Dependency factory enforcing the role scope plus the calendar feature entitlement.
    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        if not role_has_scope(principal.role, scope):
            error = _forbidden_error(f"Role {principal.role} lacks scope {scope}")
            await _audit_auth(
                db=db,
                request=request,
                event_type=SCOPE_DENIED,
                organization_id=principal.organization_id,
                actor_type=ACTOR_API_KEY,
                actor_id=principal.api_key_id,
                actor_role=principal.role,
                metadata={"required_scope": scope},
                error=error,
            )
            raise error
        await require_feature(
            session=db,
            organization_id=principal.organization_id,
            feature_key=FEATURE_COMPLIANCE_CALENDAR,
        )
        return principal

    return _dependency


def ensure_organization_access(principal: Principal, organization_id: str) -> None:
    # The organization in the request must be the one the credential belongs to.
    if organization_id != principal.organization_id:
        raise _forbidden_error(
            "Organization does not match credentials", code="ORGANIZATION_FORBIDDEN"
        )
