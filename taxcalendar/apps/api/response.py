from __future__ import annotations

from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from typing import Any, Generic, TypeVar

from fastapi import Request
from pydantic import BaseModel, Field
from starlette.responses import Response


API_VERSION = "v1"
LEGACY_SUNSET_DAYS = 90
# Paths that never carry deprecation headers.
_CURRENT_PREFIXES = (f"/{API_VERSION}", "/health", "/docs", "/openapi.json", "/redoc")

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)
    # Number of items when ``data`` is a list of events or templates.
    count: int | None = None


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def request_id_of(request: Request) -> str:
    # Set by the request middleware; the header covers handlers that run outside it.
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id", "")


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}")


def _meta(request: Request, *, count: int | None = None) -> dict[str, Any]:
    return ResponseMeta(request_id=request_id_of(request), count=count).model_dump(exclude_none=True)


def success_response(*, request: Request, data: Any) -> Any:
    """Envelope ``data`` for /v1 routes; legacy calendar routes get it bare."""
    if not is_versioned_request(request):
        return data
    count = len(data) if isinstance(data, list) else None
    return {"data": data, "meta": _meta(request, count=count)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}


def mark_legacy_response(request: Request, response: Response, *, now: datetime | None = None) -> None:
    """Flag unversioned calendar routes as deprecated in favour of /v1."""
    if request.url.path.startswith(_CURRENT_PREFIXES):
        return
    sunset_at = (now or datetime.now(timezone.utc)) + timedelta(days=LEGACY_SUNSET_DAYS)
    response.headers["Deprecation"] = "true"
    response.headers["Sunset"] = format_datetime(sunset_at, usegmt=True)
    response.headers["Link"] = f'</{API_VERSION}/docs>; rel="successor-version"'
