from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from taxcalendar.apps.api.response import error_response, is_versioned_request
from taxcalendar.core.errors import (
    ConflictError,
    DatabaseError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    TaxCalendarError,
    ValidationError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific class first; lookup walks this list in order.
_DOMAIN_ERROR_MAPPING: list[tuple[type[TaxCalendarError], int, str]] = [
    (ValidationError, 422, "VALIDATION_ERROR"),
    (NotFoundError, 404, "NOT_FOUND"),
    (ForbiddenError, 403, "FEATURE_NOT_ENABLED"),
    (InvalidTransitionError, 409, "INVALID_STATE_TRANSITION"),
    (ConflictError, 409, "CONFLICT"),
    (DatabaseError, 500, "DATABASE_ERROR"),
]


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def domain_error_status(exc: TaxCalendarError) -> tuple[int, str]:
    for error_cls, status_code, code in _DOMAIN_ERROR_MAPPING:
        if isinstance(exc, error_cls):
            return status_code, code
    return 500, "INTERNAL_ERROR"


def _domain_error_details(exc: TaxCalendarError) -> dict[str, Any] | None:
    if isinstance(exc, InvalidTransitionError):
        return {"current_status": exc.current_status, "action": exc.action}
    feature_key = getattr(exc, "feature_key", None)
    if feature_key:
        return {"feature_key": feature_key}
    return None


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Starlette raises its own class for unknown routes and methods.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def tax_calendar_exception_handler(request: Request, exc: TaxCalendarError) -> JSONResponse:
    """Translate service-layer domain errors into HTTP responses."""
    status_code, code = domain_error_status(exc)
    if status_code >= 500:
        logger.error("domain_error path=%s code=%s", request.url.path, code, exc_info=exc)
        message = "Database error"
    else:
        message = str(exc)
    details = _domain_error_details(exc)
    if not is_versioned_request(request):
        detail: dict[str, Any] = {"code": code, "message": message, **(details or {})}
        return JSONResponse(content={"detail": detail}, status_code=status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces to clients.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
