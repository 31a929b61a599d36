from __future__ import annotations

from typing import Any

from taxcalendar.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _error_response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _error_response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    ),
    403: _error_response(
        "Forbidden",
        _error_example(
            code="FEATURE_NOT_ENABLED",
            message="Feature not enabled for organization plan",
            details={"feature_key": "feature.compliance_calendar"},
        ),
    ),
    404: _error_response(
        "Not found",
        _error_example(code="NOT_FOUND", message="Event not found"),
    ),
    409: _error_response(
        "Invalid lifecycle transition",
        _error_example(
            code="INVALID_STATE_TRANSITION",
            message="Cannot done an event in status SKIPPED",
            details={"current_status": "SKIPPED", "action": "done"},
        ),
    ),
    422: _error_response(
        "Validation error",
        _error_example(code="VALIDATION_ERROR", message="Unsupported RRULE freq: WEEKLY"),
    ),
    500: _error_response(
        "Database or internal error",
        _error_example(code="DATABASE_ERROR", message="Database error"),
    ),
}
