from __future__ import annotations

from typing import Any

from tenantgate.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Document the shared error envelope once for every route.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Invalid input or token", code="INVALID_TOKEN", message="Invalid or expired invitation token"),
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    403: _response("Forbidden", code="FORBIDDEN", message="Only administrators can manage invitations"),
    404: _response("Not found", code="INVITATION_NOT_FOUND", message="Invitation not found or already accepted"),
    409: _response(
        "Conflict",
        code="DUPLICATE_EMAIL",
        message="A user with this email already exists in this organization",
    ),
    422: _response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    429: _response(
        "Rate limited",
        code="RATE_LIMIT_EXCEEDED",
        message="Client rate limit exceeded. Try again after 12:15:00 UTC.",
        details={"scope": "client", "reset_at": "2026-03-07T12:15:00+00:00"},
    ),
    500: _response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
    502: _response("Identity provider error", code="AUTH_ERROR", message="Identity provider request failed"),
    503: _response("Storage unavailable", code="STORAGE_UNAVAILABLE", message="Storage is temporarily unavailable"),
}
