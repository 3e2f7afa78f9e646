from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantgate.apps.api.response import error_response
from tenantgate.core.errors import OnboardingError, RateLimitExceededError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "BAD_GATEWAY",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    # Fallback code for HTTPExceptions raised without a structured detail.
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


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Normalize FastAPI and Starlette HTTP errors into the shared error envelope.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def onboarding_exception_handler(request: Request, exc: OnboardingError) -> JSONResponse:
    # Map the onboarding taxonomy to status codes; messages are already user-safe.
    headers: dict[str, str] | None = None
    details = dict(exc.details) or None
    if isinstance(exc, RateLimitExceededError):
        remaining = exc.reset_at - datetime.now(timezone.utc)
        retry_after_s = max(1, int(remaining.total_seconds()))
        headers = {"Retry-After": str(retry_after_s)}
        details = {**(details or {}), "scope": exc.scope, "reset_at": exc.reset_at.isoformat()}
    if exc.status_code >= 500:
        logger.warning("onboarding_request_failed code=%s path=%s", exc.code, request.url.path)
    payload = error_response(request=request, code=exc.code, message=exc.message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Pydantic errors go under details.errors so forms can highlight fields.
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": [{"loc": list(err.get("loc", [])), "msg": err.get("msg")} for err in exc.errors()]},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Log the traceback server-side; clients only see INTERNAL_ERROR.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)

