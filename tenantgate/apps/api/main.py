from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantgate.apps.api.errors import (
    http_exception_handler,
    onboarding_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantgate.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from tenantgate.apps.api.routes.health import router as health_router
from tenantgate.apps.api.routes.invitations import router as invitations_router
from tenantgate.apps.api.routes.ops import router as ops_router
from tenantgate.apps.api.routes.security import router as security_router
from tenantgate.apps.api.routes.setup import router as setup_router
from tenantgate.core.config import get_settings
from tenantgate.core.errors import OnboardingError
from tenantgate.core.logging import configure_logging
from tenantgate.persistence.db import dispose_engine
from tenantgate.services.runtime import OnboardingRuntime, build_runtime


logger = logging.getLogger(__name__)


def create_app(runtime: OnboardingRuntime | None = None) -> FastAPI:
    configure_logging()
    owns_runtime = runtime is None

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Background processors live for the process; stop them before releasing pools.
        if app.state.runtime is None:
            app.state.runtime = build_runtime()
        active: OnboardingRuntime = app.state.runtime
        active.start()
        try:
            yield
        finally:
            await active.stop()
            if owns_runtime and active.settings.storage_backend == "sql":
                await dispose_engine()

    app = FastAPI(title=get_settings().app_name, lifespan=lifespan)
    # Injected runtimes are usable without lifespan, e.g. under httpx ASGITransport.
    app.state.runtime = runtime

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Echo the caller's request id so audit rows and client logs line up.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.debug(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(OnboardingError)
    async def _onboarding_exception_handler(request: Request, exc: OnboardingError):
        return await onboarding_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(invitations_router, prefix=f"/{API_VERSION}")
    app.include_router(setup_router, prefix=f"/{API_VERSION}")
    # Admin-only audit views for security investigations.
    app.include_router(security_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
