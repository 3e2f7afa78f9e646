from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from tenantgate.apps.api.deps import get_runtime
from tenantgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantgate.apps.api.response import SuccessEnvelope, success_response
from tenantgate.services.runtime import OnboardingRuntime

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    storage_backend: str
    email_processor_running: bool


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, runtime: OnboardingRuntime = Depends(get_runtime)) -> dict:
    # Liveness only; no store or provider round-trips.
    payload = HealthResponse(
        status="ok",
        storage_backend=runtime.settings.storage_backend,
        email_processor_running=runtime.queue_processor.is_running,
    )
    return success_response(request=request, data=payload)
