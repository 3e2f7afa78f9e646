from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from tenantgate.apps.api.deps import get_runtime, require_admin_actor
from tenantgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantgate.apps.api.response import SuccessEnvelope, success_response
from tenantgate.services.onboarding import Actor
from tenantgate.services.runtime import OnboardingRuntime


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class FailedMessageResponse(BaseModel):
    id: str
    to: str
    template_name: str
    attempts: int
    last_error: str | None = None
    created_at: datetime


class EmailQueueResponse(BaseModel):
    pending: int
    sending: int
    total: int
    processor_running: bool
    failed: list[FailedMessageResponse]


@router.get("/email-queue", response_model=SuccessEnvelope[EmailQueueResponse])
async def email_queue_status(
    request: Request,
    _actor: Actor = Depends(require_admin_actor),
    runtime: OnboardingRuntime = Depends(get_runtime),
) -> dict:
    # Queue depth and recent terminal failures for operators.
    queue_status = runtime.email_queue.status()
    failed = [
        FailedMessageResponse(
            id=message.id,
            to=message.to,
            template_name=message.template_name,
            attempts=message.attempts,
            last_error=message.last_error,
            created_at=message.created_at,
        )
        for message in runtime.email_queue.failed_messages()
    ]
    data = EmailQueueResponse(
        pending=queue_status.pending,
        sending=queue_status.sending,
        total=queue_status.total,
        processor_running=runtime.queue_processor.is_running,
        failed=failed,
    )
    return success_response(request=request, data=data)
