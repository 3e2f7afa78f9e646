from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from tenantgate.apps.api.deps import get_runtime, require_admin_actor
from tenantgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantgate.apps.api.response import SuccessEnvelope, success_response
from tenantgate.domain.models import SecurityEvent
from tenantgate.services.onboarding import Actor
from tenantgate.services.runtime import OnboardingRuntime
from tenantgate.services.security_events import SecurityEventType, SecuritySeverity


router = APIRouter(prefix="/security", tags=["security"], responses=DEFAULT_ERROR_RESPONSES)


class SecurityEventResponse(BaseModel):
    id: str
    tenant_id: str | None = None
    event_type: str
    severity: str
    user_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    email: str | None = None
    details: dict[str, Any] | None = None
    created_at: datetime


class SuspiciousActivityResponse(BaseModel):
    tenant_id: str | None = None
    ip_address: str | None = None
    email: str | None = None
    event_count: int
    event_types: int
    event_type_list: list[str]
    last_event: datetime
    risk_level: str


class SecurityStatsResponse(BaseModel):
    total_events: int
    critical_events: int
    high_severity_events: int
    unique_clients: int
    unique_emails: int
    most_common_kind: str | None = None
    recent_events: list[SecurityEventResponse]


def _event_payload(event: SecurityEvent) -> SecurityEventResponse:
    return SecurityEventResponse(
        id=event.id,
        tenant_id=event.tenant_id,
        event_type=event.event_type,
        severity=event.severity,
        user_id=event.user_id,
        ip_address=event.ip_address,
        user_agent=event.user_agent,
        email=event.email,
        details=event.details_json,
        created_at=event.created_at,
    )


@router.get("/events", response_model=SuccessEnvelope[list[SecurityEventResponse]])
async def list_security_events(
    request: Request,
    event_type: SecurityEventType | None = None,
    severity: SecuritySeverity | None = None,
    user_id: str | None = None,
    ip_address: str | None = None,
    email: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(require_admin_actor),
    runtime: OnboardingRuntime = Depends(get_runtime),
) -> dict:
    # Admins only see events recorded against their own tenant.
    events = await runtime.audit.list_events(
        actor.tenant_id,
        event_type=event_type,
        severity=severity,
        user_id=user_id,
        ip_address=ip_address,
        email=email,
        start=start,
        end=end,
        limit=limit,
        offset=offset,
    )
    return success_response(request=request, data=[_event_payload(event) for event in events])


@router.get("/suspicious", response_model=SuccessEnvelope[list[SuspiciousActivityResponse]])
async def list_suspicious_activity(
    request: Request,
    actor: Actor = Depends(require_admin_actor),
    runtime: OnboardingRuntime = Depends(get_runtime),
) -> dict:
    findings = await runtime.audit.query_suspicious_activity(actor.tenant_id)
    data = [
        SuspiciousActivityResponse(
            tenant_id=item.tenant_id,
            ip_address=item.ip_address,
            email=item.email,
            event_count=item.event_count,
            event_types=item.event_types,
            event_type_list=list(item.event_type_list),
            last_event=item.last_event,
            risk_level=item.risk_level,
        )
        for item in findings
    ]
    return success_response(request=request, data=data)


@router.get("/stats", response_model=SuccessEnvelope[SecurityStatsResponse])
async def security_stats(
    request: Request,
    days: int | None = Query(default=None, ge=1, le=365),
    actor: Actor = Depends(require_admin_actor),
    runtime: OnboardingRuntime = Depends(get_runtime),
) -> dict:
    stats = await runtime.audit.stats(actor.tenant_id, days=days)
    data = SecurityStatsResponse(
        total_events=stats.total_events,
        critical_events=stats.critical_events,
        high_severity_events=stats.high_severity_events,
        unique_clients=stats.unique_clients,
        unique_emails=stats.unique_emails,
        most_common_kind=stats.most_common_kind,
        recent_events=[_event_payload(event) for event in stats.recent_events],
    )
    return success_response(request=request, data=data)
