from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from tenantgate.apps.api.deps import client_context, get_runtime
from tenantgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantgate.apps.api.response import SuccessEnvelope, success_response
from tenantgate.apps.api.routes.invitations import (
    AcceptedUserResponse,
    SessionResponse,
    TokenRequest,
)
from tenantgate.services.onboarding import InitialSetup, SetupResult
from tenantgate.services.runtime import OnboardingRuntime


router = APIRouter(prefix="/setup", tags=["setup"], responses=DEFAULT_ERROR_RESPONSES)


class SetupTokenValidationResponse(BaseModel):
    is_valid: bool
    error: str | None = None
    tenant_name: str | None = None
    subdomain: str | None = None
    admin_email: str | None = None
    expires_at: datetime | None = None


class CompleteSetupRequest(TokenRequest):
    tenant_name: str = Field(min_length=1, max_length=200)
    subdomain: str = Field(min_length=1, max_length=63)
    admin_email: str = Field(min_length=3, max_length=320)
    admin_first_name: str = Field(min_length=1, max_length=100)
    admin_last_name: str = Field(min_length=1, max_length=100)
    admin_password: str = Field(min_length=8, max_length=256)
    contact_phone: str | None = Field(default=None, max_length=50)
    contact_address: str | None = Field(default=None, max_length=500)
    contact_email: str | None = Field(default=None, max_length=320)
    contact_person_name: str | None = Field(default=None, max_length=200)


class TenantResponse(BaseModel):
    id: str
    name: str
    subdomain: str
    created_at: datetime


class CompleteSetupResponse(BaseModel):
    tenant: TenantResponse
    user: AcceptedUserResponse
    auto_login: bool
    session: SessionResponse | None = None


def _setup_payload(result: SetupResult) -> CompleteSetupResponse:
    session = None
    if result.session is not None:
        session = SessionResponse(
            access_token=result.session.access_token,
            refresh_token=result.session.refresh_token,
            expires_in=result.session.expires_in,
        )
    return CompleteSetupResponse(
        tenant=TenantResponse(
            id=result.tenant.id,
            name=result.tenant.name,
            subdomain=result.tenant.subdomain,
            created_at=result.tenant.created_at,
        ),
        user=AcceptedUserResponse(
            id=result.user.id,
            tenant_id=result.user.tenant_id,
            email=result.user.email,
            first_name=result.user.first_name,
            last_name=result.user.last_name,
            role=result.user.role,
        ),
        auto_login=result.auto_login,
        session=session,
    )


@router.post("/validate", response_model=SuccessEnvelope[SetupTokenValidationResponse])
async def validate_setup_token(
    payload: TokenRequest,
    request: Request,
    runtime: OnboardingRuntime = Depends(get_runtime),
) -> dict:
    validation = await runtime.setup.validate_setup_token(payload.token, client_context(request))
    data = SetupTokenValidationResponse(
        is_valid=validation.is_valid,
        error=validation.error,
        tenant_name=validation.tenant_name,
        subdomain=validation.subdomain,
        admin_email=validation.email,
        expires_at=validation.expires_at,
    )
    return success_response(request=request, data=data)


@router.post("/complete", status_code=201, response_model=SuccessEnvelope[CompleteSetupResponse])
async def complete_setup(
    payload: CompleteSetupRequest,
    request: Request,
    runtime: OnboardingRuntime = Depends(get_runtime),
) -> dict:
    # Creates the tenant and its first administrator in one step.
    result = await runtime.setup.complete_initial_setup(
        payload.token,
        InitialSetup(
            tenant_name=payload.tenant_name,
            subdomain=payload.subdomain,
            admin_email=payload.admin_email,
            admin_first_name=payload.admin_first_name.strip(),
            admin_last_name=payload.admin_last_name.strip(),
            admin_password=payload.admin_password,
            contact_phone=payload.contact_phone,
            contact_address=payload.contact_address,
            contact_email=payload.contact_email,
            contact_person_name=payload.contact_person_name,
        ),
        client_context(request),
    )
    return success_response(request=request, data=_setup_payload(result))
