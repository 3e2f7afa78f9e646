from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from tenantgate.apps.api.deps import client_context, get_runtime, require_admin_actor
from tenantgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantgate.apps.api.response import SuccessEnvelope, success_response
from tenantgate.core.config import ROLE_COUNSELOR
from tenantgate.domain.models import Invitation
from tenantgate.services.onboarding import (
    AcceptanceResult,
    Actor,
    InvitationResult,
    PendingInvitation,
    Registration,
    TokenValidation,
)
from tenantgate.services.runtime import OnboardingRuntime


router = APIRouter(prefix="/invitations", tags=["invitations"], responses=DEFAULT_ERROR_RESPONSES)


class InvitationCreateRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    role: str = Field(default=ROLE_COUNSELOR, min_length=1, max_length=32)


class InvitationResponse(BaseModel):
    id: str
    tenant_id: str
    email: str
    role: str
    invited_by: str
    expires_at: datetime
    accepted_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime


class InvitationIssuedResponse(BaseModel):
    invitation: InvitationResponse
    # Returned once so admins can share the link manually if email is delayed.
    token: str
    email_queued: bool


class PendingInvitationResponse(InvitationResponse):
    inviter_name: str
    is_expired: bool


class TokenRequest(BaseModel):
    token: str = Field(min_length=1, max_length=512)


class TokenValidationResponse(BaseModel):
    is_valid: bool
    error: str | None = None
    email: str | None = None
    role: str | None = None
    tenant_id: str | None = None
    tenant_name: str | None = None
    expires_at: datetime | None = None


class AcceptInvitationRequest(TokenRequest):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=8, max_length=256)


class SessionResponse(BaseModel):
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None


class AcceptedUserResponse(BaseModel):
    id: str
    tenant_id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    role: str


class AcceptInvitationResponse(BaseModel):
    user: AcceptedUserResponse
    auto_login: bool
    session: SessionResponse | None = None


def _invitation_payload(invitation: Invitation) -> InvitationResponse:
    return InvitationResponse(
        id=invitation.id,
        tenant_id=invitation.tenant_id,
        email=invitation.email,
        role=invitation.role,
        invited_by=invitation.invited_by,
        expires_at=invitation.expires_at,
        accepted_at=invitation.accepted_at,
        cancelled_at=invitation.cancelled_at,
        created_at=invitation.created_at,
    )


def _issued_payload(result: InvitationResult) -> InvitationIssuedResponse:
    return InvitationIssuedResponse(
        invitation=_invitation_payload(result.invitation),
        token=result.token,
        email_queued=result.email_message_id is not None,
    )


def _pending_payload(item: PendingInvitation) -> PendingInvitationResponse:
    base = _invitation_payload(item.invitation)
    return PendingInvitationResponse(
        **base.model_dump(),
        inviter_name=item.inviter_name,
        is_expired=item.is_expired,
    )


def validation_payload(validation: TokenValidation) -> TokenValidationResponse:
    return TokenValidationResponse(
        is_valid=validation.is_valid,
        error=validation.error,
        email=validation.email,
        role=validation.role,
        tenant_id=validation.tenant_id,
        tenant_name=validation.tenant_name,
        expires_at=validation.expires_at,
    )


def _acceptance_payload(result: AcceptanceResult) -> AcceptInvitationResponse:
    session = None
    if result.session is not None:
        session = SessionResponse(
            access_token=result.session.access_token,
            refresh_token=result.session.refresh_token,
            expires_in=result.session.expires_in,
        )
    return AcceptInvitationResponse(
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


@router.post(
    "",
    status_code=201,
    response_model=SuccessEnvelope[InvitationIssuedResponse],
)
async def create_invitation(
    payload: InvitationCreateRequest,
    request: Request,
    actor: Actor = Depends(require_admin_actor),
    runtime: OnboardingRuntime = Depends(get_runtime),
) -> dict:
    # Admin-only; the service re-checks tenant membership and rate limits.
    result = await runtime.invitations.create_invitation(actor, email=payload.email, role=payload.role)
    return success_response(request=request, data=_issued_payload(result))


@router.get("", response_model=SuccessEnvelope[list[PendingInvitationResponse]])
async def list_pending_invitations(
    request: Request,
    actor: Actor = Depends(require_admin_actor),
    runtime: OnboardingRuntime = Depends(get_runtime),
) -> dict:
    pending = await runtime.invitations.list_pending_invitations(actor)
    return success_response(request=request, data=[_pending_payload(item) for item in pending])


@router.post("/{invitation_id}/resend", response_model=SuccessEnvelope[InvitationIssuedResponse])
async def resend_invitation(
    invitation_id: str,
    request: Request,
    actor: Actor = Depends(require_admin_actor),
    runtime: OnboardingRuntime = Depends(get_runtime),
) -> dict:
    result = await runtime.invitations.resend_invitation(actor, invitation_id)
    return success_response(request=request, data=_issued_payload(result))


@router.delete("/{invitation_id}", response_model=SuccessEnvelope[InvitationResponse])
async def cancel_invitation(
    invitation_id: str,
    request: Request,
    actor: Actor = Depends(require_admin_actor),
    runtime: OnboardingRuntime = Depends(get_runtime),
) -> dict:
    cancelled = await runtime.invitations.cancel_invitation(actor, invitation_id)
    return success_response(request=request, data=_invitation_payload(cancelled))


@router.post("/validate", response_model=SuccessEnvelope[TokenValidationResponse])
async def validate_invitation_token(
    payload: TokenRequest,
    request: Request,
    runtime: OnboardingRuntime = Depends(get_runtime),
) -> dict:
    # Public: invalid tokens are a 200 with is_valid=false so the UI can render the reason.
    validation = await runtime.invitations.validate_token(payload.token, client_context(request))
    return success_response(request=request, data=validation_payload(validation))


@router.post("/accept", status_code=201, response_model=SuccessEnvelope[AcceptInvitationResponse])
async def accept_invitation(
    payload: AcceptInvitationRequest,
    request: Request,
    runtime: OnboardingRuntime = Depends(get_runtime),
) -> dict:
    result = await runtime.invitations.accept_invitation(
        payload.token,
        Registration(
            first_name=payload.first_name.strip(),
            last_name=payload.last_name.strip(),
            password=payload.password,
        ),
        client_context(request),
    )
    return success_response(request=request, data=_acceptance_payload(result))
