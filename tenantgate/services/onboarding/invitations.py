from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Callable
from uuid import uuid4

from tenantgate.core.config import Settings, get_settings
from tenantgate.core.errors import (
    AccountSetupError,
    IdentityProviderError,
    OnboardingConflictError,
    OnboardingNotFoundError,
    OnboardingValidationError,
    RateLimitExceededError,
    StorageUnavailableError,
)
from tenantgate.domain.models import AppUser, Invitation
from tenantgate.persistence.repos.onboarding import OnboardingStore
from tenantgate.services.email import EmailDeliveryQueue, queue_invitation_email
from tenantgate.services.identity import IdentityProvider, IdentitySession
from tenantgate.services.onboarding.common import (
    Actor,
    RequestContext,
    TokenValidation,
    match_token,
    normalize_email,
    normalize_role,
    require_admin,
    screen_token,
    token_hint,
    try_sign_in,
    utc_now,
)
from tenantgate.services.rate_limit import LimitPair, RateLimiter, RateLimitResult, resend_limits
from tenantgate.services.security_events import (
    SecurityAuditLog,
    SecurityEventType,
    SecuritySeverity,
)
from tenantgate.services.tokens import generate_token, hash_token, token_lookup_key


logger = logging.getLogger(__name__)

_TOKEN_KIND = "invitation"
_NOT_FOUND_MESSAGE = "Invitation not found or already accepted"
_DEFAULT_INVITER_NAME = "Your administrator"
_DEFAULT_TENANT_NAME = "Your organization"


@dataclass(frozen=True)
class InvitationResult:
    invitation: Invitation
    # Plaintext token; returned once so the caller can deliver it out of band if needed.
    token: str
    email_message_id: str | None


@dataclass(frozen=True)
class Registration:
    first_name: str
    last_name: str
    password: str


@dataclass(frozen=True)
class AcceptanceResult:
    user: AppUser
    auto_login: bool
    session: IdentitySession | None = None


@dataclass(frozen=True)
class PendingInvitation:
    invitation: Invitation
    inviter_name: str
    is_expired: bool


def _display_name(user: AppUser | None) -> str | None:
    if user is None:
        return None
    name = " ".join(part for part in (user.first_name, user.last_name) if part)
    return name or None


class InvitationService:
    """Create, validate, accept, cancel and resend tenant invitations.

    Every security-relevant transition is written to the audit log. Email is
    queued after the invitation is stored and never rolls it back.
    """

    def __init__(
        self,
        *,
        store: OnboardingStore,
        audit: SecurityAuditLog,
        rate_limiter: RateLimiter,
        email_queue: EmailDeliveryQueue,
        identity: IdentityProvider,
        settings: Settings | None = None,
        time_source: Callable[[], datetime] | None = None,
        resend_policy: LimitPair | None = None,
    ) -> None:
        self._store = store
        self._audit = audit
        self._rate_limiter = rate_limiter
        self._email_queue = email_queue
        self._identity = identity
        self._settings = settings or get_settings()
        self._time_source = time_source or utc_now
        self._resend_policy = resend_policy or resend_limits(self._settings)

    @property
    def _ttl(self) -> timedelta:
        return timedelta(days=self._settings.invitation_ttl_days)

    async def _enforce_rate_limit(
        self,
        actor: Actor,
        *,
        operation: str,
        policy: LimitPair | None = None,
    ) -> RateLimitResult:
        client_key = f"{operation}:{actor.client_id or 'unknown'}"
        account_key = f"{operation}:{actor.user_id}"
        if policy is None:
            result = await self._rate_limiter.check_combined(client_key, account_key)
        else:
            result = await self._rate_limiter.check_combined(
                client_key,
                account_key,
                client_config=policy.client,
                account_config=policy.account,
            )
        if not result.allowed:
            await self._audit.record(
                SecurityEventType.RATE_LIMIT_EXCEEDED,
                tenant_id=actor.tenant_id,
                user_id=actor.user_id,
                ip_address=actor.client_id,
                user_agent=actor.user_agent,
                details={"operation": operation, "scope": result.scope, "reset_at_ms": result.reset_at_ms},
            )
            raise RateLimitExceededError(
                result.error or "Rate limit exceeded",
                scope=result.scope,
                reset_at=result.reset_at,
            )
        return result

    async def _queue_email(self, invitation: Invitation, token: str, actor: Actor) -> str | None:
        # Email problems are warnings; the invitation already exists.
        try:
            tenant = await self._store.get_tenant(invitation.tenant_id)
            inviter = await self._store.get_user(actor.user_id)
            base_url = self._settings.public_base_url.rstrip("/")
            return queue_invitation_email(
                self._email_queue,
                to=invitation.email,
                tenant_name=tenant.name if tenant else _DEFAULT_TENANT_NAME,
                inviter_name=_display_name(inviter) or _DEFAULT_INVITER_NAME,
                role=invitation.role,
                invitation_url=f"{base_url}/invite/{token}",
                expires_at=invitation.expires_at,
                admin_email=(inviter.email if inviter else None) or self._settings.support_email,
                app_name=self._settings.app_display_name,
                now=self._time_source(),
            )
        except Exception as exc:  # noqa: BLE001 - email failure never rolls back the invitation
            logger.warning(
                "invitation_email_enqueue_failed invitation_id=%s error=%s",
                invitation.id,
                exc.__class__.__name__,
            )
            return None

    async def create_invitation(
        self,
        actor: Actor,
        *,
        email: str,
        role: str,
        tenant_id: str | None = None,
    ) -> InvitationResult:
        resolved_tenant = tenant_id or actor.tenant_id
        require_admin(actor, resolved_tenant)
        normalized_email = normalize_email(email)
        normalized_role = normalize_role(role)

        await self._enforce_rate_limit(actor, operation="invitation_create")

        if await self._store.find_active_user(tenant_id=resolved_tenant, email=normalized_email):
            await self._audit.record(
                SecurityEventType.DUPLICATE_EMAIL_ATTEMPT,
                tenant_id=resolved_tenant,
                user_id=actor.user_id,
                ip_address=actor.client_id,
                user_agent=actor.user_agent,
                email=normalized_email,
            )
            raise OnboardingConflictError(
                "A user with this email already exists in this organization",
                code="DUPLICATE_EMAIL",
            )

        now = self._time_source()
        if await self._store.find_pending_invitation(
            tenant_id=resolved_tenant, email=normalized_email, now=now
        ):
            raise OnboardingConflictError(
                "An active invitation already exists for this email",
                code="INVITATION_PENDING",
            )

        token, _metadata = generate_token()
        invitation = Invitation(
            id=uuid4().hex,
            tenant_id=resolved_tenant,
            email=normalized_email,
            role=normalized_role,
            invited_by=actor.user_id,
            token_hash=hash_token(token),
            token_lookup=token_lookup_key(token),
            expires_at=now + self._ttl,
            accepted_at=None,
            cancelled_at=None,
            created_at=now,
            updated_at=now,
        )
        try:
            await self._store.add_invitation(invitation)
        except StorageUnavailableError:
            await self._audit.record(
                SecurityEventType.INVITATION_FAILED,
                tenant_id=resolved_tenant,
                user_id=actor.user_id,
                ip_address=actor.client_id,
                user_agent=actor.user_agent,
                email=normalized_email,
                details={"step": "persist_invitation"},
            )
            raise

        await self._audit.record(
            SecurityEventType.INVITATION_CREATED,
            tenant_id=resolved_tenant,
            user_id=actor.user_id,
            ip_address=actor.client_id,
            user_agent=actor.user_agent,
            email=normalized_email,
            details={
                "invitation_id": invitation.id,
                "role": normalized_role,
                "expires_at": invitation.expires_at.isoformat(),
            },
        )
        message_id = await self._queue_email(invitation, token, actor)
        logger.info(
            "invitation_created invitation_id=%s tenant_id=%s email_queued=%s",
            invitation.id,
            resolved_tenant,
            message_id is not None,
        )
        return InvitationResult(invitation=invitation, token=token, email_message_id=message_id)

    async def validate_token(
        self, token: str | None, context: RequestContext | None = None
    ) -> TokenValidation:
        context = context or RequestContext()
        rejected = await screen_token(token, kind=_TOKEN_KIND, audit=self._audit, context=context)
        if rejected is not None:
            return rejected

        candidates = await self._store.list_unconsumed_invitations(token_lookup_key(token))
        invitation = match_token(token, candidates)
        if invitation is None:
            await self._audit.record(
                SecurityEventType.INVALID_TOKEN_ACCESS,
                ip_address=context.client_id,
                user_agent=context.user_agent,
                details={"kind": _TOKEN_KIND, "presented_prefix": token_hint(token)},
            )
            return TokenValidation(is_valid=False, error="Invalid or expired invitation token")

        if self._time_source() >= invitation.expires_at:
            # Record every access to an expired token; the record itself is left untouched.
            await self._audit.record(
                SecurityEventType.INVITATION_EXPIRED,
                tenant_id=invitation.tenant_id,
                ip_address=context.client_id,
                user_agent=context.user_agent,
                email=invitation.email,
                details={"invitation_id": invitation.id, "expired_at": invitation.expires_at.isoformat()},
            )
            return TokenValidation(is_valid=False, error="Invitation has expired")

        tenant = await self._store.get_tenant(invitation.tenant_id)
        return TokenValidation(
            is_valid=True,
            email=invitation.email,
            role=invitation.role,
            tenant_id=invitation.tenant_id,
            tenant_name=tenant.name if tenant else None,
            expires_at=invitation.expires_at,
            record=invitation,
        )

    async def accept_invitation(
        self,
        token: str | None,
        registration: Registration,
        context: RequestContext | None = None,
    ) -> AcceptanceResult:
        context = context or RequestContext()
        validation = await self.validate_token(token, context)
        if not validation.is_valid:
            raise OnboardingValidationError(validation.error or "Invalid invitation token")
        invitation: Invitation = validation.record
        audit_scope: dict[str, Any] = {
            "tenant_id": invitation.tenant_id,
            "ip_address": context.client_id,
            "user_agent": context.user_agent,
            "email": invitation.email,
        }

        # Identity first: a failure here leaves every onboarding record unchanged.
        try:
            identity = await self._identity.create_identity(
                email=invitation.email,
                password=registration.password,
                metadata={
                    "first_name": registration.first_name,
                    "last_name": registration.last_name,
                    "role": invitation.role,
                    "tenant_id": invitation.tenant_id,
                },
            )
        except IdentityProviderError as exc:
            await self._audit.record(
                SecurityEventType.AUTH_FAILURE,
                details={"step": "create_identity", "invitation_id": invitation.id, "error": exc.message},
                **audit_scope,
            )
            raise

        now = self._time_source()
        user = AppUser(
            id=identity.id,
            tenant_id=invitation.tenant_id,
            email=invitation.email,
            first_name=registration.first_name,
            last_name=registration.last_name,
            role=invitation.role,
            is_active=True,
            created_at=now,
        )
        partial_details = {
            "step": "account_creation",
            "partial_failure": True,
            "invitation_id": invitation.id,
            "identity_id": identity.id,
        }
        try:
            consumed = await self._store.accept_invitation(
                invitation_id=invitation.id,
                token_hash=invitation.token_hash,
                user=user,
                now=now,
            )
        except StorageUnavailableError as exc:
            await self._audit.record(
                SecurityEventType.INVITATION_FAILED,
                severity=SecuritySeverity.HIGH,
                user_id=identity.id,
                details=partial_details,
                **audit_scope,
            )
            logger.error(
                "invitation_partial_failure invitation_id=%s identity_id=%s",
                invitation.id,
                identity.id,
            )
            raise AccountSetupError(
                "Your login was created but your account could not be completed. Please contact support."
            ) from exc
        if not consumed:
            await self._audit.record(
                SecurityEventType.INVITATION_FAILED,
                severity=SecuritySeverity.HIGH,
                user_id=identity.id,
                details={**partial_details, "step": "consume_token"},
                **audit_scope,
            )
            logger.error(
                "invitation_consume_lost invitation_id=%s identity_id=%s",
                invitation.id,
                identity.id,
            )
            raise OnboardingConflictError(
                "Invitation has already been used or has expired",
                code="TOKEN_ALREADY_USED",
            )

        await self._audit.record(
            SecurityEventType.INVITATION_ACCEPTED,
            user_id=user.id,
            details={"invitation_id": invitation.id, "role": invitation.role},
            **audit_scope,
        )
        session = await try_sign_in(self._identity, email=invitation.email, password=registration.password)
        return AcceptanceResult(user=user, auto_login=session is not None, session=session)

    async def cancel_invitation(self, actor: Actor, invitation_id: str) -> Invitation:
        require_admin(actor, actor.tenant_id)
        cancelled = await self._store.cancel_invitation(
            invitation_id=invitation_id,
            tenant_id=actor.tenant_id,
            now=self._time_source(),
        )
        if cancelled is None:
            raise OnboardingNotFoundError(_NOT_FOUND_MESSAGE)
        await self._audit.record(
            SecurityEventType.INVITATION_CANCELLED,
            tenant_id=actor.tenant_id,
            user_id=actor.user_id,
            ip_address=actor.client_id,
            user_agent=actor.user_agent,
            email=cancelled.email,
            details={"invitation_id": cancelled.id},
        )
        return cancelled

    async def resend_invitation(self, actor: Actor, invitation_id: str) -> InvitationResult:
        require_admin(actor, actor.tenant_id)
        await self._enforce_rate_limit(actor, operation="invitation_resend", policy=self._resend_policy)

        now = self._time_source()
        token, _metadata = generate_token()
        rotated = await self._store.rotate_invitation_token(
            invitation_id=invitation_id,
            tenant_id=actor.tenant_id,
            token_hash=hash_token(token),
            token_lookup=token_lookup_key(token),
            expires_at=now + self._ttl,
            now=now,
        )
        if rotated is None:
            raise OnboardingNotFoundError(_NOT_FOUND_MESSAGE)

        message_id = await self._queue_email(rotated, token, actor)
        await self._audit.record(
            SecurityEventType.INVITATION_RESENT,
            tenant_id=actor.tenant_id,
            user_id=actor.user_id,
            ip_address=actor.client_id,
            user_agent=actor.user_agent,
            email=rotated.email,
            details={
                "invitation_id": rotated.id,
                "expires_at": rotated.expires_at.isoformat(),
                "email_queued": message_id is not None,
            },
        )
        return InvitationResult(invitation=rotated, token=token, email_message_id=message_id)

    async def list_pending_invitations(self, actor: Actor) -> list[PendingInvitation]:
        require_admin(actor, actor.tenant_id)
        now = self._time_source()
        invitations = await self._store.list_open_invitations(actor.tenant_id)
        inviter_names: dict[str, str] = {}
        pending: list[PendingInvitation] = []
        for invitation in invitations:
            if invitation.invited_by not in inviter_names:
                inviter = await self._store.get_user(invitation.invited_by)
                inviter_names[invitation.invited_by] = _display_name(inviter) or _DEFAULT_INVITER_NAME
            pending.append(
                PendingInvitation(
                    invitation=invitation,
                    inviter_name=inviter_names[invitation.invited_by],
                    is_expired=now >= invitation.expires_at,
                )
            )
        return pending
