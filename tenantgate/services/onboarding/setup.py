from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import re
from typing import Any, Callable
from uuid import uuid4

from tenantgate.core.config import ROLE_ADMIN, Settings, get_settings
from tenantgate.core.errors import (
    AccountSetupError,
    IdentityProviderError,
    OnboardingConflictError,
    OnboardingValidationError,
    StorageUnavailableError,
)
from tenantgate.domain.models import AppUser, SetupToken, Tenant
from tenantgate.persistence.repos.onboarding import OnboardingStore, subdomain_taken_error
from tenantgate.services.email import EmailDeliveryQueue, queue_setup_confirmation_email
from tenantgate.services.identity import IdentityProvider, IdentitySession
from tenantgate.services.onboarding.common import (
    RequestContext,
    TokenValidation,
    match_token,
    normalize_email,
    screen_token,
    token_hint,
    try_sign_in,
    utc_now,
)
from tenantgate.services.security_events import (
    SecurityAuditLog,
    SecurityEventType,
    SecuritySeverity,
)
from tenantgate.services.tokens import generate_token, hash_token, token_lookup_key


logger = logging.getLogger(__name__)

_TOKEN_KIND = "setup"
_SUBDOMAIN_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


@dataclass(frozen=True)
class SetupTokenResult:
    setup_token: SetupToken
    token: str


@dataclass(frozen=True)
class InitialSetup:
    tenant_name: str
    subdomain: str
    admin_email: str
    admin_first_name: str
    admin_last_name: str
    admin_password: str
    contact_phone: str | None = None
    contact_address: str | None = None
    contact_email: str | None = None
    contact_person_name: str | None = None


@dataclass(frozen=True)
class SetupResult:
    tenant: Tenant
    user: AppUser
    auto_login: bool
    session: IdentitySession | None = None


def normalize_subdomain(subdomain: str) -> str:
    normalized = (subdomain or "").strip().lower()
    if not _SUBDOMAIN_PATTERN.match(normalized):
        raise OnboardingValidationError(
            "Subdomain may contain only lowercase letters, digits and hyphens",
            code="INVALID_SUBDOMAIN",
        )
    return normalized


class SetupService:
    """Bootstrap a new tenant and its first administrator from a setup token."""

    def __init__(
        self,
        *,
        store: OnboardingStore,
        audit: SecurityAuditLog,
        email_queue: EmailDeliveryQueue,
        identity: IdentityProvider,
        settings: Settings | None = None,
        time_source: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._audit = audit
        self._email_queue = email_queue
        self._identity = identity
        self._settings = settings or get_settings()
        self._time_source = time_source or utc_now

    async def create_setup_token(
        self,
        *,
        tenant_name: str,
        subdomain: str,
        admin_email: str,
        expiration_hours: int | None = None,
        issued_by: str | None = None,
    ) -> SetupTokenResult:
        # Operator-issued; the plaintext token is returned once for out-of-band delivery.
        name = (tenant_name or "").strip()
        if not name:
            raise OnboardingValidationError("Tenant name is required", code="INVALID_TENANT_NAME")
        normalized_subdomain = normalize_subdomain(subdomain)
        normalized_email = normalize_email(admin_email)
        hours = expiration_hours if expiration_hours is not None else self._settings.setup_token_ttl_hours
        if hours <= 0:
            raise OnboardingValidationError("Expiration must be positive", code="INVALID_EXPIRATION")
        if await self._store.subdomain_exists(normalized_subdomain):
            raise subdomain_taken_error()

        now = self._time_source()
        token, _metadata = generate_token()
        setup_token = SetupToken(
            id=uuid4().hex,
            tenant_name=name,
            subdomain=normalized_subdomain,
            admin_email=normalized_email,
            token_hash=hash_token(token),
            token_lookup=token_lookup_key(token),
            issued_by=issued_by,
            expires_at=now + timedelta(hours=hours),
            used_at=None,
            created_at=now,
        )
        await self._store.add_setup_token(setup_token)
        logger.info(
            "setup_token_created setup_token_id=%s subdomain=%s expires_at=%s",
            setup_token.id,
            normalized_subdomain,
            setup_token.expires_at.isoformat(),
        )
        return SetupTokenResult(setup_token=setup_token, token=token)

    async def validate_setup_token(
        self, token: str | None, context: RequestContext | None = None
    ) -> TokenValidation:
        context = context or RequestContext()
        rejected = await screen_token(token, kind=_TOKEN_KIND, audit=self._audit, context=context)
        if rejected is not None:
            return rejected

        candidates = await self._store.list_unconsumed_setup_tokens(token_lookup_key(token))
        setup_token = match_token(token, candidates)
        if setup_token is None:
            await self._audit.record(
                SecurityEventType.SETUP_TOKEN_FAILED,
                ip_address=context.client_id,
                user_agent=context.user_agent,
                details={"reason": "no_match", "presented_prefix": token_hint(token)},
            )
            return TokenValidation(is_valid=False, error="Invalid or expired setup token")

        if self._time_source() >= setup_token.expires_at:
            await self._audit.record(
                SecurityEventType.SETUP_TOKEN_FAILED,
                severity=SecuritySeverity.LOW,
                ip_address=context.client_id,
                user_agent=context.user_agent,
                email=setup_token.admin_email,
                details={"reason": "expired", "setup_id": setup_token.id},
            )
            return TokenValidation(is_valid=False, error="Setup token has expired")

        return TokenValidation(
            is_valid=True,
            email=setup_token.admin_email,
            role=ROLE_ADMIN,
            tenant_name=setup_token.tenant_name,
            subdomain=setup_token.subdomain,
            expires_at=setup_token.expires_at,
            record=setup_token,
        )

    async def complete_initial_setup(
        self,
        token: str | None,
        setup: InitialSetup,
        context: RequestContext | None = None,
    ) -> SetupResult:
        context = context or RequestContext()
        validation = await self.validate_setup_token(token, context)
        if not validation.is_valid:
            raise OnboardingValidationError(validation.error or "Invalid setup token")
        setup_token: SetupToken = validation.record

        admin_email = normalize_email(setup.admin_email)
        subdomain = normalize_subdomain(setup.subdomain)
        if (
            setup.tenant_name.strip() != setup_token.tenant_name
            or subdomain != setup_token.subdomain
            or admin_email != setup_token.admin_email
        ):
            raise OnboardingValidationError(
                "Setup data does not match the setup token",
                code="SETUP_MISMATCH",
            )
        if await self._store.subdomain_exists(subdomain):
            raise subdomain_taken_error()

        audit_scope: dict[str, Any] = {
            "ip_address": context.client_id,
            "user_agent": context.user_agent,
            "email": admin_email,
        }
        try:
            identity = await self._identity.create_identity(
                email=admin_email,
                password=setup.admin_password,
                metadata={
                    "first_name": setup.admin_first_name,
                    "last_name": setup.admin_last_name,
                    "role": ROLE_ADMIN,
                },
            )
        except IdentityProviderError as exc:
            await self._audit.record(
                SecurityEventType.AUTH_FAILURE,
                details={"step": "create_identity", "setup_id": setup_token.id, "error": exc.message},
                **audit_scope,
            )
            raise

        now = self._time_source()
        tenant = Tenant(
            id=uuid4().hex,
            name=setup_token.tenant_name,
            subdomain=subdomain,
            contact_phone=setup.contact_phone,
            contact_address=setup.contact_address,
            contact_email=setup.contact_email,
            contact_person_name=setup.contact_person_name,
            created_at=now,
        )
        user = AppUser(
            id=identity.id,
            tenant_id=tenant.id,
            email=admin_email,
            first_name=setup.admin_first_name,
            last_name=setup.admin_last_name,
            role=ROLE_ADMIN,
            is_active=True,
            created_at=now,
        )
        partial_details = {
            "partial_failure": True,
            "setup_id": setup_token.id,
            "identity_id": identity.id,
        }
        try:
            consumed = await self._store.complete_setup(
                setup_token_id=setup_token.id,
                token_hash=setup_token.token_hash,
                tenant=tenant,
                user=user,
                now=now,
            )
        except OnboardingConflictError:
            # Subdomain claimed between the pre-check and the transaction.
            await self._audit.record(
                SecurityEventType.SETUP_TOKEN_FAILED,
                severity=SecuritySeverity.HIGH,
                user_id=identity.id,
                details={**partial_details, "step": "subdomain_recheck"},
                **audit_scope,
            )
            raise
        except StorageUnavailableError as exc:
            await self._audit.record(
                SecurityEventType.SETUP_TOKEN_FAILED,
                severity=SecuritySeverity.HIGH,
                user_id=identity.id,
                details={**partial_details, "step": "tenant_creation"},
                **audit_scope,
            )
            logger.error(
                "setup_partial_failure setup_token_id=%s identity_id=%s",
                setup_token.id,
                identity.id,
            )
            raise AccountSetupError(
                "Your login was created but your organization could not be set up. Please contact support."
            ) from exc
        if not consumed:
            await self._audit.record(
                SecurityEventType.SETUP_TOKEN_FAILED,
                severity=SecuritySeverity.HIGH,
                user_id=identity.id,
                details={**partial_details, "step": "consume_token"},
                **audit_scope,
            )
            raise OnboardingConflictError(
                "Setup token has already been used or has expired",
                code="TOKEN_ALREADY_USED",
            )

        await self._audit.record(
            SecurityEventType.SETUP_TOKEN_USED,
            tenant_id=tenant.id,
            user_id=user.id,
            details={"setup_id": setup_token.id, "subdomain": subdomain},
            **audit_scope,
        )
        logger.info("tenant_created tenant_id=%s subdomain=%s", tenant.id, subdomain)

        session = await try_sign_in(self._identity, email=admin_email, password=setup.admin_password)
        self._queue_confirmation(tenant, user)
        return SetupResult(tenant=tenant, user=user, auto_login=session is not None, session=session)

    def _queue_confirmation(self, tenant: Tenant, user: AppUser) -> None:
        try:
            queue_setup_confirmation_email(
                self._email_queue,
                to=user.email,
                tenant_name=tenant.name,
                admin_name=" ".join(part for part in (user.first_name, user.last_name) if part) or user.email,
                dashboard_url=f"{self._settings.public_base_url.rstrip('/')}/dashboard",
                app_name=self._settings.app_display_name,
                now=self._time_source(),
            )
        except Exception as exc:  # noqa: BLE001 - confirmation email is best-effort
            logger.warning("setup_email_enqueue_failed tenant_id=%s error=%s", tenant.id, exc.__class__.__name__)
