from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import re
from typing import Any, Iterable, TypeVar

from tenantgate.core.config import ROLE_ADMIN, ROLES
from tenantgate.core.errors import OnboardingForbiddenError, OnboardingValidationError
from tenantgate.services.identity import IdentityProvider, IdentitySession
from tenantgate.services.security_events import SecurityAuditLog, SecurityEventType
from tenantgate.services.tokens import validate_token_strength, verify_token


logger = logging.getLogger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_Tokened = TypeVar("_Tokened")


@dataclass(frozen=True)
class RequestContext:
    # Network origin and client hints attached to audit events.
    client_id: str | None = None
    user_agent: str | None = None
    request_id: str | None = None


@dataclass(frozen=True)
class Actor:
    # Authenticated caller resolved from an identity session and its account record.
    user_id: str
    tenant_id: str
    role: str
    email: str | None = None
    client_id: str | None = None
    user_agent: str | None = None

    @property
    def context(self) -> RequestContext:
        return RequestContext(client_id=self.client_id, user_agent=self.user_agent)


@dataclass(frozen=True)
class TokenValidation:
    is_valid: bool
    error: str | None = None
    email: str | None = None
    role: str | None = None
    tenant_id: str | None = None
    tenant_name: str | None = None
    subdomain: str | None = None
    expires_at: datetime | None = None
    # Matched record for the orchestrator; never serialized to callers.
    record: Any = field(default=None, repr=False, compare=False)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    normalized = (email or "").strip().lower()
    if not _EMAIL_PATTERN.match(normalized):
        raise OnboardingValidationError("A valid email address is required", code="INVALID_EMAIL")
    return normalized


def normalize_role(role: str) -> str:
    # Enforce the stable, uppercased role vocabulary.
    normalized = (role or "").strip().upper()
    if normalized not in ROLES:
        raise OnboardingValidationError(f"Unsupported role: {role}", code="INVALID_ROLE")
    return normalized


def require_admin(actor: Actor, tenant_id: str) -> None:
    if actor.tenant_id != tenant_id or actor.role != ROLE_ADMIN:
        raise OnboardingForbiddenError("Admin access to this organization is required")


def token_hint(token: str) -> str:
    # Enough of the presented value to correlate guesses without storing a usable token.
    return f"{token[:10]}..."


def match_token(token: str, candidates: Iterable[_Tokened]) -> _Tokened | None:
    # Salted hashes cannot be indexed, so verify each candidate.
    for candidate in candidates:
        if verify_token(token, getattr(candidate, "token_hash", None)):
            return candidate
    return None


async def screen_token(
    token: str | None,
    *,
    kind: str,
    audit: SecurityAuditLog,
    context: RequestContext,
) -> TokenValidation | None:
    # Reject malformed tokens before any storage access; weak tokens are flagged, not rejected.
    if not token:
        return TokenValidation(is_valid=False, error="Token is required")
    strength = validate_token_strength(token)
    if not strength.valid:
        await audit.record(
            SecurityEventType.TOKEN_MANIPULATION,
            ip_address=context.client_id,
            user_agent=context.user_agent,
            details={"kind": kind, "reason": strength.reason, "presented_prefix": token_hint(token)},
        )
        return TokenValidation(is_valid=False, error="Invalid token format")
    if not strength.secure:
        logger.warning("weak_token_presented kind=%s entropy=%.3f", kind, strength.entropy)
        await audit.record(
            SecurityEventType.TOKEN_MANIPULATION,
            ip_address=context.client_id,
            user_agent=context.user_agent,
            details={
                "kind": kind,
                "reason": "low_entropy",
                "entropy": round(strength.entropy, 3),
                "presented_prefix": token_hint(token),
            },
        )
    return None


async def try_sign_in(identity: IdentityProvider, *, email: str, password: str) -> IdentitySession | None:
    # Auto sign-in is a convenience; failure leaves the caller to sign in manually.
    try:
        return await identity.sign_in(email=email, password=password)
    except Exception as exc:  # noqa: BLE001 - sign-in failure is non-fatal after account creation
        logger.warning("auto_sign_in_failed error=%s", exc.__class__.__name__)
        return None
