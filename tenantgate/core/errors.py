from __future__ import annotations

from datetime import datetime
from typing import Any


class TenantGateError(Exception):
    """Base error for tenantgate."""


class OnboardingError(TenantGateError):
    """Onboarding operation failure with a stable code and a user-safe message."""

    code = "ONBOARDING_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}


class OnboardingValidationError(OnboardingError):
    """Malformed input, unknown or expired token, or mismatched setup data."""

    code = "INVALID_TOKEN"
    status_code = 400


class OnboardingForbiddenError(OnboardingError):
    """Caller is not allowed to act on the requested tenant."""

    code = "FORBIDDEN"
    status_code = 403


class OnboardingNotFoundError(OnboardingError):
    """Invitation missing, already accepted, or cancelled."""

    code = "INVITATION_NOT_FOUND"
    status_code = 404


class OnboardingConflictError(OnboardingError):
    """Duplicate account, pending invitation, taken subdomain, or consumed token."""

    code = "CONFLICT"
    status_code = 409


class RateLimitExceededError(OnboardingError):
    """Client or account window exhausted."""

    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429

    def __init__(
        self,
        message: str,
        *,
        scope: str,
        reset_at: datetime,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.scope = scope
        self.reset_at = reset_at


class IdentityProviderError(OnboardingError):
    """External identity provider rejected or failed a request."""

    code = "AUTH_ERROR"
    status_code = 502


class AccountSetupError(OnboardingError):
    """Identity exists but the application account could not be completed."""

    code = "ACCOUNT_SETUP_FAILED"
    status_code = 500


class StorageUnavailableError(OnboardingError):
    """Persistence layer failed while writing onboarding state."""

    code = "STORAGE_UNAVAILABLE"
    status_code = 503


class EmailTransportError(TenantGateError):
    """Email transport failed to hand a message to the provider."""
