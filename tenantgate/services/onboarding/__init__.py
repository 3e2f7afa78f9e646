from tenantgate.services.onboarding.cleanup import (
    CleanupResult,
    CleanupStats,
    TokenCleanupService,
)
from tenantgate.services.onboarding.common import (
    Actor,
    RequestContext,
    TokenValidation,
    normalize_email,
    normalize_role,
)
from tenantgate.services.onboarding.invitations import (
    AcceptanceResult,
    InvitationResult,
    InvitationService,
    PendingInvitation,
    Registration,
)
from tenantgate.services.onboarding.setup import (
    InitialSetup,
    SetupResult,
    SetupService,
    SetupTokenResult,
    normalize_subdomain,
)

__all__ = [
    "Actor",
    "RequestContext",
    "TokenValidation",
    "normalize_email",
    "normalize_role",
    "InvitationService",
    "InvitationResult",
    "Registration",
    "AcceptanceResult",
    "PendingInvitation",
    "SetupService",
    "SetupTokenResult",
    "InitialSetup",
    "SetupResult",
    "normalize_subdomain",
    "TokenCleanupService",
    "CleanupResult",
    "CleanupStats",
]
