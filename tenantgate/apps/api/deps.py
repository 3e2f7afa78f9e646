from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request, status

from tenantgate.apps.api.response import get_request_id
from tenantgate.core.config import ROLE_ADMIN, get_settings
from tenantgate.core.errors import IdentityProviderError
from tenantgate.services.onboarding import Actor, RequestContext
from tenantgate.services.runtime import OnboardingRuntime


logger = logging.getLogger(__name__)


def get_runtime(request: Request) -> OnboardingRuntime:
    # The app factory attaches one runtime per process.
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Service is starting up"},
        )
    return runtime


def client_id_for(request: Request) -> str | None:
    # Clients can spoof X-Forwarded-For, so read it only behind a trusted proxy.
    runtime = getattr(request.app.state, "runtime", None)
    settings = runtime.settings if runtime is not None else get_settings()
    forwarded = request.headers.get("X-Forwarded-For") if settings.trusted_proxy else None
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else None


def client_context(request: Request) -> RequestContext:
    return RequestContext(
        client_id=client_id_for(request),
        user_agent=request.headers.get("User-Agent"),
        request_id=get_request_id(request),
    )


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    # Use 403 for authenticated principals lacking permissions.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _bearer_token(request: Request) -> str:
    header = request.headers.get("Authorization")
    if not header:
        raise _auth_error("Missing bearer token")
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        raise _auth_error("Invalid authorization header")
    return value.strip()


async def get_actor(
    request: Request,
    runtime: OnboardingRuntime = Depends(get_runtime),
) -> Actor:
    # Resolve the session with the identity provider, then the application account.
    token = _bearer_token(request)
    try:
        identity = await runtime.identity.get_current_identity(token)
    except IdentityProviderError as exc:
        logger.warning("identity_lookup_failed error=%s", exc.message)
        raise _auth_error("Unable to verify session") from exc
    if identity is None:
        raise _auth_error("Invalid or expired session")

    user = await runtime.store.get_user(identity.id)
    if user is None or not user.is_active:
        raise _auth_error("No active account for this session")
    return Actor(
        user_id=user.id,
        tenant_id=user.tenant_id,
        role=user.role,
        email=user.email,
        client_id=client_id_for(request),
        user_agent=request.headers.get("User-Agent"),
    )


async def require_admin_actor(actor: Actor = Depends(get_actor)) -> Actor:
    if actor.role != ROLE_ADMIN:
        raise _forbidden_error("Administrator role required")
    return actor
