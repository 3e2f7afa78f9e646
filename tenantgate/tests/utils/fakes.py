from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from tenantgate.core.config import ROLE_ADMIN, Settings
from tenantgate.core.errors import IdentityProviderError
from tenantgate.domain.models import AppUser, Tenant
from tenantgate.persistence.repos.onboarding import InMemoryOnboardingStore
from tenantgate.persistence.repos.security_events import InMemorySecurityEventStore
from tenantgate.services.email.transports import SendResult
from tenantgate.services.identity import IdentitySession, IdentityUser
from tenantgate.services.onboarding import Actor
from tenantgate.services.rate_limit import RateLimiter
from tenantgate.services.runtime import OnboardingRuntime, build_runtime


class FakeClock:
    # Shared wall clock for services (datetime) and the rate limiter (epoch seconds).
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 7, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def epoch(self) -> float:
        return self.current.timestamp()

    def advance(self, **kwargs: float) -> None:
        self.current = self.current + timedelta(**kwargs)


class FakeIdentityProvider:
    """In-memory stand-in for the GoTrue API.

    Sign-ups yield once so concurrent acceptances really interleave; duplicate
    emails are allowed because the external provider is not the single-use gate.
    """

    def __init__(self) -> None:
        self.users: dict[str, IdentityUser] = {}
        self.passwords: dict[str, str] = {}
        self.sessions: dict[str, str] = {}
        self.fail_create = False
        self.fail_sign_in = False
        self.closed = False

    async def create_identity(self, *, email: str, password: str, metadata: dict[str, Any]) -> IdentityUser:
        await asyncio.sleep(0)
        if self.fail_create:
            raise IdentityProviderError("Identity provider rejected the sign-up")
        user = IdentityUser(id=uuid4().hex, email=email, metadata=dict(metadata))
        self.users[user.id] = user
        self.passwords[user.id] = password
        return user

    async def sign_in(self, *, email: str, password: str) -> IdentitySession:
        if self.fail_sign_in:
            raise IdentityProviderError("Invalid login credentials")
        for user_id, user in self.users.items():
            if user.email == email and self.passwords[user_id] == password:
                return self.issue_session(user)
        raise IdentityProviderError("Invalid login credentials")

    async def get_current_identity(self, access_token: str) -> IdentityUser | None:
        user_id = self.sessions.get(access_token)
        return self.users.get(user_id) if user_id else None

    def issue_session(self, user: IdentityUser) -> IdentitySession:
        access_token = f"session-{uuid4().hex}"
        self.sessions[access_token] = user.id
        return IdentitySession(access_token=access_token, refresh_token=None, expires_in=3600, user=user)

    async def aclose(self) -> None:
        self.closed = True

    def register(self, user_id: str, email: str) -> str:
        # Seed an existing identity and return a bearer token for it.
        user = IdentityUser(id=user_id, email=email)
        self.users[user_id] = user
        self.passwords[user_id] = "existing-password"
        return self.issue_session(user).access_token


class RecordingTransport:
    def __init__(self) -> None:
        self.sent: list[dict[str, str]] = []
        self.closed = False

    async def send(self, *, to: str, subject: str, html: str, text: str) -> SendResult:
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})
        return SendResult(success=True, provider_message_id=f"msg-{len(self.sent)}")

    async def aclose(self) -> None:
        self.closed = True


class FailingTransport:
    def __init__(self, error: str = "provider unavailable", *, raise_error: bool = False) -> None:
        self.error = error
        self.raise_error = raise_error
        self.calls = 0

    async def send(self, *, to: str, subject: str, html: str, text: str) -> SendResult:
        self.calls += 1
        if self.raise_error:
            raise ConnectionError(self.error)
        return SendResult(success=False, error=self.error)


@dataclass
class Harness:
    runtime: OnboardingRuntime
    store: InMemoryOnboardingStore
    events: InMemorySecurityEventStore
    identity: FakeIdentityProvider
    transport: RecordingTransport
    clock: FakeClock
    tenant: Tenant
    admin: AppUser
    admin_token: str

    def admin_actor(self, client_id: str = "203.0.113.10") -> Actor:
        return Actor(
            user_id=self.admin.id,
            tenant_id=self.tenant.id,
            role=self.admin.role,
            email=self.admin.email,
            client_id=client_id,
            user_agent="pytest",
        )

    def event_types(self) -> list[str]:
        return [event.event_type for event in self.events.all()]


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "storage_backend": "memory",
        "rl_backend": "memory",
        "email_transport": "log",
        "public_base_url": "https://app.example.test",
        "background_jobs_enabled": False,
    }
    values.update(overrides)
    return Settings(**values)


def build_harness(**settings_overrides: Any) -> Harness:
    # Wire a full runtime over in-memory collaborators with one seeded tenant and admin.
    clock = FakeClock()
    store = InMemoryOnboardingStore()
    events = InMemorySecurityEventStore()
    identity = FakeIdentityProvider()
    transport = RecordingTransport()
    settings = make_settings(**settings_overrides)

    tenant = Tenant(id="tenant-1", name="Lincoln High", subdomain="lincoln", created_at=clock.now())
    admin = AppUser(
        id="admin-1",
        tenant_id=tenant.id,
        email="principal@lincoln.example",
        first_name="Ada",
        last_name="Park",
        role=ROLE_ADMIN,
        is_active=True,
        created_at=clock.now(),
    )
    store.add_tenant(tenant)
    store.add_user(admin)
    admin_token = identity.register(admin.id, admin.email)

    rate_limiter = RateLimiter(time_provider=clock.epoch)
    runtime = build_runtime(
        settings,
        store=store,
        event_store=events,
        identity=identity,
        transport=transport,
        rate_limiter=rate_limiter,
        time_source=clock.now,
    )
    return Harness(
        runtime=runtime,
        store=store,
        events=events,
        identity=identity,
        transport=transport,
        clock=clock,
        tenant=tenant,
        admin=admin,
        admin_token=admin_token,
    )
