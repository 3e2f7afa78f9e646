from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tenantgate.core.errors import OnboardingConflictError
from tenantgate.domain.models import AppUser, Base, Invitation, SecurityEvent, SetupToken, Tenant
from tenantgate.persistence.repos.onboarding import SqlAlchemyOnboardingStore
from tenantgate.persistence.repos.security_events import SecurityEventQuery, SqlAlchemySecurityEventStore


_NOW = datetime(2026, 3, 7, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    # Run the SQL stores against a throwaway SQLite file per test.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'onboarding.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


def _invitation(invitation_id: str, *, expires_at: datetime, token_hash: str | None = None) -> Invitation:
    return Invitation(
        id=invitation_id,
        tenant_id="tenant-1",
        email=f"{invitation_id}@lincoln.example",
        role="COUNSELOR",
        invited_by="admin-1",
        token_hash=token_hash or f"hash-{invitation_id}",
        token_lookup=f"lookup-{invitation_id}",
        expires_at=expires_at,
        created_at=_NOW,
        updated_at=_NOW,
    )


def _user(user_id: str, tenant_id: str = "tenant-1") -> AppUser:
    return AppUser(
        id=user_id,
        tenant_id=tenant_id,
        email=f"{user_id}@lincoln.example",
        first_name="Test",
        last_name="User",
        role="COUNSELOR",
        is_active=True,
        created_at=_NOW,
    )


def _setup_token(token_id: str, *, subdomain: str, expires_at: datetime) -> SetupToken:
    return SetupToken(
        id=token_id,
        tenant_name="Lincoln High",
        subdomain=subdomain,
        admin_email="principal@lincoln.example",
        token_hash=f"hash-{token_id}",
        token_lookup=f"lookup-{token_id}",
        expires_at=expires_at,
        created_at=_NOW,
    )


def _tenant(tenant_id: str, subdomain: str) -> Tenant:
    return Tenant(id=tenant_id, name="Lincoln High", subdomain=subdomain, created_at=_NOW)


@pytest.mark.asyncio
async def test_accept_invitation_consumes_token_once(session_factory) -> None:
    store = SqlAlchemyOnboardingStore(session_factory)
    await store.add_invitation(_invitation("inv-1", expires_at=_NOW + timedelta(days=7)))

    first = await store.accept_invitation(
        invitation_id="inv-1", token_hash="hash-inv-1", user=_user("user-1"), now=_NOW
    )
    second = await store.accept_invitation(
        invitation_id="inv-1", token_hash="hash-inv-1", user=_user("user-2"), now=_NOW
    )

    assert first is True
    assert second is False
    invitation = await store.get_invitation("inv-1")
    assert invitation is not None
    assert invitation.accepted_at == _NOW
    assert await store.get_user("user-1") is not None
    assert await store.get_user("user-2") is None
    assert await store.list_unconsumed_invitations() == []


@pytest.mark.asyncio
async def test_accept_rejects_wrong_hash_and_expired_rows(session_factory) -> None:
    store = SqlAlchemyOnboardingStore(session_factory)
    await store.add_invitation(_invitation("inv-1", expires_at=_NOW + timedelta(days=7)))
    await store.add_invitation(_invitation("inv-2", expires_at=_NOW - timedelta(minutes=1)))

    assert not await store.accept_invitation(
        invitation_id="inv-1", token_hash="other", user=_user("user-1"), now=_NOW
    )
    assert not await store.accept_invitation(
        invitation_id="inv-2", token_hash="hash-inv-2", user=_user("user-2"), now=_NOW
    )


@pytest.mark.asyncio
async def test_cancel_and_rotate_only_touch_open_invitations(session_factory) -> None:
    store = SqlAlchemyOnboardingStore(session_factory)
    await store.add_invitation(_invitation("inv-1", expires_at=_NOW + timedelta(days=7)))

    rotated = await store.rotate_invitation_token(
        invitation_id="inv-1",
        tenant_id="tenant-1",
        token_hash="hash-rotated",
        token_lookup="lookup-rotated",
        expires_at=_NOW + timedelta(days=14),
        now=_NOW,
    )
    assert rotated is not None
    assert rotated.token_hash == "hash-rotated"
    assert [row.id for row in await store.list_unconsumed_invitations("lookup-rotated")] == ["inv-1"]
    assert await store.list_unconsumed_invitations("lookup-inv-1") == []

    assert await store.cancel_invitation(invitation_id="inv-1", tenant_id="tenant-2", now=_NOW) is None
    cancelled = await store.cancel_invitation(invitation_id="inv-1", tenant_id="tenant-1", now=_NOW)
    assert cancelled is not None
    assert cancelled.cancelled_at == _NOW
    assert await store.cancel_invitation(invitation_id="inv-1", tenant_id="tenant-1", now=_NOW) is None


@pytest.mark.asyncio
async def test_complete_setup_is_single_use_and_guards_subdomain(session_factory) -> None:
    store = SqlAlchemyOnboardingStore(session_factory)
    await store.add_setup_token(_setup_token("setup-1", subdomain="lincoln", expires_at=_NOW + timedelta(hours=24)))
    await store.add_setup_token(_setup_token("setup-2", subdomain="lincoln", expires_at=_NOW + timedelta(hours=24)))

    created = await store.complete_setup(
        setup_token_id="setup-1",
        token_hash="hash-setup-1",
        tenant=_tenant("tenant-1", "lincoln"),
        user=_user("admin-1"),
        now=_NOW,
    )
    replay = await store.complete_setup(
        setup_token_id="setup-1",
        token_hash="hash-setup-1",
        tenant=_tenant("tenant-2", "lincoln-2"),
        user=_user("admin-2", "tenant-2"),
        now=_NOW,
    )

    assert created is True
    assert replay is False
    assert await store.subdomain_exists("lincoln")
    assert not await store.subdomain_exists("lincoln-2")

    with pytest.raises(OnboardingConflictError) as exc:
        await store.complete_setup(
            setup_token_id="setup-2",
            token_hash="hash-setup-2",
            tenant=_tenant("tenant-3", "lincoln"),
            user=_user("admin-3", "tenant-3"),
            now=_NOW,
        )
    assert exc.value.code == "SUBDOMAIN_TAKEN"
    assert [row.id for row in await store.list_unconsumed_setup_tokens()] == ["setup-2"]


@pytest.mark.asyncio
async def test_delete_expired_keeps_consumed_and_live_rows(session_factory) -> None:
    store = SqlAlchemyOnboardingStore(session_factory)
    await store.add_invitation(_invitation("stale", expires_at=_NOW - timedelta(days=1)))
    await store.add_invitation(_invitation("live", expires_at=_NOW + timedelta(days=1)))
    await store.add_invitation(_invitation("used", expires_at=_NOW + timedelta(hours=1)))
    await store.accept_invitation(invitation_id="used", token_hash="hash-used", user=_user("user-1"), now=_NOW)
    await store.add_setup_token(_setup_token("setup-old", subdomain="old", expires_at=_NOW - timedelta(hours=1)))

    deleted = await store.delete_expired(_NOW + timedelta(hours=2))

    assert deleted == (1, 1)
    assert await store.get_invitation("stale") is None
    assert await store.get_invitation("live") is not None
    assert await store.get_invitation("used") is not None


@pytest.mark.asyncio
async def test_security_event_store_filters_newest_first(session_factory) -> None:
    store = SqlAlchemySecurityEventStore(session_factory)
    for index, (tenant_id, event_type, severity) in enumerate(
        [
            ("tenant-1", "INVITATION_CREATED", "LOW"),
            ("tenant-1", "AUTH_FAILURE", "MEDIUM"),
            ("tenant-2", "TOKEN_MANIPULATION", "HIGH"),
        ]
    ):
        await store.add(
            SecurityEvent(
                id=f"evt-{index}",
                tenant_id=tenant_id,
                event_type=event_type,
                severity=severity,
                ip_address="198.51.100.7",
                details_json={"index": index},
                created_at=_NOW + timedelta(minutes=index),
            )
        )

    tenant_rows = await store.list_events(SecurityEventQuery(tenant_id="tenant-1"))
    assert [row.id for row in tenant_rows] == ["evt-1", "evt-0"]
    assert tenant_rows[0].created_at.tzinfo is not None

    elevated = await store.list_events(SecurityEventQuery(severities=("MEDIUM", "HIGH")))
    assert [row.id for row in elevated] == ["evt-2", "evt-1"]

    windowed = await store.list_events(
        SecurityEventQuery(start=_NOW + timedelta(minutes=1), end=_NOW + timedelta(minutes=1))
    )
    assert [row.details_json for row in windowed] == [{"index": 1}]
