from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
import threading
from typing import Any, AsyncIterator, Protocol, TypeVar

from sqlalchemy import DateTime, and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantgate.core.errors import OnboardingConflictError, StorageUnavailableError
from tenantgate.domain.models import AppUser, Base, Invitation, SetupToken, Tenant


logger = logging.getLogger(__name__)

_Row = TypeVar("_Row", bound=Base)


def subdomain_taken_error() -> OnboardingConflictError:
    return OnboardingConflictError("Subdomain is already taken", code="SUBDOMAIN_TAKEN")


class OnboardingStore(Protocol):
    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        ...

    async def get_user(self, user_id: str) -> AppUser | None:
        ...

    async def find_active_user(self, *, tenant_id: str, email: str) -> AppUser | None:
        ...

    async def subdomain_exists(self, subdomain: str) -> bool:
        ...

    async def add_invitation(self, invitation: Invitation) -> None:
        ...

    async def get_invitation(self, invitation_id: str) -> Invitation | None:
        ...

    async def find_pending_invitation(
        self, *, tenant_id: str, email: str, now: datetime
    ) -> Invitation | None:
        ...

    async def list_open_invitations(self, tenant_id: str) -> list[Invitation]:
        ...

    async def list_unconsumed_invitations(self, lookup_key: str | None = None) -> list[Invitation]:
        ...

    async def rotate_invitation_token(
        self,
        *,
        invitation_id: str,
        tenant_id: str,
        token_hash: str,
        token_lookup: str,
        expires_at: datetime,
        now: datetime,
    ) -> Invitation | None:
        ...

    async def cancel_invitation(
        self, *, invitation_id: str, tenant_id: str, now: datetime
    ) -> Invitation | None:
        ...

    async def accept_invitation(
        self, *, invitation_id: str, token_hash: str, user: AppUser, now: datetime
    ) -> bool:
        ...

    async def add_setup_token(self, setup_token: SetupToken) -> None:
        ...

    async def list_unconsumed_setup_tokens(self, lookup_key: str | None = None) -> list[SetupToken]:
        ...

    async def complete_setup(
        self,
        *,
        setup_token_id: str,
        token_hash: str,
        tenant: Tenant,
        user: AppUser,
        now: datetime,
    ) -> bool:
        ...

    async def delete_expired(self, now: datetime) -> tuple[int, int]:
        ...


def _lookup_matches(row_lookup: str | None, lookup_key: str | None) -> bool:
    # Rows issued without a lookup key are always candidates.
    return lookup_key is None or row_lookup is None or row_lookup == lookup_key


def _is_open(invitation: Invitation) -> bool:
    return invitation.accepted_at is None and invitation.cancelled_at is None


class InMemoryOnboardingStore:
    """Process-local store for tests and single-node development.

    Every check-and-set runs under one lock, which gives the same single-use
    guarantee as the conditional UPDATE in the SQL store.
    """

    def __init__(self) -> None:
        self.tenants: dict[str, Tenant] = {}
        self.users: dict[str, AppUser] = {}
        self.invitations: dict[str, Invitation] = {}
        self.setup_tokens: dict[str, SetupToken] = {}
        self._lock = threading.Lock()

    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        with self._lock:
            return self.tenants.get(tenant_id)

    async def get_user(self, user_id: str) -> AppUser | None:
        with self._lock:
            return self.users.get(user_id)

    async def find_active_user(self, *, tenant_id: str, email: str) -> AppUser | None:
        with self._lock:
            for user in self.users.values():
                if user.tenant_id == tenant_id and user.email.lower() == email.lower() and user.is_active:
                    return user
        return None

    async def subdomain_exists(self, subdomain: str) -> bool:
        with self._lock:
            return any(tenant.subdomain == subdomain for tenant in self.tenants.values())

    async def add_invitation(self, invitation: Invitation) -> None:
        with self._lock:
            self.invitations[invitation.id] = invitation

    async def get_invitation(self, invitation_id: str) -> Invitation | None:
        with self._lock:
            return self.invitations.get(invitation_id)

    async def find_pending_invitation(
        self, *, tenant_id: str, email: str, now: datetime
    ) -> Invitation | None:
        with self._lock:
            for invitation in self.invitations.values():
                if (
                    invitation.tenant_id == tenant_id
                    and invitation.email == email
                    and _is_open(invitation)
                    and invitation.expires_at > now
                ):
                    return invitation
        return None

    async def list_open_invitations(self, tenant_id: str) -> list[Invitation]:
        with self._lock:
            rows = [
                invitation
                for invitation in self.invitations.values()
                if invitation.tenant_id == tenant_id and _is_open(invitation)
            ]
        return sorted(rows, key=lambda row: row.created_at, reverse=True)

    async def list_unconsumed_invitations(self, lookup_key: str | None = None) -> list[Invitation]:
        with self._lock:
            return [
                invitation
                for invitation in self.invitations.values()
                if _is_open(invitation) and _lookup_matches(invitation.token_lookup, lookup_key)
            ]

    async def rotate_invitation_token(
        self,
        *,
        invitation_id: str,
        tenant_id: str,
        token_hash: str,
        token_lookup: str,
        expires_at: datetime,
        now: datetime,
    ) -> Invitation | None:
        with self._lock:
            invitation = self.invitations.get(invitation_id)
            if invitation is None or invitation.tenant_id != tenant_id or not _is_open(invitation):
                return None
            invitation.token_hash = token_hash
            invitation.token_lookup = token_lookup
            invitation.expires_at = expires_at
            invitation.updated_at = now
            return invitation

    async def cancel_invitation(
        self, *, invitation_id: str, tenant_id: str, now: datetime
    ) -> Invitation | None:
        with self._lock:
            invitation = self.invitations.get(invitation_id)
            if invitation is None or invitation.tenant_id != tenant_id or not _is_open(invitation):
                return None
            invitation.cancelled_at = now
            invitation.updated_at = now
            return invitation

    async def accept_invitation(
        self, *, invitation_id: str, token_hash: str, user: AppUser, now: datetime
    ) -> bool:
        with self._lock:
            invitation = self.invitations.get(invitation_id)
            if (
                invitation is None
                or invitation.token_hash != token_hash
                or not _is_open(invitation)
                or invitation.expires_at <= now
            ):
                return False
            if user.id in self.users:
                raise StorageUnavailableError("Account record already exists")
            invitation.accepted_at = now
            invitation.updated_at = now
            self.users[user.id] = user
            return True

    async def add_setup_token(self, setup_token: SetupToken) -> None:
        with self._lock:
            self.setup_tokens[setup_token.id] = setup_token

    async def list_unconsumed_setup_tokens(self, lookup_key: str | None = None) -> list[SetupToken]:
        with self._lock:
            return [
                token
                for token in self.setup_tokens.values()
                if token.used_at is None and _lookup_matches(token.token_lookup, lookup_key)
            ]

    async def complete_setup(
        self,
        *,
        setup_token_id: str,
        token_hash: str,
        tenant: Tenant,
        user: AppUser,
        now: datetime,
    ) -> bool:
        with self._lock:
            setup_token = self.setup_tokens.get(setup_token_id)
            if (
                setup_token is None
                or setup_token.token_hash != token_hash
                or setup_token.used_at is not None
                or setup_token.expires_at <= now
            ):
                return False
            if any(existing.subdomain == tenant.subdomain for existing in self.tenants.values()):
                raise subdomain_taken_error()
            if user.id in self.users:
                raise StorageUnavailableError("Account record already exists")
            setup_token.used_at = now
            self.tenants[tenant.id] = tenant
            self.users[user.id] = user
            return True

    async def delete_expired(self, now: datetime) -> tuple[int, int]:
        with self._lock:
            expired_setup = [
                key
                for key, token in self.setup_tokens.items()
                if token.used_at is None and token.expires_at < now
            ]
            expired_invitations = [
                key
                for key, invitation in self.invitations.items()
                if invitation.accepted_at is None and invitation.expires_at < now
            ]
            for key in expired_setup:
                del self.setup_tokens[key]
            for key in expired_invitations:
                del self.invitations[key]
        return len(expired_setup), len(expired_invitations)

    # Seeding helpers for development fixtures and tests.
    def add_tenant(self, tenant: Tenant) -> None:
        with self._lock:
            self.tenants[tenant.id] = tenant

    def add_user(self, user: AppUser) -> None:
        with self._lock:
            self.users[user.id] = user


def _normalize(row: _Row) -> _Row:
    # SQLite drops tzinfo on round-trip; treat stored timestamps as UTC.
    for column in row.__table__.columns:
        if isinstance(column.type, DateTime):
            value = getattr(row, column.key)
            if isinstance(value, datetime) and value.tzinfo is None:
                setattr(row, column.key, value.replace(tzinfo=timezone.utc))
    return row


def _open_invitation_clause():
    return and_(Invitation.accepted_at.is_(None), Invitation.cancelled_at.is_(None))


class SqlAlchemyOnboardingStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        # Translate driver failures into a storage error the services understand.
        async with self._session_factory() as session:
            try:
                yield session
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.warning("onboarding_store_failed operation=%s", operation, exc_info=exc)
                raise StorageUnavailableError("Onboarding storage is unavailable") from exc

    async def _fetch_one(self, operation: str, stmt) -> Any:
        async with self._session(operation) as session:
            row = (await session.execute(stmt)).scalars().first()
        return _normalize(row) if row is not None else None

    async def _fetch_all(self, operation: str, stmt) -> list[Any]:
        async with self._session(operation) as session:
            rows = list((await session.execute(stmt)).scalars().all())
        return [_normalize(row) for row in rows]

    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        return await self._fetch_one("get_tenant", select(Tenant).where(Tenant.id == tenant_id))

    async def get_user(self, user_id: str) -> AppUser | None:
        return await self._fetch_one("get_user", select(AppUser).where(AppUser.id == user_id))

    async def find_active_user(self, *, tenant_id: str, email: str) -> AppUser | None:
        stmt = select(AppUser).where(
            AppUser.tenant_id == tenant_id,
            func.lower(AppUser.email) == email.lower(),
            AppUser.is_active.is_(True),
        )
        return await self._fetch_one("find_active_user", stmt)

    async def subdomain_exists(self, subdomain: str) -> bool:
        async with self._session("subdomain_exists") as session:
            found = await session.scalar(select(Tenant.id).where(Tenant.subdomain == subdomain))
        return found is not None

    async def add_invitation(self, invitation: Invitation) -> None:
        async with self._session("add_invitation") as session:
            session.add(invitation)
            await session.commit()

    async def get_invitation(self, invitation_id: str) -> Invitation | None:
        return await self._fetch_one(
            "get_invitation", select(Invitation).where(Invitation.id == invitation_id)
        )

    async def find_pending_invitation(
        self, *, tenant_id: str, email: str, now: datetime
    ) -> Invitation | None:
        stmt = select(Invitation).where(
            Invitation.tenant_id == tenant_id,
            Invitation.email == email,
            _open_invitation_clause(),
            Invitation.expires_at > now,
        )
        return await self._fetch_one("find_pending_invitation", stmt)

    async def list_open_invitations(self, tenant_id: str) -> list[Invitation]:
        stmt = (
            select(Invitation)
            .where(Invitation.tenant_id == tenant_id, _open_invitation_clause())
            .order_by(Invitation.created_at.desc())
        )
        return await self._fetch_all("list_open_invitations", stmt)

    async def list_unconsumed_invitations(self, lookup_key: str | None = None) -> list[Invitation]:
        stmt = select(Invitation).where(_open_invitation_clause())
        if lookup_key is not None:
            stmt = stmt.where(
                or_(Invitation.token_lookup.is_(None), Invitation.token_lookup == lookup_key)
            )
        return await self._fetch_all("list_unconsumed_invitations", stmt)

    async def _update_open_invitation(
        self, operation: str, *, invitation_id: str, tenant_id: str, values: dict[str, Any]
    ) -> Invitation | None:
        # Conditional update keeps accepted and cancelled invitations immutable.
        async with self._session(operation) as session:
            result = await session.execute(
                update(Invitation)
                .where(
                    Invitation.id == invitation_id,
                    Invitation.tenant_id == tenant_id,
                    _open_invitation_clause(),
                )
                .values(**values)
            )
            if result.rowcount != 1:
                await session.rollback()
                return None
            await session.commit()
        return await self.get_invitation(invitation_id)

    async def rotate_invitation_token(
        self,
        *,
        invitation_id: str,
        tenant_id: str,
        token_hash: str,
        token_lookup: str,
        expires_at: datetime,
        now: datetime,
    ) -> Invitation | None:
        return await self._update_open_invitation(
            "rotate_invitation_token",
            invitation_id=invitation_id,
            tenant_id=tenant_id,
            values={
                "token_hash": token_hash,
                "token_lookup": token_lookup,
                "expires_at": expires_at,
                "updated_at": now,
            },
        )

    async def cancel_invitation(
        self, *, invitation_id: str, tenant_id: str, now: datetime
    ) -> Invitation | None:
        return await self._update_open_invitation(
            "cancel_invitation",
            invitation_id=invitation_id,
            tenant_id=tenant_id,
            values={"cancelled_at": now, "updated_at": now},
        )

    async def accept_invitation(
        self, *, invitation_id: str, token_hash: str, user: AppUser, now: datetime
    ) -> bool:
        # Consume the token and create the account in one transaction.
        async with self._session("accept_invitation") as session:
            result = await session.execute(
                update(Invitation)
                .where(
                    Invitation.id == invitation_id,
                    Invitation.token_hash == token_hash,
                    _open_invitation_clause(),
                    Invitation.expires_at > now,
                )
                .values(accepted_at=now, updated_at=now)
            )
            if result.rowcount != 1:
                await session.rollback()
                return False
            session.add(user)
            await session.commit()
        return True

    async def add_setup_token(self, setup_token: SetupToken) -> None:
        async with self._session("add_setup_token") as session:
            session.add(setup_token)
            await session.commit()

    async def list_unconsumed_setup_tokens(self, lookup_key: str | None = None) -> list[SetupToken]:
        stmt = select(SetupToken).where(SetupToken.used_at.is_(None))
        if lookup_key is not None:
            stmt = stmt.where(
                or_(SetupToken.token_lookup.is_(None), SetupToken.token_lookup == lookup_key)
            )
        return await self._fetch_all("list_unconsumed_setup_tokens", stmt)

    async def complete_setup(
        self,
        *,
        setup_token_id: str,
        token_hash: str,
        tenant: Tenant,
        user: AppUser,
        now: datetime,
    ) -> bool:
        # Consume the token, re-check the subdomain and create tenant plus admin atomically.
        async with self._session("complete_setup") as session:
            result = await session.execute(
                update(SetupToken)
                .where(
                    SetupToken.id == setup_token_id,
                    SetupToken.token_hash == token_hash,
                    SetupToken.used_at.is_(None),
                    SetupToken.expires_at > now,
                )
                .values(used_at=now)
            )
            if result.rowcount != 1:
                await session.rollback()
                return False
            taken = await session.scalar(select(Tenant.id).where(Tenant.subdomain == tenant.subdomain))
            if taken is not None:
                await session.rollback()
                raise subdomain_taken_error()
            session.add(tenant)
            await session.flush()
            session.add(user)
            await session.commit()
        return True

    async def delete_expired(self, now: datetime) -> tuple[int, int]:
        async with self._session("delete_expired") as session:
            setup_result = await session.execute(
                delete(SetupToken).where(SetupToken.used_at.is_(None), SetupToken.expires_at < now)
            )
            invitation_result = await session.execute(
                delete(Invitation).where(Invitation.accepted_at.is_(None), Invitation.expires_at < now)
            )
            await session.commit()
        return int(setup_result.rowcount or 0), int(invitation_result.rowcount or 0)
