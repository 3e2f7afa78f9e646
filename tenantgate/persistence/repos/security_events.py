from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import threading
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantgate.domain.models import SecurityEvent


@dataclass(frozen=True)
class SecurityEventQuery:
    # Null filters are ignored; tenant_id=None spans all tenants (operator view).
    tenant_id: str | None = None
    event_type: str | None = None
    severities: tuple[str, ...] | None = None
    user_id: str | None = None
    ip_address: str | None = None
    email: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    limit: int | None = 50
    offset: int = 0


class SecurityEventStore(Protocol):
    async def add(self, event: SecurityEvent) -> None:
        ...

    async def list_events(self, query: SecurityEventQuery) -> list[SecurityEvent]:
        ...


def _ensure_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on round-trip; treat stored timestamps as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _matches(event: SecurityEvent, query: SecurityEventQuery) -> bool:
    if query.tenant_id is not None and event.tenant_id != query.tenant_id:
        return False
    if query.event_type is not None and event.event_type != query.event_type:
        return False
    if query.severities is not None and event.severity not in query.severities:
        return False
    if query.user_id is not None and event.user_id != query.user_id:
        return False
    if query.ip_address is not None and event.ip_address != query.ip_address:
        return False
    if query.email is not None and event.email != query.email:
        return False
    if query.start is not None and event.created_at < query.start:
        return False
    if query.end is not None and event.created_at > query.end:
        return False
    return True


class InMemorySecurityEventStore:
    def __init__(self) -> None:
        self._events: list[SecurityEvent] = []
        self._lock = threading.Lock()

    async def add(self, event: SecurityEvent) -> None:
        with self._lock:
            self._events.append(event)

    async def list_events(self, query: SecurityEventQuery) -> list[SecurityEvent]:
        # Return newest first to match the SQL ordering.
        with self._lock:
            matched = [event for event in self._events if _matches(event, query)]
        matched.sort(key=lambda event: event.created_at, reverse=True)
        if query.limit is None:
            return matched[query.offset :]
        return matched[query.offset : query.offset + query.limit]

    def all(self) -> list[SecurityEvent]:
        with self._lock:
            return list(self._events)


class SqlAlchemySecurityEventStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add(self, event: SecurityEvent) -> None:
        # Append-only: events are inserted and never updated.
        async with self._session_factory() as session:
            session.add(event)
            await session.commit()

    async def list_events(self, query: SecurityEventQuery) -> list[SecurityEvent]:
        # Apply filters in SQL and keep newest events first.
        stmt = select(SecurityEvent)
        if query.tenant_id is not None:
            stmt = stmt.where(SecurityEvent.tenant_id == query.tenant_id)
        if query.event_type is not None:
            stmt = stmt.where(SecurityEvent.event_type == query.event_type)
        if query.severities is not None:
            stmt = stmt.where(SecurityEvent.severity.in_(query.severities))
        if query.user_id is not None:
            stmt = stmt.where(SecurityEvent.user_id == query.user_id)
        if query.ip_address is not None:
            stmt = stmt.where(SecurityEvent.ip_address == query.ip_address)
        if query.email is not None:
            stmt = stmt.where(SecurityEvent.email == query.email)
        if query.start is not None:
            stmt = stmt.where(SecurityEvent.created_at >= query.start)
        if query.end is not None:
            stmt = stmt.where(SecurityEvent.created_at <= query.end)
        stmt = stmt.order_by(SecurityEvent.created_at.desc()).offset(query.offset)
        if query.limit is not None:
            stmt = stmt.limit(query.limit)
        async with self._session_factory() as session:
            rows = list((await session.execute(stmt)).scalars().all())
        for row in rows:
            row.created_at = _ensure_utc(row.created_at)
        return rows
