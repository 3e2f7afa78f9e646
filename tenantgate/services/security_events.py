from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
import logging
from typing import Any, Callable
from uuid import uuid4

from tenantgate.domain.models import SecurityEvent
from tenantgate.persistence.repos.security_events import SecurityEventQuery, SecurityEventStore


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"

# Groups at or below this size are noise, not a pattern.
SUSPICIOUS_MIN_EVENTS = 2
RECENT_EVENTS_LIMIT = 10


class SecurityEventType(str, Enum):
    INVITATION_CREATED = "INVITATION_CREATED"
    INVITATION_ACCEPTED = "INVITATION_ACCEPTED"
    INVITATION_FAILED = "INVITATION_FAILED"
    INVITATION_EXPIRED = "INVITATION_EXPIRED"
    INVITATION_CANCELLED = "INVITATION_CANCELLED"
    INVITATION_RESENT = "INVITATION_RESENT"
    SETUP_TOKEN_USED = "SETUP_TOKEN_USED"
    SETUP_TOKEN_FAILED = "SETUP_TOKEN_FAILED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    AUTH_FAILURE = "AUTH_FAILURE"
    TOKEN_MANIPULATION = "TOKEN_MANIPULATION"
    DUPLICATE_EMAIL_ATTEMPT = "DUPLICATE_EMAIL_ATTEMPT"
    INVALID_TOKEN_ACCESS = "INVALID_TOKEN_ACCESS"


class SecuritySeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


DEFAULT_SEVERITY: dict[SecurityEventType, SecuritySeverity] = {
    SecurityEventType.INVITATION_CREATED: SecuritySeverity.LOW,
    SecurityEventType.INVITATION_ACCEPTED: SecuritySeverity.LOW,
    SecurityEventType.INVITATION_EXPIRED: SecuritySeverity.LOW,
    SecurityEventType.INVITATION_CANCELLED: SecuritySeverity.LOW,
    SecurityEventType.INVITATION_RESENT: SecuritySeverity.LOW,
    SecurityEventType.DUPLICATE_EMAIL_ATTEMPT: SecuritySeverity.LOW,
    SecurityEventType.SETUP_TOKEN_USED: SecuritySeverity.LOW,
    SecurityEventType.RATE_LIMIT_EXCEEDED: SecuritySeverity.MEDIUM,
    SecurityEventType.AUTH_FAILURE: SecuritySeverity.MEDIUM,
    SecurityEventType.INVALID_TOKEN_ACCESS: SecuritySeverity.MEDIUM,
    SecurityEventType.SETUP_TOKEN_FAILED: SecuritySeverity.MEDIUM,
    SecurityEventType.INVITATION_FAILED: SecuritySeverity.MEDIUM,
    SecurityEventType.TOKEN_MANIPULATION: SecuritySeverity.HIGH,
    SecurityEventType.SUSPICIOUS_ACTIVITY: SecuritySeverity.HIGH,
}

_ELEVATED_SEVERITIES = (
    SecuritySeverity.MEDIUM.value,
    SecuritySeverity.HIGH.value,
    SecuritySeverity.CRITICAL.value,
)


@dataclass(frozen=True)
class SuspiciousActivity:
    tenant_id: str | None
    ip_address: str | None
    email: str | None
    event_count: int
    event_types: int
    event_type_list: tuple[str, ...]
    last_event: datetime
    risk_level: str


@dataclass(frozen=True)
class SecurityEventStats:
    total_events: int
    critical_events: int
    high_severity_events: int
    unique_clients: int
    unique_emails: int
    most_common_kind: str | None
    recent_events: list[SecurityEvent]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_details(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_details(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_details(item) for item in value]
    return value


def risk_level(event_count: int, distinct_types: int) -> str:
    # Volume plus variety marks token guessing; volume alone is a medium concern.
    if event_count > 10 and distinct_types > 3:
        return SecuritySeverity.HIGH.value
    if event_count > 5:
        return SecuritySeverity.MEDIUM.value
    return SecuritySeverity.LOW.value


class SecurityAuditLog:
    """Append-only security event sink with read-side aggregation.

    Writes are best-effort: a failing store is logged and never propagates to
    the onboarding flow that triggered the event.
    """

    def __init__(
        self,
        store: SecurityEventStore,
        *,
        time_source: Callable[[], datetime] | None = None,
        suspicious_window: timedelta = timedelta(hours=24),
        default_stats_days: int = 30,
    ) -> None:
        self._store = store
        self._time_source = time_source or _utc_now
        self._suspicious_window = suspicious_window
        self._default_stats_days = default_stats_days

    async def record(
        self,
        event_type: SecurityEventType,
        *,
        severity: SecuritySeverity | None = None,
        tenant_id: str | None = None,
        user_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        email: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> SecurityEvent | None:
        resolved_severity = severity or DEFAULT_SEVERITY[event_type]
        event = SecurityEvent(
            id=uuid4().hex,
            tenant_id=tenant_id,
            event_type=event_type.value,
            severity=resolved_severity.value,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            email=email,
            details_json=sanitize_details(details or {}),
            created_at=self._time_source(),
        )
        try:
            await self._store.add(event)
        except Exception as exc:  # noqa: BLE001 - audit writes must never break the caller
            logger.warning(
                "security_event_write_failed event_type=%s severity=%s tenant_id=%s",
                event_type.value,
                resolved_severity.value,
                tenant_id,
                exc_info=exc,
            )
            return None
        if resolved_severity in (SecuritySeverity.HIGH, SecuritySeverity.CRITICAL):
            logger.warning(
                "security_event event_type=%s severity=%s tenant_id=%s ip=%s",
                event_type.value,
                resolved_severity.value,
                tenant_id,
                ip_address,
            )
        return event

    async def list_events(
        self,
        tenant_id: str | None,
        *,
        event_type: SecurityEventType | None = None,
        severity: SecuritySeverity | None = None,
        user_id: str | None = None,
        ip_address: str | None = None,
        email: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SecurityEvent]:
        query = SecurityEventQuery(
            tenant_id=tenant_id,
            event_type=event_type.value if event_type else None,
            severities=(severity.value,) if severity else None,
            user_id=user_id,
            ip_address=ip_address,
            email=email,
            start=start,
            end=end,
            limit=limit,
            offset=offset,
        )
        return await self._store.list_events(query)

    async def query_suspicious_activity(self, tenant_id: str | None) -> list[SuspiciousActivity]:
        # Group elevated events in the trailing window by (tenant, client, email).
        since = self._time_source() - self._suspicious_window
        events = await self._store.list_events(
            SecurityEventQuery(
                tenant_id=tenant_id,
                severities=_ELEVATED_SEVERITIES,
                start=since,
                limit=None,
            )
        )
        groups: dict[tuple[str | None, str | None, str | None], list[SecurityEvent]] = {}
        for event in events:
            groups.setdefault((event.tenant_id, event.ip_address, event.email), []).append(event)

        findings: list[SuspiciousActivity] = []
        for (group_tenant, ip_address, email), grouped in groups.items():
            if len(grouped) <= SUSPICIOUS_MIN_EVENTS:
                continue
            kinds = sorted({event.event_type for event in grouped})
            findings.append(
                SuspiciousActivity(
                    tenant_id=group_tenant,
                    ip_address=ip_address,
                    email=email,
                    event_count=len(grouped),
                    event_types=len(kinds),
                    event_type_list=tuple(kinds),
                    last_event=max(event.created_at for event in grouped),
                    risk_level=risk_level(len(grouped), len(kinds)),
                )
            )
        findings.sort(key=lambda item: (item.event_count, item.last_event), reverse=True)
        return findings

    async def stats(self, tenant_id: str | None, *, days: int | None = None) -> SecurityEventStats:
        window_days = self._default_stats_days if days is None else days
        since = self._time_source() - timedelta(days=window_days)
        events = await self._store.list_events(
            SecurityEventQuery(tenant_id=tenant_id, start=since, limit=None)
        )
        kinds = Counter(event.event_type for event in events)
        most_common = kinds.most_common(1)
        return SecurityEventStats(
            total_events=len(events),
            critical_events=sum(1 for event in events if event.severity == SecuritySeverity.CRITICAL.value),
            high_severity_events=sum(1 for event in events if event.severity == SecuritySeverity.HIGH.value),
            unique_clients=len({event.ip_address for event in events if event.ip_address}),
            unique_emails=len({event.email for event in events if event.email}),
            most_common_kind=most_common[0][0] if most_common else None,
            recent_events=events[:RECENT_EVENTS_LIMIT],
        )
