from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Callable

from tenantgate.core.config import Settings, get_settings
from tenantgate.persistence.db import get_session_factory
from tenantgate.persistence.repos.onboarding import (
    InMemoryOnboardingStore,
    OnboardingStore,
    SqlAlchemyOnboardingStore,
)
from tenantgate.persistence.repos.security_events import (
    InMemorySecurityEventStore,
    SecurityEventStore,
    SqlAlchemySecurityEventStore,
)
from tenantgate.services.email import (
    EmailDeliveryQueue,
    EmailQueueConfig,
    EmailTransport,
    build_email_transport,
)
from tenantgate.services.identity import IdentityProvider, build_identity_provider
from tenantgate.services.onboarding import InvitationService, SetupService, TokenCleanupService
from tenantgate.services.rate_limit import RateLimiter, build_rate_limiter
from tenantgate.services.security_events import SecurityAuditLog
from tenantgate.workers.background import CleanupScheduler, QueueProcessor


logger = logging.getLogger(__name__)


@dataclass
class OnboardingRuntime:
    """Process-wide wiring of stores, services and background processors."""

    settings: Settings
    store: OnboardingStore
    audit: SecurityAuditLog
    rate_limiter: RateLimiter
    email_queue: EmailDeliveryQueue
    transport: EmailTransport
    identity: IdentityProvider
    invitations: InvitationService
    setup: SetupService
    cleanup: TokenCleanupService
    queue_processor: QueueProcessor
    cleanup_scheduler: CleanupScheduler

    def start(self) -> None:
        if not self.settings.background_jobs_enabled:
            logger.info("background_jobs_disabled")
            return
        self.queue_processor.start()
        self.cleanup_scheduler.start()

    async def stop(self) -> None:
        await self.queue_processor.stop()
        await self.cleanup_scheduler.stop()
        # HTTP-backed collaborators own pooled clients.
        for resource in (self.identity, self.transport):
            aclose = getattr(resource, "aclose", None)
            if aclose is not None:
                await aclose()


def build_runtime(
    settings: Settings | None = None,
    *,
    store: OnboardingStore | None = None,
    event_store: SecurityEventStore | None = None,
    identity: IdentityProvider | None = None,
    transport: EmailTransport | None = None,
    rate_limiter: RateLimiter | None = None,
    time_source: Callable[[], datetime] | None = None,
) -> OnboardingRuntime:
    # Collaborators passed in win; the rest come from settings.
    settings = settings or get_settings()
    if store is None or event_store is None:
        if settings.storage_backend == "memory":
            store = store or InMemoryOnboardingStore()
            event_store = event_store or InMemorySecurityEventStore()
        else:
            session_factory = get_session_factory()
            store = store or SqlAlchemyOnboardingStore(session_factory)
            event_store = event_store or SqlAlchemySecurityEventStore(session_factory)

    audit = SecurityAuditLog(
        event_store,
        time_source=time_source,
        suspicious_window=timedelta(hours=settings.security_suspicious_window_hours),
        default_stats_days=settings.security_stats_default_days,
    )
    rate_limiter = rate_limiter or build_rate_limiter(settings)
    transport = transport if transport is not None else build_email_transport(settings)
    email_queue = EmailDeliveryQueue(
        transport,
        config=EmailQueueConfig.from_settings(settings),
        time_source=time_source,
    )
    identity = identity or build_identity_provider(settings)
    cleanup = TokenCleanupService(store, time_source=time_source)

    return OnboardingRuntime(
        settings=settings,
        store=store,
        audit=audit,
        rate_limiter=rate_limiter,
        email_queue=email_queue,
        transport=transport,
        identity=identity,
        invitations=InvitationService(
            store=store,
            audit=audit,
            rate_limiter=rate_limiter,
            email_queue=email_queue,
            identity=identity,
            settings=settings,
            time_source=time_source,
        ),
        setup=SetupService(
            store=store,
            audit=audit,
            email_queue=email_queue,
            identity=identity,
            settings=settings,
            time_source=time_source,
        ),
        cleanup=cleanup,
        queue_processor=QueueProcessor(email_queue, interval_s=settings.email_poll_interval_s),
        cleanup_scheduler=CleanupScheduler(
            rate_limiter=rate_limiter,
            cleanup=cleanup,
            sweep_interval_s=settings.rl_sweep_interval_s,
            cleanup_interval_s=settings.token_cleanup_interval_s,
        ),
    )
