from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from tenantgate.core.config import get_settings
from tenantgate.core.logging import configure_logging
from tenantgate.persistence.db import dispose_engine, get_session_factory
from tenantgate.persistence.repos.onboarding import SqlAlchemyOnboardingStore
from tenantgate.services.onboarding.cleanup import TokenCleanupService


logger = logging.getLogger(__name__)


async def cleanup_expired_tokens(ctx) -> dict[str, int]:
    # Delete expired, unconsumed setup tokens and invitations across all tenants.
    service: TokenCleanupService = ctx["cleanup_service"]
    result = await service.cleanup_expired_tokens()
    return {
        "setup_tokens_deleted": result.setup_tokens_deleted,
        "invitations_deleted": result.invitations_deleted,
    }


async def _startup(ctx) -> None:
    # Share one cleanup service per worker so cumulative stats survive between runs.
    configure_logging()
    ctx["cleanup_service"] = TokenCleanupService(SqlAlchemyOnboardingStore(get_session_factory()))


async def _shutdown(ctx) -> None:
    service: TokenCleanupService | None = ctx.get("cleanup_service")
    if service is not None:
        stats = service.stats
        logger.info(
            "cleanup_worker_stopped runs=%s setup_tokens=%s invitations=%s",
            stats.cleanup_count,
            stats.total_setup_tokens_deleted,
            stats.total_invitations_deleted,
        )
    await dispose_engine()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = "tenantgate:cleanup"
    functions = [cleanup_expired_tokens]
    cron_jobs = [cron(cleanup_expired_tokens, minute=0, run_at_startup=True)]
    on_startup = _startup
    on_shutdown = _shutdown
