from __future__ import annotations

import asyncio

from tenantgate.core.logging import configure_logging
from tenantgate.persistence.db import dispose_engine, get_session_factory
from tenantgate.persistence.repos.onboarding import SqlAlchemyOnboardingStore
from tenantgate.services.onboarding import TokenCleanupService


async def prune() -> None:
    # One-off cleanup for deployments that do not run the arq worker.
    configure_logging()
    service = TokenCleanupService(SqlAlchemyOnboardingStore(get_session_factory()))
    try:
        result = await service.cleanup_expired_tokens()
    finally:
        await dispose_engine()
    print(
        f"pruned_setup_tokens={result.setup_tokens_deleted} "
        f"pruned_invitations={result.invitations_deleted}"
    )


if __name__ == "__main__":
    asyncio.run(prune())
