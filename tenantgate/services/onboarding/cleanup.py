from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
import logging
from typing import Callable

from tenantgate.persistence.repos.onboarding import OnboardingStore
from tenantgate.services.onboarding.common import utc_now


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CleanupResult:
    setup_tokens_deleted: int
    invitations_deleted: int

    @property
    def total(self) -> int:
        return self.setup_tokens_deleted + self.invitations_deleted


@dataclass(frozen=True)
class CleanupStats:
    last_cleanup: datetime | None = None
    total_setup_tokens_deleted: int = 0
    total_invitations_deleted: int = 0
    cleanup_count: int = 0


class TokenCleanupService:
    def __init__(
        self,
        store: OnboardingStore,
        *,
        time_source: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._time_source = time_source or utc_now
        self._stats = CleanupStats()

    @property
    def stats(self) -> CleanupStats:
        return self._stats

    async def cleanup_expired_tokens(self) -> CleanupResult:
        # Remove expired, never-consumed tokens; consumed ones stay as history.
        now = self._time_source()
        setup_deleted, invitations_deleted = await self._store.delete_expired(now)
        result = CleanupResult(setup_tokens_deleted=setup_deleted, invitations_deleted=invitations_deleted)
        self._stats = replace(
            self._stats,
            last_cleanup=now,
            total_setup_tokens_deleted=self._stats.total_setup_tokens_deleted + setup_deleted,
            total_invitations_deleted=self._stats.total_invitations_deleted + invitations_deleted,
            cleanup_count=self._stats.cleanup_count + 1,
        )
        logger.info(
            "token_cleanup_completed setup_tokens=%s invitations=%s",
            setup_deleted,
            invitations_deleted,
        )
        return result
