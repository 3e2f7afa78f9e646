from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from tenantgate.services.email.queue import EmailDeliveryQueue
from tenantgate.services.onboarding.cleanup import TokenCleanupService
from tenantgate.services.rate_limit import RateLimiter


logger = logging.getLogger(__name__)


class _PeriodicTask:
    """Run one coroutine on a fixed cadence until stopped.

    Failures are logged and the loop keeps going; ``stop`` cancels the task and
    waits for it so shutdown leaves no dangling coroutines.
    """

    def __init__(self, name: str, interval_s: float, job: Callable[[], Awaitable[object]]) -> None:
        self._name = name
        self._interval_s = max(0.01, float(interval_s))
        self._job = job
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        while True:
            try:
                await self._job()
            except Exception:  # noqa: BLE001 - keep the loop alive while surfacing failures in logs
                logger.exception("background_job_failed job=%s", self._name)
            await asyncio.sleep(self._interval_s)

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name=self._name)
        logger.info("background_job_started job=%s interval_s=%s", self._name, self._interval_s)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("background_job_stopped job=%s", self._name)


class QueueProcessor(_PeriodicTask):
    # Drives EmailDeliveryQueue ticks; one per process.
    def __init__(self, queue: EmailDeliveryQueue, *, interval_s: float = 5.0) -> None:
        super().__init__("email_queue", interval_s, queue.process_due)
        self.queue = queue


class CleanupScheduler:
    # Sweeps rate-limit windows and deletes expired tokens on independent cadences.
    def __init__(
        self,
        *,
        rate_limiter: RateLimiter,
        cleanup: TokenCleanupService | None,
        sweep_interval_s: float = 300,
        cleanup_interval_s: float = 3600,
    ) -> None:
        self._tasks = [_PeriodicTask("rate_limit_sweep", sweep_interval_s, rate_limiter.sweep)]
        if cleanup is not None:
            self._tasks.append(
                _PeriodicTask("token_cleanup", cleanup_interval_s, cleanup.cleanup_expired_tokens)
            )

    @property
    def is_running(self) -> bool:
        return any(task.is_running for task in self._tasks)

    def start(self) -> None:
        for task in self._tasks:
            task.start()

    async def stop(self) -> None:
        for task in self._tasks:
            await task.stop()
