from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import threading
import time
from typing import Callable, Protocol

from redis.asyncio import Redis

from tenantgate.core.config import Settings, get_settings


logger = logging.getLogger(__name__)

SCOPE_CLIENT = "client"
SCOPE_ACCOUNT = "account"


@dataclass(frozen=True)
class RateLimitConfig:
    # Fixed window: at most max_requests per window_ms.
    window_ms: int
    max_requests: int


@dataclass(frozen=True)
class LimitPair:
    # Keep client and account windows separate to enforce dual-scoped limits.
    client: RateLimitConfig
    account: RateLimitConfig


DEFAULT_LIMITS = LimitPair(
    client=RateLimitConfig(window_ms=15 * 60 * 1000, max_requests=10),
    account=RateLimitConfig(window_ms=60 * 60 * 1000, max_requests=20),
)
RESEND_LIMITS = LimitPair(
    client=RateLimitConfig(window_ms=15 * 60 * 1000, max_requests=5),
    account=RateLimitConfig(window_ms=60 * 60 * 1000, max_requests=10),
)


@dataclass(frozen=True)
class WindowHit:
    allowed: bool
    count: int
    reset_at_ms: int


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at_ms: int
    scope: str
    error: str | None = None

    @property
    def reset_at(self) -> datetime:
        return datetime.fromtimestamp(self.reset_at_ms / 1000, tz=timezone.utc)


def default_limits(settings: Settings | None = None) -> LimitPair:
    # Read onboarding mutation limits from settings.
    settings = settings or get_settings()
    return LimitPair(
        client=RateLimitConfig(settings.rl_client_window_s * 1000, settings.rl_client_max_requests),
        account=RateLimitConfig(settings.rl_account_window_s * 1000, settings.rl_account_max_requests),
    )


def resend_limits(settings: Settings | None = None) -> LimitPair:
    # Resend gets its own, stricter windows.
    settings = settings or get_settings()
    return LimitPair(
        client=RateLimitConfig(
            settings.rl_resend_client_window_s * 1000, settings.rl_resend_client_max_requests
        ),
        account=RateLimitConfig(
            settings.rl_resend_account_window_s * 1000, settings.rl_resend_account_max_requests
        ),
    )


class RateLimitBackend(Protocol):
    async def hit(self, key: str, *, now_ms: int, config: RateLimitConfig) -> WindowHit:
        ...

    async def peek(self, key: str, *, now_ms: int) -> WindowHit | None:
        ...

    async def reset(self, key: str) -> None:
        ...

    async def sweep(self, *, now_ms: int) -> int:
        ...


@dataclass
class _Window:
    count: int
    reset_at_ms: int


class InMemoryRateLimitBackend:
    def __init__(self) -> None:
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()

    async def hit(self, key: str, *, now_ms: int, config: RateLimitConfig) -> WindowHit:
        # Increment-and-compare under one lock so concurrent hits never over-admit.
        with self._lock:
            window = self._windows.get(key)
            if window is None or now_ms >= window.reset_at_ms:
                window = _Window(count=1, reset_at_ms=now_ms + config.window_ms)
                self._windows[key] = window
                return WindowHit(allowed=True, count=1, reset_at_ms=window.reset_at_ms)
            if window.count >= config.max_requests:
                return WindowHit(allowed=False, count=window.count, reset_at_ms=window.reset_at_ms)
            window.count += 1
            return WindowHit(allowed=True, count=window.count, reset_at_ms=window.reset_at_ms)

    async def peek(self, key: str, *, now_ms: int) -> WindowHit | None:
        with self._lock:
            window = self._windows.get(key)
            if window is None or now_ms >= window.reset_at_ms:
                return None
            return WindowHit(allowed=True, count=window.count, reset_at_ms=window.reset_at_ms)

    async def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    async def sweep(self, *, now_ms: int) -> int:
        # Drop windows whose reset time has passed to bound memory.
        with self._lock:
            expired = [key for key, window in self._windows.items() if now_ms >= window.reset_at_ms]
            for key in expired:
                del self._windows[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._windows)


_FIXED_WINDOW_LUA = r"""
local now_ms = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local max_requests = tonumber(ARGV[3])

local data = redis.call("HMGET", KEYS[1], "count", "reset_at")
local count = tonumber(data[1])
local reset_at = tonumber(data[2])

if count == nil or reset_at == nil or now_ms >= reset_at then
  reset_at = now_ms + window_ms
  redis.call("HSET", KEYS[1], "count", 1, "reset_at", reset_at)
  redis.call("PEXPIRE", KEYS[1], window_ms)
  return {1, 1, reset_at}
end

if count >= max_requests then
  return {0, count, reset_at}
end

count = redis.call("HINCRBY", KEYS[1], "count", 1)
return {1, count, reset_at}
"""


class RedisRateLimitBackend:
    def __init__(self, redis: Redis, *, prefix: str = "tg:rl") -> None:
        self._redis = redis
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def hit(self, key: str, *, now_ms: int, config: RateLimitConfig) -> WindowHit:
        # Evaluate the window atomically in Redis so all instances share one counter.
        result = await self._redis.eval(
            _FIXED_WINDOW_LUA,
            1,
            self._key(key),
            now_ms,
            config.window_ms,
            config.max_requests,
        )
        return WindowHit(
            allowed=int(result[0]) == 1,
            count=int(result[1]),
            reset_at_ms=int(float(result[2])),
        )

    async def peek(self, key: str, *, now_ms: int) -> WindowHit | None:
        data = await self._redis.hmget(self._key(key), ["count", "reset_at"])
        if data[0] is None or data[1] is None:
            return None
        reset_at_ms = int(float(data[1]))
        if now_ms >= reset_at_ms:
            return None
        return WindowHit(allowed=True, count=int(data[0]), reset_at_ms=reset_at_ms)

    async def reset(self, key: str) -> None:
        await self._redis.delete(self._key(key))

    async def sweep(self, *, now_ms: int) -> int:
        # Redis expires windows on its own.
        return 0


class RateLimiter:
    def __init__(
        self,
        *,
        backend: RateLimitBackend | None = None,
        limits: LimitPair | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        # Allow injecting time for deterministic tests.
        self._backend = backend if backend is not None else InMemoryRateLimitBackend()
        self._limits = limits if limits is not None else DEFAULT_LIMITS
        self._time_provider = time_provider if time_provider is not None else time.time

    def _now_ms(self) -> int:
        return int(self._time_provider() * 1000)

    @staticmethod
    def _storage_key(key: str, scope: str) -> str:
        return f"{scope}:{key}"

    @staticmethod
    def _denied_message(scope: str, reset_at_ms: int) -> str:
        reset_at = datetime.fromtimestamp(reset_at_ms / 1000, tz=timezone.utc)
        return f"{scope.capitalize()} rate limit exceeded. Try again after {reset_at:%H:%M:%S} UTC."

    async def check(self, key: str, scope: str, config: RateLimitConfig) -> RateLimitResult:
        # Count one request against the (key, scope) window.
        hit = await self._backend.hit(self._storage_key(key, scope), now_ms=self._now_ms(), config=config)
        if not hit.allowed:
            logger.info("rate_limit_denied scope=%s reset_at_ms=%s", scope, hit.reset_at_ms)
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at_ms=hit.reset_at_ms,
                scope=scope,
                error=self._denied_message(scope, hit.reset_at_ms),
            )
        return RateLimitResult(
            allowed=True,
            remaining=max(0, config.max_requests - hit.count),
            reset_at_ms=hit.reset_at_ms,
            scope=scope,
        )

    async def check_combined(
        self,
        client_key: str,
        account_key: str,
        *,
        client_config: RateLimitConfig | None = None,
        account_config: RateLimitConfig | None = None,
    ) -> RateLimitResult:
        # Client scope first; the first denial short-circuits the account check.
        client_result = await self.check(client_key, SCOPE_CLIENT, client_config or self._limits.client)
        if not client_result.allowed:
            return client_result
        account_result = await self.check(account_key, SCOPE_ACCOUNT, account_config or self._limits.account)
        if not account_result.allowed:
            return account_result
        return RateLimitResult(
            allowed=True,
            remaining=min(client_result.remaining, account_result.remaining),
            reset_at_ms=max(client_result.reset_at_ms, account_result.reset_at_ms),
            scope=SCOPE_ACCOUNT,
        )

    async def status(self, key: str, scope: str, config: RateLimitConfig) -> RateLimitResult | None:
        # Read a window without counting a request; None when no live window exists.
        hit = await self._backend.peek(self._storage_key(key, scope), now_ms=self._now_ms())
        if hit is None:
            return None
        return RateLimitResult(
            allowed=hit.count < config.max_requests,
            remaining=max(0, config.max_requests - hit.count),
            reset_at_ms=hit.reset_at_ms,
            scope=scope,
        )

    async def reset(self, key: str, scope: str) -> None:
        # Operator override for a locked-out client or account.
        await self._backend.reset(self._storage_key(key, scope))

    async def sweep(self) -> int:
        removed = await self._backend.sweep(now_ms=self._now_ms())
        if removed:
            logger.debug("rate_limit_sweep removed=%s", removed)
        return removed


def build_rate_limiter(
    settings: Settings | None = None,
    *,
    time_provider: Callable[[], float] | None = None,
) -> RateLimiter:
    # Select the backend from settings; redis shares windows across instances.
    settings = settings or get_settings()
    backend: RateLimitBackend
    if settings.rl_backend == "redis":
        redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        backend = RedisRateLimitBackend(redis, prefix=settings.rl_redis_prefix)
    else:
        backend = InMemoryRateLimitBackend()
    return RateLimiter(backend=backend, limits=default_limits(settings), time_provider=time_provider)
