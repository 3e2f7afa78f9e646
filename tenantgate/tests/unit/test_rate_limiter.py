from __future__ import annotations

import pytest

from tenantgate.services.rate_limit import (
    RESEND_LIMITS,
    SCOPE_ACCOUNT,
    SCOPE_CLIENT,
    InMemoryRateLimitBackend,
    RateLimitConfig,
    RateLimiter,
)


class _Clock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value


@pytest.mark.asyncio
async def test_fixed_window_allows_exactly_max_then_denies() -> None:
    clock = _Clock()
    limiter = RateLimiter(time_provider=clock)
    config = RateLimitConfig(window_ms=60_000, max_requests=3)

    results = [await limiter.check("10.0.0.1", SCOPE_CLIENT, config) for _ in range(4)]

    assert [result.allowed for result in results] == [True, True, True, False]
    assert [result.remaining for result in results] == [2, 1, 0, 0]
    denied = results[-1]
    assert denied.scope == SCOPE_CLIENT
    assert denied.error is not None
    assert denied.error.startswith("Client rate limit exceeded. Try again after ")
    assert denied.error.endswith(" UTC.")
    assert denied.reset_at_ms == int(clock.value * 1000) + 60_000


@pytest.mark.asyncio
async def test_denied_requests_do_not_extend_the_window() -> None:
    clock = _Clock()
    limiter = RateLimiter(time_provider=clock)
    config = RateLimitConfig(window_ms=60_000, max_requests=1)

    first = await limiter.check("k", SCOPE_CLIENT, config)
    clock.value += 30
    denied = await limiter.check("k", SCOPE_CLIENT, config)
    assert not denied.allowed
    assert denied.reset_at_ms == first.reset_at_ms

    clock.value += 31
    reopened = await limiter.check("k", SCOPE_CLIENT, config)
    assert reopened.allowed
    assert reopened.remaining == 0


@pytest.mark.asyncio
async def test_scopes_and_keys_are_independent() -> None:
    limiter = RateLimiter(time_provider=_Clock())
    config = RateLimitConfig(window_ms=60_000, max_requests=1)

    assert (await limiter.check("same", SCOPE_CLIENT, config)).allowed
    assert (await limiter.check("same", SCOPE_ACCOUNT, config)).allowed
    assert (await limiter.check("other", SCOPE_CLIENT, config)).allowed
    assert not (await limiter.check("same", SCOPE_CLIENT, config)).allowed


@pytest.mark.asyncio
async def test_combined_check_reports_tightest_remaining() -> None:
    limiter = RateLimiter(time_provider=_Clock())
    client = RateLimitConfig(window_ms=60_000, max_requests=5)
    account = RateLimitConfig(window_ms=120_000, max_requests=2)

    result = await limiter.check_combined("ip", "user", client_config=client, account_config=account)

    assert result.allowed
    assert result.remaining == 1
    assert result.reset_at_ms == int(_Clock().value * 1000) + 120_000


@pytest.mark.asyncio
async def test_combined_check_short_circuits_on_client_denial() -> None:
    limiter = RateLimiter(time_provider=_Clock())
    client = RateLimitConfig(window_ms=60_000, max_requests=1)
    account = RateLimitConfig(window_ms=60_000, max_requests=10)

    await limiter.check_combined("ip", "user-a", client_config=client, account_config=account)
    denied = await limiter.check_combined("ip", "user-b", client_config=client, account_config=account)

    assert not denied.allowed
    assert denied.scope == SCOPE_CLIENT
    # user-b never reached the account window.
    assert await limiter.status("user-b", SCOPE_ACCOUNT, account) is None


@pytest.mark.asyncio
async def test_combined_check_denies_on_account_scope() -> None:
    limiter = RateLimiter(time_provider=_Clock())
    client = RateLimitConfig(window_ms=60_000, max_requests=10)
    account = RateLimitConfig(window_ms=60_000, max_requests=1)

    await limiter.check_combined("ip-1", "user", client_config=client, account_config=account)
    denied = await limiter.check_combined("ip-2", "user", client_config=client, account_config=account)

    assert not denied.allowed
    assert denied.scope == SCOPE_ACCOUNT
    assert denied.error is not None
    assert denied.error.startswith("Account rate limit exceeded.")


@pytest.mark.asyncio
async def test_resend_policy_denies_sixth_request_from_one_client() -> None:
    limiter = RateLimiter(time_provider=_Clock())
    results = [
        await limiter.check_combined(
            "resend:ip",
            "resend:admin",
            client_config=RESEND_LIMITS.client,
            account_config=RESEND_LIMITS.account,
        )
        for _ in range(6)
    ]
    assert [result.allowed for result in results] == [True] * 5 + [False]
    assert results[-1].scope == SCOPE_CLIENT


@pytest.mark.asyncio
async def test_status_and_reset_do_not_count_requests() -> None:
    limiter = RateLimiter(time_provider=_Clock())
    config = RateLimitConfig(window_ms=60_000, max_requests=2)

    assert await limiter.status("k", SCOPE_CLIENT, config) is None
    await limiter.check("k", SCOPE_CLIENT, config)
    status = await limiter.status("k", SCOPE_CLIENT, config)
    assert status is not None
    assert status.allowed
    assert status.remaining == 1

    await limiter.reset("k", SCOPE_CLIENT)
    assert await limiter.status("k", SCOPE_CLIENT, config) is None


@pytest.mark.asyncio
async def test_sweep_removes_only_expired_windows() -> None:
    clock = _Clock()
    backend = InMemoryRateLimitBackend()
    limiter = RateLimiter(backend=backend, time_provider=clock)

    await limiter.check("short", SCOPE_CLIENT, RateLimitConfig(window_ms=1_000, max_requests=5))
    await limiter.check("long", SCOPE_CLIENT, RateLimitConfig(window_ms=60_000, max_requests=5))
    assert len(backend) == 2

    clock.value += 2
    removed = await limiter.sweep()

    assert removed == 1
    assert len(backend) == 1
