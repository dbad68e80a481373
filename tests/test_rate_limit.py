"""Tests for the fixed-window rate limiter (in-process mode)."""

import pytest

from clinauth.service.rate_limit import RateLimiter


@pytest.fixture
def limiter(clock, events):
    return RateLimiter(None, events=events, clock=clock.timestamp)


@pytest.mark.asyncio
async def test_first_call_opens_window(limiter):
    decision = await limiter.check("login", "10.0.0.1", 5, 300)

    assert decision.allowed
    assert decision.remaining == 4
    assert decision.retry_after == 0


@pytest.mark.asyncio
async def test_sixth_attempt_refused_with_retry_after(limiter, clock, events):
    for _ in range(5):
        assert await limiter.allow("login", "10.0.0.1", 5, 300)
        clock.advance(10)

    decision = await limiter.check("login", "10.0.0.1", 5, 300)

    assert not decision.allowed
    assert decision.retry_after > 0
    assert decision.retry_after <= 300
    assert "rate_limited" in events.names()


@pytest.mark.asyncio
async def test_window_rollover_allows_again(limiter, clock):
    for _ in range(5):
        await limiter.allow("login", "10.0.0.1", 5, 300)
    assert not await limiter.allow("login", "10.0.0.1", 5, 300)

    clock.advance(301)

    decision = await limiter.check("login", "10.0.0.1", 5, 300)
    assert decision.allowed
    assert decision.remaining == 4


@pytest.mark.asyncio
async def test_refused_attempts_do_not_extend_window(limiter, clock):
    for _ in range(5):
        await limiter.allow("login", "10.0.0.1", 5, 300)
    clock.advance(200)
    assert not await limiter.allow("login", "10.0.0.1", 5, 300)

    assert await limiter.retry_after("login", "10.0.0.1", 300) == 100


@pytest.mark.asyncio
async def test_actions_have_independent_budgets(limiter):
    for _ in range(5):
        await limiter.allow("login", "10.0.0.1", 5, 300)
    assert not await limiter.allow("login", "10.0.0.1", 5, 300)

    assert await limiter.allow("verify2fa", "10.0.0.1", 10, 600)
    assert await limiter.allow("login", "10.0.0.2", 5, 300)


@pytest.mark.asyncio
async def test_retry_after_without_window_is_zero(limiter):
    assert await limiter.retry_after("resend_otp", "10.0.0.9", 300) == 0


@pytest.mark.asyncio
async def test_invalid_window_defaults_to_sixty_seconds(limiter, clock):
    assert await limiter.allow("login", "10.0.0.1", 1, 0)
    assert not await limiter.allow("login", "10.0.0.1", 1, 0)

    clock.advance(61)
    assert await limiter.allow("login", "10.0.0.1", 1, 0)
