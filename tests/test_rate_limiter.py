"""
Tests for the Redis sliding-window rate limiter.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from fulfillment.core.errors import RateLimitExceededError, RateLimiterUnavailableError
from fulfillment.core.rate_limiter import RateLimiter


class TestRateLimiter:
    """Test suite for RateLimiter."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_allows_up_to_limit_then_denies(self, rate_limiter: RateLimiter) -> None:
        results = [
            await rate_limiter.allow("user-1", "initiate-payment", 5, 60) for _ in range(6)
        ]

        assert results == [True, True, True, True, True, False]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_denied_attempt_is_not_recorded(self, rate_limiter: RateLimiter, clock) -> None:
        for _ in range(3):
            await rate_limiter.allow("user-1", "op", 3, 60)
        clock.advance(30)
        for _ in range(5):
            assert await rate_limiter.allow("user-1", "op", 3, 60) is False

        # Denied attempts at t=30 would still be inside the window at t=61
        clock.advance(31)
        assert await rate_limiter.allow("user-1", "op", 3, 60) is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_window_slides(self, rate_limiter: RateLimiter, clock) -> None:
        assert await rate_limiter.allow("user-1", "op", 2, 60)
        clock.advance(30)
        assert await rate_limiter.allow("user-1", "op", 2, 60)
        assert not await rate_limiter.allow("user-1", "op", 2, 60)

        # The first attempt leaves the window, the second is still in it
        clock.advance(31)
        assert await rate_limiter.allow("user-1", "op", 2, 60)
        assert not await rate_limiter.allow("user-1", "op", 2, 60)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_keys_are_per_client_and_operation(self, rate_limiter: RateLimiter) -> None:
        assert await rate_limiter.allow("user-1", "initiate-payment", 1, 60)
        assert not await rate_limiter.allow("user-1", "initiate-payment", 1, 60)

        assert await rate_limiter.allow("user-2", "initiate-payment", 1, 60)
        assert await rate_limiter.allow("user-1", "generate-invoice", 1, 60)

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_attempts_never_exceed_limit(self, rate_limiter: RateLimiter) -> None:
        results = await asyncio.gather(
            *[rate_limiter.allow("user-1", "op", 5, 60) for _ in range(20)]
        )

        assert sum(1 for allowed in results if allowed) == 5

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_enforce_raises_when_exceeded(self, rate_limiter: RateLimiter) -> None:
        await rate_limiter.enforce("user-1", "op", 1, 60)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await rate_limiter.enforce("user-1", "op", 1, 60)

        assert exc_info.value.status_code == 429
        assert exc_info.value.details[0]["operation"] == "op"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_backend_failure_fails_closed_by_default(self) -> None:
        redis_client = MagicMock()
        redis_client.register_script.return_value = AsyncMock(
            side_effect=RedisConnectionError("connection refused")
        )
        limiter = RateLimiter(redis_client)

        with pytest.raises(RateLimiterUnavailableError) as exc_info:
            await limiter.allow("user-1", "op", 5, 60)

        assert exc_info.value.status_code == 503

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_backend_failure_fail_open(self) -> None:
        redis_client = MagicMock()
        redis_client.register_script.return_value = AsyncMock(
            side_effect=RedisConnectionError("connection refused")
        )
        limiter = RateLimiter(redis_client, fail_open=True)

        assert await limiter.allow("user-1", "op", 5, 60) is True
