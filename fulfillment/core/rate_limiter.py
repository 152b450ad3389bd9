"""
Sliding-window rate limiter backed by Redis.

Each (client, operation) pair owns one sorted set of attempt timestamps. The
prune, count and record steps run as a single Lua script, so two processes
checking the same key can never both take the last slot.
"""
import time
import uuid
from typing import Callable, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from fulfillment.core.errors import RateLimitExceededError, RateLimiterUnavailableError
from fulfillment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# KEYS[1] window key
# ARGV: now_ms, window_ms, max_requests, member
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count < limit then
    redis.call('ZADD', key, now, ARGV[4])
    redis.call('PEXPIRE', key, window)
    return 1
end
return 0
"""


class RateLimiter:
    """
    Atomic per-key sliding window.

    Args:
        redis_client: Async Redis connection
        fail_open: Allow requests when Redis cannot answer instead of raising
        clock: Returns the current time in seconds; injectable for tests
        key_prefix: Namespace for window keys
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        fail_open: bool = False,
        clock: Optional[Callable[[], float]] = None,
        key_prefix: str = "ratelimit",
    ):
        self.redis = redis_client
        self.fail_open = fail_open
        self.clock = clock or time.time
        self.key_prefix = key_prefix
        self._script = redis_client.register_script(SLIDING_WINDOW_SCRIPT)

    def _key(self, client_id: str, operation: str) -> str:
        return f"{self.key_prefix}:{operation}:{client_id}"

    async def allow(
        self, client_id: str, operation: str, max_requests: int, window_seconds: int
    ) -> bool:
        """
        Record an attempt if the client is under its budget.

        Returns:
            bool: True if the attempt was recorded, False if the window is full

        Raises:
            RateLimiterUnavailableError: Redis failed and fail_open is off
        """
        now_ms = int(self.clock() * 1000)
        window_ms = int(window_seconds * 1000)
        member = f"{now_ms}-{uuid.uuid4().hex}"

        try:
            allowed = await self._script(
                keys=[self._key(client_id, operation)],
                args=[now_ms, window_ms, max_requests, member],
            )
        except RedisError as e:
            metrics.record_rate_limit(operation, "backend_error")
            if self.fail_open:
                logger.warning(
                    "rate_limiter_unavailable_fail_open",
                    operation=operation,
                    client_id=client_id,
                    error=str(e),
                )
                return True
            logger.error(
                "rate_limiter_unavailable",
                operation=operation,
                client_id=client_id,
                error=str(e),
            )
            raise RateLimiterUnavailableError("Rate limiter unavailable") from e

        decision = "allowed" if int(allowed) == 1 else "denied"
        metrics.record_rate_limit(operation, decision)
        return decision == "allowed"

    async def enforce(
        self, client_id: str, operation: str, max_requests: int, window_seconds: int
    ) -> None:
        """
        Raise if the client is over its budget for ``operation``.

        Raises:
            RateLimitExceededError: Window is full
            RateLimiterUnavailableError: Redis failed and fail_open is off
        """
        if not await self.allow(client_id, operation, max_requests, window_seconds):
            logger.warning("rate_limit_exceeded", operation=operation, client_id=client_id)
            raise RateLimitExceededError(
                "Too many requests. Please try again in a moment.",
                details=[
                    {
                        "operation": operation,
                        "limit": max_requests,
                        "windowSeconds": window_seconds,
                    }
                ],
            )
