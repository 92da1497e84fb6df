"""
Redis Window Store
==================
Redis-backed fixed-window limiter using a Lua script for atomic updates.
"""

import time
from typing import Callable, Optional

import redis
import structlog

from ..errors import StorageError
from .models import RateLimitInfo, retry_after_ms

logger = structlog.get_logger(__name__)

# Lua script for an atomic fixed window anchored at the first request
FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local now_ms = tonumber(ARGV[3])

local start = tonumber(redis.call('HGET', key, 'start'))
local count = tonumber(redis.call('HGET', key, 'count'))

if start == nil or now_ms - start >= window_ms then
    redis.call('HSET', key, 'start', now_ms, 'count', 1)
    redis.call('PEXPIRE', key, window_ms)
    return {1, limit - 1, now_ms + window_ms}
end

if count >= limit then
    return {0, 0, start + window_ms}
end

count = redis.call('HINCRBY', key, 'count', 1)
return {1, limit - count, start + window_ms}
"""


class RedisWindowStore:
    """
    Redis-backed fixed-window limiter.
    
    Windows expire inside Redis, so `sweep` has nothing to do.
    """
    
    def __init__(
        self,
        redis_client,
        prefix: str = "otpguard:ratelimit",
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            redis_client: Synchronous redis.Redis client
            prefix: Namespace for keys
            clock: Time source (seconds)
        """
        self.redis = redis_client
        self.prefix = prefix
        self._clock = clock
        self._script = redis_client.register_script(FIXED_WINDOW_SCRIPT)
    
    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"
    
    def check(self, key: str, limit: int, window_seconds: float) -> RateLimitInfo:
        """Count one request against `key` atomically in Redis."""
        now = self._clock()
        try:
            allowed, remaining, reset_at_ms = self._script(
                keys=[self._key(key)],
                args=[limit, int(window_seconds * 1000), int(now * 1000)],
            )
        except redis.RedisError as e:
            logger.error("rate_limit_check_failed", error=str(e))
            raise StorageError("rate limit backend unavailable", e) from e
        
        reset_at = int(reset_at_ms) / 1000
        if not int(allowed):
            return RateLimitInfo(
                allowed=False,
                remaining=0,
                limit=limit,
                reset_at=reset_at,
                retry_after_ms=retry_after_ms(reset_at, now),
            )
        return RateLimitInfo(
            allowed=True,
            remaining=int(remaining),
            limit=limit,
            reset_at=reset_at,
        )
    
    def reset(self, key: str) -> None:
        try:
            self.redis.delete(self._key(key))
        except redis.RedisError as e:
            logger.error("rate_limit_reset_failed", error=str(e))
            raise StorageError("rate limit backend unavailable", e) from e
    
    def sweep(self, now: Optional[float] = None) -> int:
        return 0
