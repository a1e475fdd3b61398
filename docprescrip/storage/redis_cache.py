from __future__ import annotations

import hashlib
import time
import uuid
from typing import List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for counters, locks, refresh markers and event logs."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Sliding-window log: one sorted-set member per admitted request
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)

if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local reset_after = math.ceil(tonumber(oldest[2]) + window - now)
  return {0, 0, math.max(reset_after, 1)}
end

redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, math.ceil(window))
return {1, limit - count - 1, 0}
"""

    # Increment a failure counter and promote it to a lock at the threshold.
    # KEYS[1]=lock, KEYS[2]=attempts; ARGV: max_attempts, window, lockout
    _FAILED_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end

local attempts = redis.call('INCR', KEYS[2])
if attempts == 1 then
    redis.call('EXPIRE', KEYS[2], ARGV[2])
end

if attempts >= tonumber(ARGV[1]) then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[3])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end

return {0, attempts}
"""

    # INCR that only sets the TTL when the key is created
    _COUNTER_SCRIPT = """
local value = redis.call('INCR', KEYS[1])
if value == 1 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return value
"""

    def __init__(
        self,
        redis_url: str,
        *,
        password: Optional[str] = None,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self._password = password
        self.client = aioredis.from_url(
            redis_url,
            password=password,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)
        self._failed_attempt = self.client.register_script(self._FAILED_ATTEMPT_SCRIPT)
        self._counter = self.client.register_script(self._COUNTER_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Short-lived sync client so the async one is not bound to a startup loop.
        sync_client = Redis.from_url(
            self.redis_url, password=self._password, decode_responses=True
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def ttl(self, key: str) -> Optional[int]:
        """Remaining lifetime in seconds, or None when the key is absent."""
        remaining = await self.client.ttl(key)
        if remaining is None or remaining == -2:
            return None
        if remaining == -1:
            return 0
        return int(remaining)

    async def getdel(self, key: str) -> Optional[str]:
        """Atomically read and delete a single-use value."""
        return await self.client.getdel(key)

    async def increment(self, key: str, ttl_seconds: int) -> int:
        return int(await self._counter(keys=[key], args=[max(1, int(ttl_seconds))]))

    async def record_failed_attempt(
        self,
        lock_key: str,
        attempts_key: str,
        *,
        max_attempts: int,
        window_seconds: int,
        lockout_seconds: int,
    ) -> Tuple[bool, int]:
        """Atomically record a failure and trigger the lock at the threshold.

        Returns:
            Tuple of (locked: bool, attempts: int). ``attempts`` is -1 when
            the tuple was already locked before this call.
        """
        result = await self._failed_attempt(
            keys=[lock_key, attempts_key],
            args=[max_attempts, max(1, window_seconds), max(1, lockout_seconds)],
        )
        return (bool(int(result[0])), int(result[1]))

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Sliding-window check; returns (allowed, remaining, reset_seconds).

        At most ``limit`` requests are admitted in any ``window_seconds``
        span. Rejected requests are not recorded.
        """
        allowed, remaining, reset_after = await self._sliding_window(
            keys=[self._normalize_rate_key(key)],
            args=[time.time(), window_seconds, limit, uuid.uuid4().hex],
        )
        return (
            bool(int(allowed)),
            max(0, int(remaining)),
            int(reset_after) if reset_after else 0,
        )

    async def push_capped(
        self, key: str, value: str, *, max_entries: int, ttl_seconds: int
    ) -> None:
        pipe = self.client.pipeline()
        pipe.lpush(key, value)
        pipe.ltrim(key, 0, max_entries - 1)
        pipe.expire(key, max(1, int(ttl_seconds)))
        await pipe.execute()

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> List[str]:
        return list(await self.client.lrange(key, start, end))

    async def close(self) -> None:
        """Close the connection pool when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
