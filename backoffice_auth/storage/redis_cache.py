from __future__ import annotations

import hashlib
import uuid
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis wrapper for rate-limit windows, lockouts and consumed-token markers."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Sliding window over a sorted set: trim, count, admit, all in one call.
    # Scores are millisecond timestamps; returns {allowed, count, reset_at_ms}.
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local reset_at = now + window
if oldest[2] then
  reset_at = tonumber(oldest[2]) + window
end

if count >= limit then
  return {0, count, reset_at}
end

redis.call('ZADD', key, now, member)
redis.call('PEXPIRE', key, window)
return {1, count + 1, reset_at}
"""

    _SLIDING_WINDOW_PEEK_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local reset_at = now + window
if oldest[2] then
  reset_at = tonumber(oldest[2]) + window
end
if count >= limit then
  return {0, count, reset_at}
end
return {1, count, reset_at}
"""

    # Failed-login counter that flips into a lockout key at the threshold.
    # Returns {locked, attempts}; attempts is -1 when already locked.
    _LOGIN_FAILURE_SCRIPT = """
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

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)
        self._sliding_window_peek = self.client.register_script(
            self._SLIDING_WINDOW_PEEK_SCRIPT
        )
        self._login_failure = self.client.register_script(self._LOGIN_FAILURE_SCRIPT)

    @staticmethod
    def _normalize_rate_key(bucket: str, identifier: str) -> str:
        """Hash the identifier so caller-supplied text cannot forge other keys."""

        digest = hashlib.sha256(identifier.encode()).hexdigest()
        return f"rate:{bucket}:{digest}"

    @staticmethod
    def _lockout_keys(subject: str) -> Tuple[str, str]:
        return f"lockout:locked:{subject}", f"lockout:attempts:{subject}"

    @staticmethod
    def _window_result(raw) -> Tuple[bool, int, int]:
        allowed, count, reset_at = raw
        return bool(int(allowed)), int(count), int(reset_at)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def sliding_window_consume(
        self, bucket: str, identifier: str, limit: int, window_ms: int, now_ms: int
    ) -> Tuple[bool, int, int]:
        key = self._normalize_rate_key(bucket, identifier)
        raw = await self._sliding_window(
            keys=[key], args=[now_ms, window_ms, limit, f"{now_ms}-{uuid.uuid4().hex}"]
        )
        return self._window_result(raw)

    async def sliding_window_peek(
        self, bucket: str, identifier: str, limit: int, window_ms: int, now_ms: int
    ) -> Tuple[bool, int, int]:
        key = self._normalize_rate_key(bucket, identifier)
        raw = await self._sliding_window_peek(keys=[key], args=[now_ms, window_ms, limit])
        return self._window_result(raw)

    async def mark_token_consumed(self, jti: str, ttl_seconds: int) -> bool:
        """Record a capability token id; False if it was already recorded."""
        result = await self.client.set(
            f"auth:capability:consumed:{jti}", "1", ex=max(1, ttl_seconds), nx=True
        )
        return bool(result)

    async def record_login_failure(
        self, subject: str, max_attempts: int, window_seconds: int, lockout_seconds: int
    ) -> Tuple[bool, int]:
        locked_key, attempts_key = self._lockout_keys(subject)
        result = await self._login_failure(
            keys=[locked_key, attempts_key],
            args=[max_attempts, window_seconds, lockout_seconds],
        )
        return bool(int(result[0])), int(result[1])

    async def lockout_ttl(self, subject: str) -> int:
        """Seconds left on an active lockout, or 0."""
        locked_key, _ = self._lockout_keys(subject)
        ttl = await self.client.ttl(locked_key)
        return max(0, int(ttl or 0))

    async def login_failure_count(self, subject: str) -> int:
        _, attempts_key = self._lockout_keys(subject)
        value = await self.client.get(attempts_key)
        return int(value) if value else 0

    async def clear_login_failures(self, subject: str) -> None:
        _, attempts_key = self._lockout_keys(subject)
        await self.client.delete(attempts_key)

    async def unlock(self, subject: str) -> None:
        await self.client.delete(*self._lockout_keys(subject))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally so pytest event loops never bind
    the connection pool, while exposing the same awaitable surface as
    RedisCache.
    """

    def __init__(
        self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self._sync_client.register_script(
            RedisCache._SLIDING_WINDOW_SCRIPT
        )
        self._sliding_window_peek = self._sync_client.register_script(
            RedisCache._SLIDING_WINDOW_PEEK_SCRIPT
        )
        self._login_failure = self._sync_client.register_script(
            RedisCache._LOGIN_FAILURE_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def sliding_window_consume(
        self, bucket: str, identifier: str, limit: int, window_ms: int, now_ms: int
    ) -> Tuple[bool, int, int]:
        key = RedisCache._normalize_rate_key(bucket, identifier)
        raw = self._sliding_window(
            keys=[key], args=[now_ms, window_ms, limit, f"{now_ms}-{uuid.uuid4().hex}"]
        )
        return RedisCache._window_result(raw)

    async def sliding_window_peek(
        self, bucket: str, identifier: str, limit: int, window_ms: int, now_ms: int
    ) -> Tuple[bool, int, int]:
        key = RedisCache._normalize_rate_key(bucket, identifier)
        raw = self._sliding_window_peek(keys=[key], args=[now_ms, window_ms, limit])
        return RedisCache._window_result(raw)

    async def mark_token_consumed(self, jti: str, ttl_seconds: int) -> bool:
        result = self._sync_client.set(
            f"auth:capability:consumed:{jti}", "1", ex=max(1, ttl_seconds), nx=True
        )
        return bool(result)

    async def record_login_failure(
        self, subject: str, max_attempts: int, window_seconds: int, lockout_seconds: int
    ) -> Tuple[bool, int]:
        locked_key, attempts_key = RedisCache._lockout_keys(subject)
        result = self._login_failure(
            keys=[locked_key, attempts_key],
            args=[max_attempts, window_seconds, lockout_seconds],
        )
        return bool(int(result[0])), int(result[1])

    async def lockout_ttl(self, subject: str) -> int:
        locked_key, _ = RedisCache._lockout_keys(subject)
        ttl = self._sync_client.ttl(locked_key)
        return max(0, int(ttl or 0))

    async def login_failure_count(self, subject: str) -> int:
        _, attempts_key = RedisCache._lockout_keys(subject)
        value: Optional[str] = self._sync_client.get(attempts_key)
        return int(value) if value else 0

    async def clear_login_failures(self, subject: str) -> None:
        _, attempts_key = RedisCache._lockout_keys(subject)
        self._sync_client.delete(attempts_key)

    async def unlock(self, subject: str) -> None:
        self._sync_client.delete(*RedisCache._lockout_keys(subject))

    async def close(self) -> None:
        self._sync_client.close()
