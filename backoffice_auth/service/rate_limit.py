from __future__ import annotations

import asyncio
import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from redis.exceptions import RedisError

from backoffice_auth.logging import get_logger
from backoffice_auth.service.errors import RateLimitedError, ServiceUnavailableError
from backoffice_auth.service.policy import BUCKET_LIMITS, BucketLimit, RateLimitBucket
from backoffice_auth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

# Retry hint handed out when the counter store cannot be reached
UNAVAILABLE_RETRY_SECONDS = 60

# Proxy headers consulted for the caller address, most trusted first
CLIENT_IP_HEADERS = (
    "x-forwarded-for",
    "x-real-ip",
    "cf-connecting-ip",
    "x-vercel-forwarded-for",
)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    retry_after: int
    kind: str = "ok"

    @property
    def unavailable(self) -> bool:
        return self.kind == "unavailable"


class RateLimiter:
    """Sliding-window limiter over Redis, with a locked in-process fallback.

    Any store failure denies the request (``kind="unavailable"``) instead of
    letting it through.
    """

    def __init__(
        self,
        cache: Optional[RedisCache | SyncRedisCache],
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.cache = cache
        self._clock = clock or time.time
        self._local_windows: Dict[str, List[int]] = {}
        self._local_lock = threading.Lock()

    def _local_window(
        self, key: str, limit: int, window_ms: int, now_ms: int, *, consume: bool
    ) -> Tuple[bool, int, int]:
        with self._local_lock:
            entries = [t for t in self._local_windows.get(key, []) if t > now_ms - window_ms]
            reset_at = entries[0] + window_ms if entries else now_ms + window_ms
            if len(entries) >= limit:
                self._local_windows[key] = entries
                return False, len(entries), reset_at
            if consume:
                entries.append(now_ms)
            if entries:
                self._local_windows[key] = entries
            else:
                self._local_windows.pop(key, None)
            return True, len(entries), reset_at

    async def _window(
        self, bucket: RateLimitBucket, identifier: str, *, consume: bool
    ) -> RateLimitDecision:
        limit = BUCKET_LIMITS[bucket]
        now_ms = int(self._clock() * 1000)
        window_ms = limit.window_seconds * 1000
        try:
            if self.cache is None:
                allowed, count, reset_ms = self._local_window(
                    f"{bucket.value}:{identifier}",
                    limit.points,
                    window_ms,
                    now_ms,
                    consume=consume,
                )
            elif consume:
                allowed, count, reset_ms = await self.cache.sliding_window_consume(
                    bucket.value, identifier, limit.points, window_ms, now_ms
                )
            else:
                allowed, count, reset_ms = await self.cache.sliding_window_peek(
                    bucket.value, identifier, limit.points, window_ms, now_ms
                )
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.error(
                "rate_limit_store_unavailable",
                bucket=bucket.value,
                error=str(exc),
            )
            return self._unavailable(limit, now_ms)

        retry_after = 0
        if not allowed:
            retry_after = max(1, math.ceil((reset_ms - now_ms) / 1000))
            logger.warning(
                "rate_limit_exceeded", bucket=bucket.value, retry_after=retry_after
            )
        return RateLimitDecision(
            allowed=allowed,
            limit=limit.points,
            remaining=max(0, limit.points - count),
            reset_at=datetime.fromtimestamp(reset_ms / 1000, tz=timezone.utc),
            retry_after=retry_after,
            kind="ok" if allowed else "limited",
        )

    @staticmethod
    def _unavailable(limit: BucketLimit, now_ms: int) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=False,
            limit=limit.points,
            remaining=0,
            reset_at=datetime.fromtimestamp(
                now_ms / 1000 + UNAVAILABLE_RETRY_SECONDS, tz=timezone.utc
            ),
            retry_after=UNAVAILABLE_RETRY_SECONDS,
            kind="unavailable",
        )

    async def consume(
        self, bucket: RateLimitBucket | str, identifier: str
    ) -> RateLimitDecision:
        """Spend one point for ``identifier`` if the window has room."""
        return await self._window(RateLimitBucket(bucket), identifier, consume=True)

    async def peek(
        self, bucket: RateLimitBucket | str, identifier: str
    ) -> RateLimitDecision:
        """Report whether a point is available without spending it."""
        return await self._window(RateLimitBucket(bucket), identifier, consume=False)

    @staticmethod
    def raise_for(decision: RateLimitDecision) -> None:
        if decision.allowed:
            return
        if decision.unavailable:
            raise ServiceUnavailableError(retry_after=decision.retry_after)
        raise RateLimitedError(retry_after=decision.retry_after)

    async def enforce(
        self, bucket: RateLimitBucket | str, identifier: str
    ) -> RateLimitDecision:
        decision = await self.consume(bucket, identifier)
        self.raise_for(decision)
        return decision

    def reset_local(self) -> None:
        with self._local_lock:
            self._local_windows.clear()


def client_ip(headers: Mapping[str, str], fallback: Optional[str] = None) -> str:
    """Best-effort caller address from proxy headers.

    ``x-forwarded-for`` may carry a chain; its first hop is the client.
    """
    lowered = {key.lower(): value for key, value in headers.items()}
    for header in CLIENT_IP_HEADERS:
        value = lowered.get(header)
        if not value:
            continue
        candidate = value.split(",")[0].strip()
        if candidate:
            return candidate
    return fallback or "127.0.0.1"
