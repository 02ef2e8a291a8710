from __future__ import annotations

import asyncio
import hashlib
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Tuple

from redis.exceptions import RedisError

from backoffice_auth.config import Settings
from backoffice_auth.logging import get_logger
from backoffice_auth.service.errors import ServiceUnavailableError
from backoffice_auth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockStatus:
    locked: bool
    remaining_seconds: int = 0
    attempts: int = 0
    just_locked: bool = False


def lockout_subject(email: str) -> str:
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()


class LoginProtection:
    """Per-account lockout after repeated password failures.

    ``lockout_threshold`` failures inside ``lockout_window_seconds`` lock the
    account for ``lockout_duration_seconds``. Redis errors fail closed.
    """

    def __init__(
        self,
        settings: Settings,
        cache: Optional[RedisCache | SyncRedisCache] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self._clock = clock
        self._state_lock = threading.Lock()
        self._attempts: Dict[str, Tuple[int, datetime]] = {}
        self._lockouts: Dict[str, datetime] = {}

    def _now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(timezone.utc)

    @staticmethod
    def _unavailable(exc: Exception) -> ServiceUnavailableError:
        logger.error("lockout_store_unavailable", error=str(exc))
        return ServiceUnavailableError()

    def _local_remaining(self, subject: str, now: datetime) -> int:
        locked_until = self._lockouts.get(subject)
        if locked_until and locked_until > now:
            return max(1, int((locked_until - now).total_seconds()))
        if locked_until:
            self._lockouts.pop(subject, None)
        return 0

    async def lock_status(self, email: str) -> LockStatus:
        subject = lockout_subject(email)
        if self.cache is not None:
            try:
                remaining = await self.cache.lockout_ttl(subject)
                attempts = await self.cache.login_failure_count(subject)
            except (RedisError, OSError, asyncio.TimeoutError) as exc:
                raise self._unavailable(exc) from exc
            return LockStatus(locked=remaining > 0, remaining_seconds=remaining, attempts=attempts)
        now = self._now()
        with self._state_lock:
            remaining = self._local_remaining(subject, now)
            count, started = self._attempts.get(subject, (0, now))
            if now - started >= timedelta(seconds=self.settings.lockout_window_seconds):
                count = 0
        return LockStatus(locked=remaining > 0, remaining_seconds=remaining, attempts=count)

    async def check_lockout(self, email: str) -> int:
        """Seconds until the account unlocks; 0 when not locked."""
        return (await self.lock_status(email)).remaining_seconds

    async def record_failure(self, email: str) -> LockStatus:
        subject = lockout_subject(email)
        threshold = self.settings.lockout_threshold
        duration = self.settings.lockout_duration_seconds
        if self.cache is not None:
            try:
                locked, attempts = await self.cache.record_login_failure(
                    subject, threshold, self.settings.lockout_window_seconds, duration
                )
            except (RedisError, OSError, asyncio.TimeoutError) as exc:
                raise self._unavailable(exc) from exc
            status = LockStatus(
                locked=locked,
                remaining_seconds=duration if locked else 0,
                attempts=max(attempts, 0),
                just_locked=locked and attempts >= 0,
            )
        else:
            now = self._now()
            window = timedelta(seconds=self.settings.lockout_window_seconds)
            with self._state_lock:
                remaining = self._local_remaining(subject, now)
                if remaining:
                    return LockStatus(locked=True, remaining_seconds=remaining)
                count, started = self._attempts.get(subject, (0, now))
                if now - started >= window:
                    count, started = 0, now
                count += 1
                if count >= threshold:
                    self._lockouts[subject] = now + timedelta(seconds=duration)
                    self._attempts.pop(subject, None)
                    status = LockStatus(
                        locked=True, remaining_seconds=duration, attempts=count, just_locked=True
                    )
                else:
                    self._attempts[subject] = (count, started)
                    status = LockStatus(locked=False, attempts=count)
        if status.just_locked:
            logger.warning("login_lockout_triggered", attempts=status.attempts)
        return status

    async def clear_attempts(self, email: str) -> None:
        subject = lockout_subject(email)
        if self.cache is not None:
            try:
                await self.cache.clear_login_failures(subject)
            except (RedisError, OSError, asyncio.TimeoutError) as exc:
                raise self._unavailable(exc) from exc
            return
        with self._state_lock:
            self._attempts.pop(subject, None)

    async def unlock(self, email: str) -> None:
        subject = lockout_subject(email)
        if self.cache is not None:
            try:
                await self.cache.unlock(subject)
            except (RedisError, OSError, asyncio.TimeoutError) as exc:
                raise self._unavailable(exc) from exc
        else:
            with self._state_lock:
                self._attempts.pop(subject, None)
                self._lockouts.pop(subject, None)
        logger.info("login_lockout_cleared")
