from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Callable, Dict, Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from backoffice_auth.config import Settings, get_settings, reset_settings_cache
from backoffice_auth.logging import get_logger
from backoffice_auth.service.account import AccountSecurityService
from backoffice_auth.service.audit import AuditSink, LoggingAuditSink
from backoffice_auth.service.capability import CapabilityTokens
from backoffice_auth.service.credentials import PasskeyService, PasswordVerifier
from backoffice_auth.service.email import EmailService, Notifier
from backoffice_auth.service.geolocation import GeolocationClient
from backoffice_auth.service.login_history import LoginHistory
from backoffice_auth.service.login_protection import LoginProtection
from backoffice_auth.service.policy import validate_policy
from backoffice_auth.service.rate_limit import RateLimiter
from backoffice_auth.service.security import SecretCipher
from backoffice_auth.service.sessions import SessionRegistry
from backoffice_auth.service.step_up import StepUpAuthenticator
from backoffice_auth.service.tokens import TokenService
from backoffice_auth.service.two_factor import TwoFactorService
from backoffice_auth.storage.memory import MemoryStore
from backoffice_auth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username}:***@{netloc}" if parsed.username else f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _connect_cache(settings: Settings) -> Optional[RedisCache | SyncRedisCache]:
    redis_error: Exception | None = None
    if settings.redis_url:
        try:
            # Sync client in test mode keeps the pool off pytest's event loops
            cache = (
                SyncRedisCache(settings.redis_url)
                if settings.test_mode
                else RedisCache(settings.redis_url)
            )
            cache.verify_connection()
            return cache
        except (RedisError, OSError) as exc:
            redis_error = exc

    if not settings.redis_fallback_allowed:
        raise RuntimeError(
            "Redis is required for rate limits, lockouts and capability tokens; "
            "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        message=(
            f"Running without Redis under {fallback_mode}; rate limits, lockouts and "
            "single-use capability markers are process-local only."
        ),
        mode=fallback_mode,
    )
    return None


class Runtime:
    """Builds and wires every auth service once per process.

    Services receive their collaborators explicitly; nothing reaches for a
    module-level instance. Tests construct a ``Runtime`` directly with their
    own store, notifier or audit sink.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[MemoryStore] = None,
        cache: Optional[RedisCache | SyncRedisCache] = None,
        connect_cache: bool = True,
        notifier: Optional[Notifier] = None,
        audit: Optional[AuditSink] = None,
        geolocation: Optional[GeolocationClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        validate_policy()
        self.settings = settings or get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.store = store or MemoryStore()
        if cache is None and connect_cache:
            cache = _connect_cache(self.settings)
        self.cache = cache

        self.notifier: Notifier = notifier or EmailService.from_settings(self.settings)
        self.audit: AuditSink = audit or LoggingAuditSink()
        self.cipher = SecretCipher(
            self.settings.encryption_key or self.settings.signing_secret,
            self.settings.encryption_keys_legacy,
        )

        epoch_clock = (lambda: clock().timestamp()) if clock else None
        self.rate_limiter = RateLimiter(self.cache, clock=epoch_clock)
        self.login_protection = LoginProtection(self.settings, self.cache, clock=clock)
        self.capabilities = CapabilityTokens(self.settings, self.cache, clock=epoch_clock)
        self.tokens = TokenService(self.store, self.settings, clock=clock)
        self.passwords = PasswordVerifier(self.store, self.settings)
        self.passkeys = PasskeyService(
            self.store, self.settings, self.capabilities, self.audit, clock=clock
        )
        self.geolocation = geolocation or GeolocationClient(self.settings)
        self.sessions = SessionRegistry(
            self.store,
            self.settings,
            geolocation=self.geolocation,
            rate_limiter=self.rate_limiter,
            notifier=self.notifier,
            audit=self.audit,
            clock=clock,
        )
        self.login_history = LoginHistory(
            self.store, self.settings, geolocation=self.geolocation, clock=clock
        )
        self.step_up = StepUpAuthenticator(
            self.settings,
            sessions=self.sessions,
            passwords=self.passwords,
            capabilities=self.capabilities,
            rate_limiter=self.rate_limiter,
            audit=self.audit,
            clock=clock,
        )
        self.two_factor = TwoFactorService(
            self.store,
            self.settings,
            tokens=self.tokens,
            rate_limiter=self.rate_limiter,
            sessions=self.sessions,
            step_up=self.step_up,
            cipher=self.cipher,
            notifier=self.notifier,
            audit=self.audit,
            failure_delay=self.passwords.failure_delay,
            clock=clock,
        )
        self.account = AccountSecurityService(
            self.store,
            self.settings,
            passwords=self.passwords,
            passkeys=self.passkeys,
            capabilities=self.capabilities,
            tokens=self.tokens,
            two_factor=self.two_factor,
            sessions=self.sessions,
            step_up=self.step_up,
            rate_limiter=self.rate_limiter,
            login_protection=self.login_protection,
            login_history=self.login_history,
            notifier=self.notifier,
            audit=self.audit,
        )
        logger.info("runtime_init_completed", redis_enabled=self.cache is not None)

    def run_maintenance(self) -> Dict[str, int]:
        """Purge expired tokens, passkey challenges, dead sessions and old login history."""
        removed = {
            "tokens": self.tokens.cleanup_expired(),
            "challenges": self.passkeys.cleanup_expired_challenges(),
            "sessions": self.sessions.cleanup_expired(),
            "login_history": self.login_history.delete_older_than(),
        }
        logger.info("maintenance_completed", **removed)
        return removed

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process runtime, creating it on first use."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh settings read; TEST_MODE only."""
    global runtime
    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            asyncio.run(runtime.cache.close())
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
