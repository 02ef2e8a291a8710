from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from backoffice_auth.config import Settings
from backoffice_auth.logging import get_logger
from backoffice_auth.service.audit import AuditSink
from backoffice_auth.service.email import Notifier
from backoffice_auth.service.errors import SessionExpiredError
from backoffice_auth.service.geolocation import GeoLocation, GeolocationClient
from backoffice_auth.service.policy import (
    InvalidationRule,
    InvalidationTrigger,
    RateLimitBucket,
    SecurityEvent,
    invalidation_rule,
)
from backoffice_auth.service.rate_limit import RateLimiter
from backoffice_auth.service.user_agent import parse_user_agent
from backoffice_auth.storage.memory import MemoryStore
from backoffice_auth.storage.models import DeviceInfo, UserSession, new_id

logger = get_logger(__name__)

SESSION_SORTS = ("recent", "oldest", "created")


@dataclass
class SessionFilters:
    search: Optional[str] = None
    device_type: Optional[str] = None
    sort: str = "recent"


class SessionRegistry:
    """Login sessions with sliding and absolute expiry.

    A session is valid only while it is not revoked, not past its sliding
    expiry and not past its absolute expiry. Activity extends the sliding
    expiry up to, never beyond, the absolute one.
    """

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        *,
        geolocation: GeolocationClient,
        rate_limiter: RateLimiter,
        notifier: Notifier,
        audit: AuditSink,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.geolocation = geolocation
        self.rate_limiter = rate_limiter
        self.notifier = notifier
        self.audit = audit
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(timezone.utc)

    @property
    def sliding_lifetime(self) -> timedelta:
        return timedelta(days=self.settings.session_duration_days)

    @property
    def absolute_lifetime(self) -> timedelta:
        return timedelta(days=self.settings.session_absolute_lifetime_days)

    async def create(
        self, user_id: str, device: DeviceInfo, *, notify: bool = True
    ) -> UserSession:
        now = self._now()
        parsed = parse_user_agent(device.user_agent)
        geo = await self.geolocation.lookup(device.ip_address) or GeoLocation()
        known_device = any(
            s.browser == parsed.browser and s.os == parsed.os
            for s in self.store.list_sessions(user_id)
            if self.is_valid(s, now=now)
        )
        session = self.store.create_session(
            UserSession(
                id=new_id(),
                user_id=user_id,
                session_token=secrets.token_urlsafe(32),
                expires_at=now + self.sliding_lifetime,
                absolute_expires_at=now + self.absolute_lifetime,
                user_agent=device.user_agent,
                ip_address=device.ip_address,
                device_type=parsed.device_type,
                browser=parsed.browser,
                os=parsed.os,
                city=geo.city,
                country=geo.country,
                country_code=geo.country_code,
                region=geo.region,
                created_at=now,
                last_activity_at=now,
                last_auth_at=now,
            )
        )
        logger.info(
            "session_created",
            session_id=session.id,
            user_id=user_id,
            device_type=parsed.device_type,
        )
        if notify and not known_device:
            try:
                await self._notify_new_login(session, geo)
            except Exception as exc:
                # Notification problems must never block sign-in
                logger.warning(
                    "new_login_notification_failed",
                    user_id=user_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        return session

    async def _notify_new_login(self, session: UserSession, geo: GeoLocation) -> None:
        decision = await self.rate_limiter.consume(
            RateLimitBucket.TWO_FACTOR_RESEND, f"login-email:{session.user_id}"
        )
        if not decision.allowed:
            logger.info("new_login_notification_throttled", user_id=session.user_id)
            return
        user = self.store.get_user(session.user_id)
        if not user:
            return
        await asyncio.to_thread(
            self.notifier.send_new_login,
            user.email,
            f"{session.browser} on {session.os}",
            geo.label,
            session.ip_address or "unknown",
        )

    def get(self, session_id: str) -> Optional[UserSession]:
        return self.store.get_session(session_id)

    def is_valid(self, session: Optional[UserSession], *, now: Optional[datetime] = None) -> bool:
        if session is None or session.is_revoked:
            return False
        now = now or self._now()
        return now < session.expires_at and now < session.absolute_expires_at

    def resolve(self, session_token: str, *, touch: bool = True) -> UserSession:
        """Return the live session for a bearer token or raise ``SessionExpiredError``."""
        session = self.store.get_session_by_token(session_token) if session_token else None
        if not self.is_valid(session):
            logger.info(
                "session_rejected",
                session_id=session.id if session else None,
                revoked=session.is_revoked if session else None,
            )
            raise SessionExpiredError("Invalid or expired session")
        if touch:
            return self.touch(session.id) or session
        return session

    def touch(self, session_id: str) -> Optional[UserSession]:
        """Record activity; silently ignores sessions that are no longer valid."""
        now = self._now()
        return self.store.touch_session(session_id, now, now + self.sliding_lifetime)

    def mark_authenticated(self, session_id: str) -> Optional[UserSession]:
        return self.store.update_session(session_id, last_auth_at=self._now())

    def record_step_up(self, session_id: str, at: datetime) -> Optional[UserSession]:
        return self.store.update_session(session_id, step_up_auth_at=at)

    def revoke(self, session_id: str, reason: str = "user_revoked") -> bool:
        """Idempotent; returns True only for the call that revoked the session."""
        revoked = self.store.revoke_session(session_id, reason, self._now())
        if revoked:
            session = self.store.get_session(session_id)
            self.audit.record(
                SecurityEvent.SESSION_REVOKED,
                user_id=session.user_id if session else None,
                session_id=session_id,
                reason=reason,
            )
        return revoked

    def revoke_all_except(
        self, user_id: str, current_session_id: Optional[str], reason: str = "revoke_others"
    ) -> int:
        count = self.store.revoke_user_sessions(
            user_id, reason, self._now(), except_session_id=current_session_id
        )
        logger.info("sessions_revoked", user_id=user_id, count=count, reason=reason)
        return count

    def revoke_all(self, user_id: str, reason: str = "revoke_all") -> int:
        count = self.store.revoke_user_sessions(user_id, reason, self._now())
        logger.info("sessions_revoked", user_id=user_id, count=count, reason=reason)
        return count

    def apply_invalidation(
        self,
        trigger: InvalidationTrigger | str,
        user_id: str,
        current_session_id: Optional[str] = None,
    ) -> int:
        trigger = InvalidationTrigger(trigger)
        rule = invalidation_rule(trigger)
        if rule == InvalidationRule.NONE:
            return 0
        if rule == InvalidationRule.REVOKE_OTHERS:
            count = self.revoke_all_except(user_id, current_session_id, trigger.value)
        else:
            count = self.revoke_all(user_id, trigger.value)
        self.audit.record(
            SecurityEvent.SESSIONS_INVALIDATED,
            user_id=user_id,
            trigger=trigger.value,
            rule=rule.value,
            count=count,
        )
        return count

    def list(
        self, user_id: str, filters: Optional[SessionFilters] = None
    ) -> List[UserSession]:
        filters = filters or SessionFilters()
        sort = filters.sort if filters.sort in SESSION_SORTS else "recent"
        now = self._now()
        sessions = [s for s in self.store.list_sessions(user_id) if self.is_valid(s, now=now)]
        if filters.device_type:
            sessions = [s for s in sessions if s.device_type == filters.device_type]
        if filters.search:
            needle = filters.search.strip().lower()
            sessions = [
                s
                for s in sessions
                if any(
                    needle in (value or "").lower()
                    for value in (s.browser, s.os, s.city, s.country, s.ip_address)
                )
            ]
        if sort == "created":
            sessions.sort(key=lambda s: s.created_at, reverse=True)
        elif sort == "oldest":
            sessions.sort(key=lambda s: s.last_activity_at)
        else:
            sessions.sort(key=lambda s: s.last_activity_at, reverse=True)
        return sessions

    def list_all_active(
        self, *, page: int = 1, page_size: int = 50, search: Optional[str] = None
    ) -> Tuple[List[UserSession], int]:
        """Admin view across users, newest activity first."""
        now = self._now()
        sessions = [s for s in self.store.list_sessions() if self.is_valid(s, now=now)]
        if search:
            needle = search.strip().lower()
            sessions = [
                s
                for s in sessions
                if needle in (s.user_id or "").lower()
                or needle in (s.ip_address or "").lower()
                or needle in (s.browser or "").lower()
            ]
        sessions.sort(key=lambda s: s.last_activity_at, reverse=True)
        page = max(1, page)
        page_size = max(1, min(page_size, 200))
        start = (page - 1) * page_size
        return sessions[start : start + page_size], len(sessions)

    def active_count(self, user_id: str) -> int:
        now = self._now()
        return sum(1 for s in self.store.list_sessions(user_id) if self.is_valid(s, now=now))

    def cleanup_expired(self) -> int:
        return self.store.delete_expired_sessions(self._now())
