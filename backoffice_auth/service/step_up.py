from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from backoffice_auth.config import Settings
from backoffice_auth.logging import get_logger
from backoffice_auth.service.audit import AuditSink
from backoffice_auth.service.capability import CapabilityPurpose, CapabilityTokens
from backoffice_auth.service.credentials import PasswordVerifier
from backoffice_auth.service.errors import (
    AuthenticationError,
    InvalidTokenError,
    SessionExpiredError,
    StepUpRequiredError,
)
from backoffice_auth.service.policy import (
    STEP_UP_METHODS,
    RateLimitBucket,
    SecurityEvent,
    SensitiveAction,
    StepUpMethod,
    requires_step_up,
)
from backoffice_auth.service.rate_limit import RateLimiter
from backoffice_auth.service.sessions import SessionRegistry
from backoffice_auth.storage.models import UserSession

logger = get_logger(__name__)


@dataclass
class StepUpGrant:
    token: str
    step_up_auth_at: datetime
    method: str


class StepUpAuthenticator:
    """Fresh re-authentication in front of sensitive actions.

    A successful proof yields a signed ``step_up`` capability token; only
    consuming that token through ``apply`` writes ``step_up_auth_at`` on the
    session, so clients never assert their own freshness.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        sessions: SessionRegistry,
        passwords: PasswordVerifier,
        capabilities: CapabilityTokens,
        rate_limiter: RateLimiter,
        audit: AuditSink,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.sessions = sessions
        self.passwords = passwords
        self.capabilities = capabilities
        self.rate_limiter = rate_limiter
        self.audit = audit
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(timezone.utc)

    @property
    def grace_period(self) -> timedelta:
        return timedelta(seconds=self.settings.step_up_grace_seconds)

    @staticmethod
    def requires_step_up(action: SensitiveAction | str) -> bool:
        return requires_step_up(action)

    def _grant(self, user_id: str, method: StepUpMethod) -> StepUpGrant:
        now = self._now()
        token = self.capabilities.issue(
            CapabilityPurpose.STEP_UP,
            user_id,
            {"step_up_auth_at": now.isoformat(), "method": method.value},
        )
        self.audit.record(SecurityEvent.STEP_UP_SUCCEEDED, user_id=user_id, method=method.value)
        return StepUpGrant(token=token, step_up_auth_at=now, method=method.value)

    async def _reject(self, user_id: str, method: StepUpMethod) -> None:
        await self.passwords.failure_delay()
        self.audit.record(SecurityEvent.STEP_UP_FAILED, user_id=user_id, method=method.value)
        raise AuthenticationError("Invalid credentials")

    async def verify_password(self, user_id: str, password: str) -> StepUpGrant:
        await self.rate_limiter.enforce(RateLimitBucket.STEP_UP_AUTH, user_id)
        if not password or not self.passwords.verify_password(user_id, password):
            await self._reject(user_id, StepUpMethod.PASSWORD)
        return self._grant(user_id, StepUpMethod.PASSWORD)

    async def verify_passkey(self, user_id: str, passkey_token: str) -> StepUpGrant:
        """Exchange the token from a completed passkey ceremony for a step-up grant."""
        await self.rate_limiter.enforce(RateLimitBucket.STEP_UP_AUTH, user_id)
        try:
            await self.capabilities.consume(
                passkey_token, CapabilityPurpose.PASSKEY_STEP_UP, user_id
            )
        except InvalidTokenError:
            await self._reject(user_id, StepUpMethod.PASSKEY)
        return self._grant(user_id, StepUpMethod.PASSKEY)

    async def verify(self, user_id: str, method: str, credential: str) -> StepUpGrant:
        if method not in {m.value for m in STEP_UP_METHODS}:
            raise AuthenticationError("Invalid credentials")
        if StepUpMethod(method) == StepUpMethod.PASSWORD:
            return await self.verify_password(user_id, credential)
        return await self.verify_passkey(user_id, credential)

    async def apply(self, session_id: str, step_up_token: str) -> datetime:
        """Consume a step-up token and stamp the session with its time."""
        session = self.sessions.get(session_id)
        if not self.sessions.is_valid(session):
            raise SessionExpiredError("Invalid or expired session")
        payload = await self.capabilities.consume(
            step_up_token, CapabilityPurpose.STEP_UP, session.user_id
        )
        try:
            verified_at = datetime.fromisoformat(payload["step_up_auth_at"])
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("step_up_payload_invalid", session_id=session_id)
            raise InvalidTokenError() from exc
        verified_at = min(verified_at, self._now())
        self.sessions.record_step_up(session.id, verified_at)
        logger.info("step_up_applied", session_id=session.id, user_id=session.user_id)
        return verified_at

    def is_verified(
        self, session: Optional[UserSession], *, now: Optional[datetime] = None
    ) -> bool:
        if session is None:
            return False
        stamps = [t for t in (session.step_up_auth_at, session.last_auth_at) if t]
        if not stamps:
            return False
        now = now or self._now()
        return now - max(stamps) < self.grace_period

    def require(self, session: UserSession, action: SensitiveAction | str) -> None:
        action = SensitiveAction(action)
        if not requires_step_up(action):
            return
        current = self.sessions.get(session.id) or session
        if not self.is_verified(current):
            logger.info(
                "step_up_required", session_id=session.id, action=action.value
            )
            raise StepUpRequiredError(
                detail={
                    "action": action.value,
                    "methods": sorted(m.value for m in STEP_UP_METHODS),
                }
            )
