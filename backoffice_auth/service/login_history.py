from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from backoffice_auth.config import Settings
from backoffice_auth.logging import get_logger
from backoffice_auth.service.geolocation import GeolocationClient
from backoffice_auth.service.user_agent import parse_user_agent
from backoffice_auth.storage.memory import MemoryStore
from backoffice_auth.storage.models import DeviceInfo, LoginAttempt, UserSession, new_id

logger = get_logger(__name__)


@dataclass(frozen=True)
class AttemptCounts:
    total: int
    successful: int
    failed: int


class LoginHistory:
    """Per-account record of sign-in attempts, successful or not.

    Successful attempts reuse the device and location already resolved for
    the new session; failures are classified and geolocated here.
    """

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        *,
        geolocation: GeolocationClient,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.geolocation = geolocation
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(timezone.utc)

    async def record_attempt(
        self,
        *,
        success: bool,
        method: str,
        device: DeviceInfo,
        user_id: Optional[str] = None,
        identifier: Optional[str] = None,
        failure_reason: Optional[str] = None,
        session: Optional[UserSession] = None,
    ) -> LoginAttempt:
        attempt = LoginAttempt(
            id=new_id(),
            success=success,
            auth_method=method,
            user_id=user_id,
            identifier=identifier,
            failure_reason=None if success else failure_reason,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            created_at=self._now(),
        )
        if session is not None:
            attempt.session_id = session.id
            attempt.device_type = session.device_type
            attempt.browser = session.browser
            attempt.os = session.os
            attempt.city = session.city
            attempt.country = session.country
            attempt.country_code = session.country_code
            attempt.region = session.region
        else:
            parsed = parse_user_agent(device.user_agent)
            attempt.device_type = parsed.device_type
            attempt.browser = parsed.browser
            attempt.os = parsed.os
            geo = await self.geolocation.lookup(device.ip_address)
            if geo is not None:
                attempt.city = geo.city
                attempt.country = geo.country
                attempt.country_code = geo.country_code
                attempt.region = geo.region
        logger.info(
            "login_attempt_recorded",
            user_id=user_id,
            success=success,
            method=method,
            failure_reason=attempt.failure_reason,
        )
        return self.store.add_login_attempt(attempt)

    def history(
        self,
        user_id: str,
        *,
        success: Optional[bool] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[LoginAttempt], int]:
        """One page of attempts, newest first, and the total matching count."""
        attempts = self.store.list_login_attempts(user_id, success=success)
        return attempts[offset : offset + limit], len(attempts)

    def recent(self, user_id: str, limit: int = 5) -> List[LoginAttempt]:
        return self.store.list_login_attempts(user_id)[:limit]

    def attempt_counts(self, user_id: str, since: Optional[datetime] = None) -> AttemptCounts:
        attempts = self.store.list_login_attempts(user_id, since=since)
        successful = sum(1 for a in attempts if a.success)
        return AttemptCounts(
            total=len(attempts), successful=successful, failed=len(attempts) - successful
        )

    def delete_older_than(self, days: Optional[int] = None) -> int:
        """Purge attempts past the retention window (LOGIN_HISTORY_RETENTION_DAYS)."""
        retention = days if days is not None else self.settings.login_history_retention_days
        removed = self.store.delete_login_attempts_before(self._now() - timedelta(days=retention))
        if removed:
            logger.info("login_history_purged", count=removed)
        return removed
