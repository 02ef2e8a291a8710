from __future__ import annotations

from typing import Any, Optional, Protocol

from backoffice_auth.logging import get_logger, log_security_event
from backoffice_auth.service.policy import SecurityEvent


class AuditSink(Protocol):
    def record(
        self, event: SecurityEvent, *, user_id: Optional[str] = None, **details: Any
    ) -> None: ...


class LoggingAuditSink:
    """Writes security events to the structured ``security`` log."""

    def __init__(self) -> None:
        self.logger = get_logger("security")

    def record(
        self, event: SecurityEvent, *, user_id: Optional[str] = None, **details: Any
    ) -> None:
        log_security_event(
            SecurityEvent(event).value, logger=self.logger, user_id=user_id, **details
        )
