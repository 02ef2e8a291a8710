from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class BackupCodeRecord:
    id: str
    salt: str
    code_hash: str
    used_at: Optional[datetime] = None

    @property
    def is_used(self) -> bool:
        return self.used_at is not None


@dataclass
class TwoFactorSettings:
    """Per-user factor state; secrets are stored encrypted."""

    email_enabled: bool = False
    totp_enabled: bool = False
    totp_secret: Optional[str] = None
    totp_pending_secret: Optional[str] = None
    backup_codes: List[BackupCodeRecord] = field(default_factory=list)
    preferred_method: Optional[str] = None

    @property
    def totp_state(self) -> str:
        if self.totp_enabled:
            return "enabled"
        if self.totp_pending_secret:
            return "pending_setup"
        return "disabled"

    @property
    def remaining_backup_codes(self) -> int:
        return sum(1 for code in self.backup_codes if not code.is_used)

    @property
    def any_enabled(self) -> bool:
        return self.email_enabled or self.totp_enabled


@dataclass
class User:
    id: str
    email: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    is_active: bool = True
    locale: str = "en"
    role: str = "user"
    tenant_id: str = "public"
    two_factor: TwoFactorSettings = field(default_factory=TwoFactorSettings)
    created_at: datetime = field(default_factory=_utcnow)
    password_changed_at: Optional[datetime] = None


@dataclass
class PasskeyCredential:
    id: str
    user_id: str
    credential_id: str
    public_key: str
    sign_count: int = 0
    transports: List[str] = field(default_factory=list)
    device_type: str = "single_device"
    backed_up: bool = False
    aaguid: Optional[str] = None
    name: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    last_used_at: Optional[datetime] = None


@dataclass
class PasskeyChallenge:
    id: str
    challenge: str
    type: str
    expires_at: datetime
    user_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Token:
    id: str
    type: str
    token_hash: str
    user_id: Optional[str]
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)
    used_at: Optional[datetime] = None


@dataclass
class TokenPayload:
    """Type-specific data linked 1:1 to a token row."""

    token_id: str
    data: Dict = field(default_factory=dict)


@dataclass
class DeviceInfo:
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass
class UserSession:
    id: str
    user_id: str
    session_token: str
    expires_at: datetime
    absolute_expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = None
    region: Optional[str] = None
    is_revoked: bool = False
    revoked_reason: Optional[str] = None
    revoked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    last_activity_at: datetime = field(default_factory=_utcnow)
    last_auth_at: Optional[datetime] = None
    step_up_auth_at: Optional[datetime] = None


@dataclass
class LoginAttempt:
    """One sign-in attempt, kept for the account's login history."""

    id: str
    success: bool
    auth_method: str
    user_id: Optional[str] = None
    identifier: Optional[str] = None
    failure_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = None
    region: Optional[str] = None
    session_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
