from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from backoffice_auth.logging import get_correlation_id
from backoffice_auth.service.credentials import PASSWORD_MAX_LENGTH, PASSWORD_MIN_LENGTH

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "step_up_required",
    "not_found",
    "rate_limited",
    "validation_error",
    "invalid_token",
    "conflict",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"password must be at most {PASSWORD_MAX_LENGTH} characters")
    return value


# ----------------------------------------------------------------------
# sign-in
# ----------------------------------------------------------------------


class LoginRequest(BaseModel):
    # Not format-checked: a malformed address gets the generic credential error
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)


class LoginResponse(BaseModel):
    two_factor_required: bool = False
    session_id: Optional[str] = None
    session_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    pending_token: Optional[str] = None
    methods: List[str] = Field(default_factory=list)


class TwoFactorVerifyRequest(BaseModel):
    pending_token: str = Field(..., max_length=4096)
    method: Literal["email", "totp", "backup"]
    code: str = Field(..., min_length=1, max_length=64)


class TwoFactorResendRequest(BaseModel):
    pending_token: str = Field(..., max_length=4096)


class PasskeyOptionsRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=320)


class PasskeyVerifyRequest(BaseModel):
    response: Dict[str, Any]
    purpose: Literal["login", "step_up"] = "login"


class PasskeyLoginRequest(BaseModel):
    passkey_token: str = Field(..., max_length=4096)


# ----------------------------------------------------------------------
# step-up
# ----------------------------------------------------------------------


class StepUpRequest(BaseModel):
    method: Literal["password", "passkey"]
    credential: str = Field(..., min_length=1, max_length=4096)


class StepUpResponse(BaseModel):
    step_up_token: str
    step_up_auth_at: datetime
    method: str


class StepUpApplyRequest(BaseModel):
    step_up_token: str = Field(..., max_length=4096)


# ----------------------------------------------------------------------
# passwords and email
# ----------------------------------------------------------------------


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=1024)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordResetRequest(BaseModel):
    email: str = Field(..., max_length=320)


class PasswordResetCompleteRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=512)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class EmailChangeRequest(BaseModel):
    new_email: str

    @field_validator("new_email")
    @classmethod
    def _validate_new_email(cls, value: str) -> str:
        return _validate_email(value)


class CodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)


# ----------------------------------------------------------------------
# sessions
# ----------------------------------------------------------------------


class SessionResponse(BaseModel):
    id: str
    device_type: str
    browser: str
    os: str
    ip_address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionResponse]
    total: int


class LoginAttemptResponse(BaseModel):
    id: str
    success: bool
    auth_method: str
    failure_reason: Optional[str] = None
    ip_address: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    created_at: datetime


class LoginHistoryResponse(BaseModel):
    items: List[LoginAttemptResponse]
    total: int
    limit: int
    offset: int


class RevokedCountResponse(BaseModel):
    revoked: int


# ----------------------------------------------------------------------
# two-factor and passkey management
# ----------------------------------------------------------------------


class TwoFactorStatusResponse(BaseModel):
    email_enabled: bool
    totp: str
    backup_codes_remaining: int
    preferred_method: Optional[str] = None
    available_methods: List[str]


class TotpSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str


class BackupCodesResponse(BaseModel):
    codes: List[str]


class PasskeyRegisterOptionsRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)


class PasskeyRegisterRequest(BaseModel):
    response: Dict[str, Any]
    name: Optional[str] = Field(default=None, max_length=100)


class PasskeyResponse(BaseModel):
    id: str
    name: Optional[str] = None
    device_type: Optional[str] = None
    backed_up: bool = False
    created_at: datetime
    last_used_at: Optional[datetime] = None


# ----------------------------------------------------------------------
# invitations
# ----------------------------------------------------------------------


class InviteRequest(BaseModel):
    email: str
    role_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("email")
    @classmethod
    def _validate_invite_email(cls, value: str) -> str:
        return _validate_email(value)


class InviteResponse(BaseModel):
    invite_id: str
    expires_at: datetime


class InviteAcceptRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=512)
    password: str

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)
