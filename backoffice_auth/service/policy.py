"""Security policy tables.

Every decision about which actions need a fresh re-authentication, which
security events invalidate sessions, and which rate-limit tier guards an
endpoint lives here as enum-keyed data. Call sites look decisions up
instead of hard-coding them, and ``validate_policy`` refuses to start with
a gap in any table.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping


class PolicyConfigurationError(RuntimeError):
    """A policy table is missing an entry for an enum member."""


class SensitiveAction(str, Enum):
    PASSWORD_CHANGE = "password.change"
    EMAIL_CHANGE_INITIATE = "email.change.initiate"
    EMAIL_CHANGE_VERIFY = "email.change.verify"
    PASSKEY_REGISTER = "passkey.register"
    PASSKEY_DELETE = "passkey.delete"
    TOTP_ENABLE = "totp.enable"
    TOTP_DISABLE = "totp.disable"
    EMAIL_2FA_ENABLE = "email2fa.enable"
    EMAIL_2FA_DISABLE = "email2fa.disable"
    BACKUP_CODES_VIEW = "backup.codes.view"
    BACKUP_CODES_REGENERATE = "backup.codes.regenerate"
    SESSION_REVOKE_OTHER = "session.revoke.other"
    SESSION_REVOKE_ALL = "session.revoke.all"


class InvalidationRule(str, Enum):
    NONE = "none"
    REVOKE_OTHERS = "revoke_others"
    REVOKE_ALL = "revoke_all"


class InvalidationTrigger(str, Enum):
    PASSWORD_CHANGE = "password_change"
    PASSWORD_RESET = "password_reset"
    EMAIL_CHANGE = "email_change"
    TOTP_DISABLE = "totp_disable"
    EMAIL_2FA_DISABLE = "email_2fa_disable"
    ACCOUNT_COMPROMISE = "account_compromise"
    USER_DEACTIVATION = "user_deactivation"
    PASSKEY_DELETE_CRITICAL = "passkey_delete_critical"
    ROLE_CHANGE = "role_change"
    ROLE_PERMISSIONS_UPDATE = "role_permissions_update"
    USER_APPS_UPDATE = "user_apps_update"


class RateLimitBucket(str, Enum):
    AUTH = "auth"
    PASSWORD_RESET = "password_reset"
    TWO_FACTOR_VERIFY = "two_factor_verify"
    TWO_FACTOR_RESEND = "two_factor_resend"
    STEP_UP_AUTH = "step_up_auth"
    SENSITIVE_ACTION = "sensitive_action"
    TOKEN_VALIDATION = "token_validation"
    ADMIN_INVITE = "admin_invite"
    DEFAULT = "default"


class EndpointCategory(str, Enum):
    LOGIN = "login"
    PASSWORD_RESET_REQUEST = "password_reset_request"
    TWO_FACTOR_VERIFY = "two_factor_verify"
    TWO_FACTOR_SEND_CODE = "two_factor_send_code"
    STEP_UP = "step_up"
    ACCOUNT_SECURITY = "account_security"
    TOKEN_CHECK = "token_check"
    ADMIN_INVITE = "admin_invite"
    GENERAL = "general"


class StepUpMethod(str, Enum):
    PASSWORD = "password"
    PASSKEY = "passkey"


class SecurityEvent(str, Enum):
    LOGIN_SUCCESS = "auth.login.success"
    LOGIN_FAILED = "auth.login.failed"
    LOGIN_LOCKED = "auth.login.locked"
    LOGOUT = "auth.logout"
    TWO_FACTOR_CHALLENGE_SENT = "auth.2fa.challenge_sent"
    TWO_FACTOR_VERIFIED = "auth.2fa.verified"
    TWO_FACTOR_FAILED = "auth.2fa.failed"
    TOTP_ENABLED = "security.totp.enabled"
    TOTP_DISABLED = "security.totp.disabled"
    EMAIL_2FA_ENABLED = "security.email2fa.enabled"
    EMAIL_2FA_DISABLED = "security.email2fa.disabled"
    BACKUP_CODES_REGENERATED = "security.backup_codes.regenerated"
    BACKUP_CODE_USED = "security.backup_code.used"
    PASSKEY_REGISTERED = "security.passkey.registered"
    PASSKEY_DELETED = "security.passkey.deleted"
    PASSKEY_COUNTER_REGRESSION = "security.passkey.counter_regression"
    PASSWORD_CHANGED = "security.password.changed"
    PASSWORD_RESET_REQUESTED = "security.password.reset_requested"
    PASSWORD_RESET_COMPLETED = "security.password.reset_completed"
    EMAIL_CHANGE_REQUESTED = "security.email.change_requested"
    EMAIL_CHANGED = "security.email.changed"
    STEP_UP_SUCCEEDED = "security.step_up.succeeded"
    STEP_UP_FAILED = "security.step_up.failed"
    SESSION_REVOKED = "session.revoked"
    SESSIONS_INVALIDATED = "session.invalidated"
    USER_INVITED = "admin.user.invited"
    INVITE_ACCEPTED = "admin.invite.accepted"
    USER_DEACTIVATED = "admin.user.deactivated"
    ROLE_CHANGED = "admin.role.changed"
    ACCOUNT_COMPROMISE_REPORTED = "security.account.compromise_reported"


@dataclass(frozen=True)
class BucketLimit:
    points: int
    window_seconds: int


STEP_UP_GRACE_SECONDS = 10 * 60
STEP_UP_METHODS = frozenset(StepUpMethod)

STEP_UP_REQUIREMENTS: Mapping[SensitiveAction, bool] = MappingProxyType(
    {action: True for action in SensitiveAction}
)

SESSION_INVALIDATION_TRIGGERS: Mapping[InvalidationTrigger, InvalidationRule] = MappingProxyType(
    {
        InvalidationTrigger.PASSWORD_CHANGE: InvalidationRule.REVOKE_OTHERS,
        InvalidationTrigger.PASSWORD_RESET: InvalidationRule.REVOKE_ALL,
        InvalidationTrigger.EMAIL_CHANGE: InvalidationRule.REVOKE_OTHERS,
        InvalidationTrigger.TOTP_DISABLE: InvalidationRule.REVOKE_OTHERS,
        InvalidationTrigger.EMAIL_2FA_DISABLE: InvalidationRule.REVOKE_OTHERS,
        InvalidationTrigger.ACCOUNT_COMPROMISE: InvalidationRule.REVOKE_ALL,
        InvalidationTrigger.USER_DEACTIVATION: InvalidationRule.REVOKE_ALL,
        InvalidationTrigger.PASSKEY_DELETE_CRITICAL: InvalidationRule.REVOKE_OTHERS,
        InvalidationTrigger.ROLE_CHANGE: InvalidationRule.REVOKE_OTHERS,
        InvalidationTrigger.ROLE_PERMISSIONS_UPDATE: InvalidationRule.REVOKE_ALL,
        InvalidationTrigger.USER_APPS_UPDATE: InvalidationRule.REVOKE_OTHERS,
    }
)

BUCKET_LIMITS: Mapping[RateLimitBucket, BucketLimit] = MappingProxyType(
    {
        RateLimitBucket.AUTH: BucketLimit(5, 60),
        RateLimitBucket.PASSWORD_RESET: BucketLimit(3, 60),
        RateLimitBucket.TWO_FACTOR_VERIFY: BucketLimit(5, 60),
        RateLimitBucket.TWO_FACTOR_RESEND: BucketLimit(3, 30),
        RateLimitBucket.STEP_UP_AUTH: BucketLimit(5, 60),
        RateLimitBucket.SENSITIVE_ACTION: BucketLimit(10, 60),
        RateLimitBucket.TOKEN_VALIDATION: BucketLimit(10, 60),
        RateLimitBucket.ADMIN_INVITE: BucketLimit(10, 60),
        RateLimitBucket.DEFAULT: BucketLimit(60, 60),
    }
)

RATE_LIMIT_POLICY: Mapping[EndpointCategory, RateLimitBucket] = MappingProxyType(
    {
        EndpointCategory.LOGIN: RateLimitBucket.AUTH,
        EndpointCategory.PASSWORD_RESET_REQUEST: RateLimitBucket.PASSWORD_RESET,
        EndpointCategory.TWO_FACTOR_VERIFY: RateLimitBucket.TWO_FACTOR_VERIFY,
        EndpointCategory.TWO_FACTOR_SEND_CODE: RateLimitBucket.TWO_FACTOR_RESEND,
        EndpointCategory.STEP_UP: RateLimitBucket.STEP_UP_AUTH,
        EndpointCategory.ACCOUNT_SECURITY: RateLimitBucket.SENSITIVE_ACTION,
        EndpointCategory.TOKEN_CHECK: RateLimitBucket.TOKEN_VALIDATION,
        EndpointCategory.ADMIN_INVITE: RateLimitBucket.ADMIN_INVITE,
        EndpointCategory.GENERAL: RateLimitBucket.DEFAULT,
    }
)


def requires_step_up(action: SensitiveAction | str) -> bool:
    return STEP_UP_REQUIREMENTS[SensitiveAction(action)]


def invalidation_rule(trigger: InvalidationTrigger | str) -> InvalidationRule:
    return SESSION_INVALIDATION_TRIGGERS[InvalidationTrigger(trigger)]


def bucket_for(category: EndpointCategory | str) -> RateLimitBucket:
    return RATE_LIMIT_POLICY[EndpointCategory(category)]


def limit_for(bucket: RateLimitBucket | str) -> BucketLimit:
    return BUCKET_LIMITS[RateLimitBucket(bucket)]


def _check_total(table: Mapping, enum_cls: type[Enum], name: str) -> None:
    missing = [member.value for member in enum_cls if member not in table]
    if missing:
        raise PolicyConfigurationError(f"{name} is missing entries for: {', '.join(missing)}")


def validate_policy() -> None:
    """Raise ``PolicyConfigurationError`` if any table has a gap or a bad value."""
    _check_total(STEP_UP_REQUIREMENTS, SensitiveAction, "STEP_UP_REQUIREMENTS")
    _check_total(
        SESSION_INVALIDATION_TRIGGERS, InvalidationTrigger, "SESSION_INVALIDATION_TRIGGERS"
    )
    _check_total(BUCKET_LIMITS, RateLimitBucket, "BUCKET_LIMITS")
    _check_total(RATE_LIMIT_POLICY, EndpointCategory, "RATE_LIMIT_POLICY")
    for bucket, limit in BUCKET_LIMITS.items():
        if limit.points <= 0 or limit.window_seconds <= 0:
            raise PolicyConfigurationError(f"bucket {bucket.value} has a non-positive limit")
    for trigger, rule in SESSION_INVALIDATION_TRIGGERS.items():
        if not isinstance(rule, InvalidationRule):
            raise PolicyConfigurationError(f"trigger {trigger.value} maps to {rule!r}")


validate_policy()
