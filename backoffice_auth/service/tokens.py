from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Optional

from backoffice_auth.config import Settings
from backoffice_auth.logging import get_logger
from backoffice_auth.service.errors import InvalidTokenError
from backoffice_auth.service.security import (
    generate_secure_code,
    generate_secure_token,
    hash_verification_token,
)
from backoffice_auth.storage.errors import ConstraintViolation
from backoffice_auth.storage.memory import MemoryStore
from backoffice_auth.storage.models import Token, new_id

logger = get_logger(__name__)


class TokenType(str, Enum):
    PASSWORD_RESET = "password_reset"
    USER_INVITE = "user_invite"
    EMAIL_CHANGE = "email_change"
    EMAIL_VERIFICATION = "email_verification"
    TWO_FACTOR_EMAIL = "two_factor_email"


# Six-digit codes typed by hand; hashed with the owning user as scope
CODE_TOKEN_TYPES = frozenset(
    {TokenType.EMAIL_CHANGE, TokenType.EMAIL_VERIFICATION, TokenType.TWO_FACTOR_EMAIL}
)

_ISSUE_ATTEMPTS = 5


@dataclass
class IssuedToken:
    token: Token
    raw: str

    @property
    def expires_at(self) -> datetime:
        return self.token.expires_at


@dataclass
class TokenCheck:
    valid: bool
    user_id: Optional[str] = None
    payload: Dict = field(default_factory=dict)
    token_id: Optional[str] = None
    reason: Optional[str] = None


class TokenService:
    """Hashed, expiring, single-use verification tokens.

    Raw values leave this service exactly once, from ``issue``. Lookups go
    through the HMAC of the raw value, and consumption is a conditional
    mark in the store so concurrent redemptions cannot both succeed.
    """

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(timezone.utc)

    def expiry_for(self, token_type: TokenType | str) -> timedelta:
        token_type = TokenType(token_type)
        if token_type == TokenType.PASSWORD_RESET:
            return timedelta(minutes=self.settings.password_reset_ttl_minutes)
        if token_type == TokenType.USER_INVITE:
            return timedelta(days=self.settings.invite_ttl_days)
        return timedelta(minutes=self.settings.verification_code_ttl_minutes)

    def describe_expiry(self, token_type: TokenType | str) -> str:
        seconds = int(self.expiry_for(token_type).total_seconds())
        if seconds % 86400 == 0:
            amount, unit = seconds // 86400, "day"
        elif seconds % 3600 == 0:
            amount, unit = seconds // 3600, "hour"
        else:
            amount, unit = max(1, seconds // 60), "minute"
        return f"{amount} {unit}{'' if amount == 1 else 's'}"

    def _hash(self, raw: str, token_type: TokenType, user_id: Optional[str]) -> str:
        scope = user_id if token_type in CODE_TOKEN_TYPES else None
        return hash_verification_token(
            self.settings.signing_secret, raw.strip(), token_type.value, scope
        )

    def issue(
        self,
        token_type: TokenType | str,
        user_id: Optional[str],
        *,
        ttl: Optional[timedelta] = None,
        payload: Optional[Dict] = None,
    ) -> IssuedToken:
        token_type = TokenType(token_type)
        if token_type in CODE_TOKEN_TYPES and not user_id:
            raise ValueError(f"{token_type.value} tokens must belong to a user")
        if user_id:
            replaced = self.store.delete_unused_tokens(token_type.value, user_id=user_id)
            if replaced:
                logger.info(
                    "token_previous_invalidated",
                    token_type=token_type.value,
                    user_id=user_id,
                    count=replaced,
                )
        now = self._now()
        expires_at = now + (ttl or self.expiry_for(token_type))
        for _ in range(_ISSUE_ATTEMPTS):
            raw = (
                generate_secure_code(6)
                if token_type in CODE_TOKEN_TYPES
                else generate_secure_token(32)
            )
            token = Token(
                id=new_id(),
                type=token_type.value,
                token_hash=self._hash(raw, token_type, user_id),
                user_id=user_id,
                expires_at=expires_at,
                created_at=now,
            )
            try:
                stored = self.store.create_token(token, payload)
            except ConstraintViolation:
                # Short codes can repeat a consumed one still awaiting cleanup
                continue
            logger.info(
                "token_issued",
                token_type=token_type.value,
                token_id=stored.id,
                user_id=user_id,
            )
            return IssuedToken(token=stored, raw=raw)
        raise RuntimeError("Unable to issue a unique token")

    def issue_email_change(self, user_id: str, new_email: str) -> IssuedToken:
        return self.issue(
            TokenType.EMAIL_CHANGE,
            user_id,
            payload={"new_email": new_email.strip().lower()},
        )

    def issue_invite(
        self, email: str, invited_by: str, role_id: Optional[str] = None
    ) -> IssuedToken:
        normalized = email.strip().lower()
        self.store.delete_unused_tokens(TokenType.USER_INVITE.value, email=normalized)
        return self.issue(
            TokenType.USER_INVITE,
            None,
            payload={"email": normalized, "invited_by": invited_by, "role_id": role_id},
        )

    def _diagnose_missing(self, raw: str, expected: TokenType, user_id: Optional[str]) -> str:
        for other in TokenType:
            if other == expected:
                continue
            if self.store.find_token_by_hash(self._hash(raw, other, user_id)):
                return "wrong_type"
        return "not_found"

    def _check(
        self, raw: str, token_type: TokenType, user_id: Optional[str]
    ) -> tuple[Optional[Token], Optional[str]]:
        if not raw or not raw.strip():
            return None, "not_found"
        if token_type in CODE_TOKEN_TYPES and not user_id:
            return None, "not_found"
        token = self.store.find_token_by_hash(self._hash(raw, token_type, user_id))
        if token is None:
            return None, self._diagnose_missing(raw, token_type, user_id)
        if token.type != token_type.value:
            return token, "wrong_type"
        if user_id and token.user_id and token.user_id != user_id:
            return token, "wrong_user"
        if token.used_at is not None:
            return token, "consumed"
        if token.expires_at <= self._now():
            return token, "expired"
        return token, None

    def _rejected(
        self, event: str, token_type: TokenType, reason: str, token: Optional[Token]
    ) -> TokenCheck:
        logger.warning(
            event,
            token_type=token_type.value,
            reason=reason,
            token_id=token.id if token else None,
        )
        return TokenCheck(valid=False, reason=reason, token_id=token.id if token else None)

    def validate(
        self, raw: str, token_type: TokenType | str, user_id: Optional[str] = None
    ) -> TokenCheck:
        """Read-only check; does not mark the token used."""
        token_type = TokenType(token_type)
        token, reason = self._check(raw, token_type, user_id)
        if reason or token is None:
            return self._rejected("token_validate_rejected", token_type, reason or "not_found", token)
        return TokenCheck(
            valid=True,
            user_id=token.user_id,
            payload=self.store.get_token_payload(token.id),
            token_id=token.id,
        )

    def consume(
        self, raw: str, token_type: TokenType | str, user_id: Optional[str] = None
    ) -> TokenCheck:
        token_type = TokenType(token_type)
        token, reason = self._check(raw, token_type, user_id)
        if reason or token is None:
            return self._rejected("token_consume_rejected", token_type, reason or "not_found", token)
        if not self.store.consume_token(token.id, self._now()):
            # Lost a race with another redemption, or expired in between
            _, late_reason = self._check(raw, token_type, user_id)
            return self._rejected(
                "token_consume_rejected", token_type, late_reason or "consumed", token
            )
        logger.info("token_consumed", token_type=token_type.value, token_id=token.id)
        return TokenCheck(
            valid=True,
            user_id=token.user_id,
            payload=self.store.get_token_payload(token.id),
            token_id=token.id,
        )

    def require(
        self, raw: str, token_type: TokenType | str, user_id: Optional[str] = None
    ) -> TokenCheck:
        """Consume or raise the uniform ``InvalidTokenError``."""
        result = self.consume(raw, token_type, user_id)
        if not result.valid:
            raise InvalidTokenError()
        return result

    def cleanup_expired(self, token_type: TokenType | str | None = None) -> int:
        type_value = TokenType(token_type).value if token_type else None
        removed = self.store.delete_expired_tokens(self._now(), type_value)
        if removed:
            logger.info("tokens_cleaned_up", token_type=type_value, count=removed)
        return removed
