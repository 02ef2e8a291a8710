from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import secrets
import struct
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Union
from urllib.parse import quote, urlencode

from backoffice_auth.config import Settings
from backoffice_auth.logging import get_logger
from backoffice_auth.service.audit import AuditSink
from backoffice_auth.service.email import Notifier
from backoffice_auth.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from backoffice_auth.service.policy import (
    InvalidationTrigger,
    RateLimitBucket,
    SecurityEvent,
    SensitiveAction,
)
from backoffice_auth.service.rate_limit import RateLimiter
from backoffice_auth.service.security import SecretCipher
from backoffice_auth.service.sessions import SessionRegistry
from backoffice_auth.service.step_up import StepUpAuthenticator
from backoffice_auth.service.tokens import TokenService, TokenType
from backoffice_auth.storage.memory import MemoryStore
from backoffice_auth.storage.models import (
    BackupCodeRecord,
    TwoFactorSettings,
    User,
    UserSession,
    new_id,
)

logger = get_logger(__name__)

TOTP_DIGITS = 6
TOTP_PERIOD = 30
TOTP_WINDOW = 1

# No 0/O or 1/I so codes survive being read aloud or written down
BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


# ============================================================================
# TOTP (RFC 6238, HMAC-SHA1 for authenticator-app compatibility)
# ============================================================================


def generate_totp_secret() -> str:
    return base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")


def generate_totp(
    secret: str, timestamp: float, *, period: int = TOTP_PERIOD, digits: int = TOTP_DIGITS
) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = struct.pack(">Q", int(timestamp // period))
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    timestamp: float,
    *,
    period: int = TOTP_PERIOD,
    digits: int = TOTP_DIGITS,
    window: int = TOTP_WINDOW,
) -> bool:
    candidate = (code or "").replace(" ", "")
    if len(candidate) != digits or not candidate.isdigit():
        return False
    matched = False
    for step in range(-window, window + 1):
        generated = generate_totp(secret, timestamp + step * period, period=period, digits=digits)
        # Check every step so timing does not reveal which one matched
        if generated and hmac.compare_digest(generated, candidate):
            matched = True
    return matched


def build_otpauth_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}", safe=":@")
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_PERIOD,
        }
    )
    return f"otpauth://totp/{label}?{query}"


# ============================================================================
# Backup codes
# ============================================================================


def normalize_backup_code(code: str) -> str:
    return "".join(ch for ch in (code or "").upper() if ch not in " -")


def _hash_backup_code(salt: str, normalized: str) -> str:
    return hashlib.sha256(f"{salt}:{normalized}".encode()).hexdigest()


def generate_backup_codes(count: int, length: int) -> tuple[List[str], List[BackupCodeRecord]]:
    """Return the plaintext codes (shown once) and the records to persist."""
    plain: List[str] = []
    records: List[BackupCodeRecord] = []
    seen: set[str] = set()
    while len(plain) < count:
        raw = "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(length))
        if raw in seen:
            continue
        seen.add(raw)
        half = length // 2
        plain.append(f"{raw[:half]}-{raw[half:]}" if length >= 8 else raw)
        salt = secrets.token_hex(16)
        records.append(
            BackupCodeRecord(id=new_id(), salt=salt, code_hash=_hash_backup_code(salt, raw))
        )
    return plain, records


# ============================================================================
# Proofs
# ============================================================================


@dataclass(frozen=True)
class EmailCodeProof:
    code: str
    method: str = "email"


@dataclass(frozen=True)
class TotpCodeProof:
    code: str
    method: str = "totp"


@dataclass(frozen=True)
class BackupCodeProof:
    code: str
    method: str = "backup"


TwoFactorProof = Union[EmailCodeProof, TotpCodeProof, BackupCodeProof]

_PROOF_TYPES = {"email": EmailCodeProof, "totp": TotpCodeProof, "backup": BackupCodeProof}


def parse_proof(method: str, code: str) -> TwoFactorProof:
    proof_cls = _PROOF_TYPES.get((method or "").strip().lower())
    if proof_cls is None:
        raise ValidationError(
            "Unsupported verification method", detail={"field": "method"}
        )
    cleaned = (code or "").strip()
    if not cleaned or len(cleaned) > 64:
        raise ValidationError("Verification code is required", detail={"field": "code"})
    return proof_cls(code=cleaned)


@dataclass
class TotpSetup:
    secret: str
    otpauth_uri: str


@dataclass
class TwoFactorStatus:
    email_enabled: bool
    totp: str
    backup_codes_remaining: int
    preferred_method: Optional[str]
    available_methods: List[str]


@dataclass
class PendingTwoFactor:
    user_id: str
    email: str
    methods: List[str]


class TwoFactorService:
    """Email codes, TOTP and backup codes: enablement and verification."""

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        *,
        tokens: TokenService,
        rate_limiter: RateLimiter,
        sessions: SessionRegistry,
        step_up: StepUpAuthenticator,
        cipher: SecretCipher,
        notifier: Notifier,
        audit: AuditSink,
        failure_delay: Optional[Callable[[], Awaitable[None]]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.rate_limiter = rate_limiter
        self.sessions = sessions
        self.step_up = step_up
        self.cipher = cipher
        self.notifier = notifier
        self.audit = audit
        self._failure_delay = failure_delay
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(timezone.utc)

    def _user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def _settings_for(self, user_id: str) -> TwoFactorSettings:
        return self._user(user_id).two_factor

    # ------------------------------------------------------------------
    # state
    # ------------------------------------------------------------------

    def available_methods(self, user_id: str) -> List[str]:
        state = self.store.get_two_factor(user_id)
        if state is None:
            return []
        methods = []
        if state.totp_enabled:
            methods.append("totp")
        if state.email_enabled:
            methods.append("email")
        if state.preferred_method in methods:
            methods.remove(state.preferred_method)
            methods.insert(0, state.preferred_method)
        if state.totp_enabled and state.remaining_backup_codes:
            methods.append("backup")
        return methods

    def status(self, user_id: str) -> TwoFactorStatus:
        state = self._settings_for(user_id)
        return TwoFactorStatus(
            email_enabled=state.email_enabled,
            totp=state.totp_state,
            backup_codes_remaining=state.remaining_backup_codes,
            preferred_method=state.preferred_method,
            available_methods=self.available_methods(user_id),
        )

    def set_preferred_method(self, user_id: str, method: str) -> None:
        state = self._settings_for(user_id)
        enabled = {"email": state.email_enabled, "totp": state.totp_enabled}
        if not enabled.get(method):
            raise ValidationError(
                "Preferred method must be an enabled factor", detail={"field": "method"}
            )
        self.store.update_two_factor(user_id, preferred_method=method)

    def _fallback_preference(self, state: TwoFactorSettings, removed: str) -> Optional[str]:
        if state.preferred_method != removed:
            return state.preferred_method
        if removed != "totp" and state.totp_enabled:
            return "totp"
        if removed != "email" and state.email_enabled:
            return "email"
        return None

    def _require_step_up_if_protected(
        self, session: UserSession, action: SensitiveAction, other_factor_enabled: bool
    ) -> None:
        if other_factor_enabled:
            self.step_up.require(session, action)

    async def _dispatch(self, func, *args) -> None:
        delivered = await asyncio.to_thread(func, *args)
        if not delivered:
            logger.warning("two_factor_email_not_delivered", notifier=getattr(func, "__name__", None))

    def _security_alert(self, user_id: str, title: str, message: str) -> None:
        user = self._user(user_id)
        if not self.notifier.send_security_alert(user.email, title, message):
            logger.warning("two_factor_alert_not_delivered", user_id=user_id, title=title)

    # ------------------------------------------------------------------
    # email codes
    # ------------------------------------------------------------------

    async def send_email_code(self, user_id: str) -> None:
        """Issue and mail a fresh sign-in code; replaces any earlier one."""
        await self.rate_limiter.enforce(RateLimitBucket.TWO_FACTOR_RESEND, user_id)
        user = self._user(user_id)
        issued = self.tokens.issue(TokenType.TWO_FACTOR_EMAIL, user.id)
        await self._dispatch(
            self.notifier.send_two_factor_code,
            user.email,
            issued.raw,
            self.tokens.describe_expiry(TokenType.TWO_FACTOR_EMAIL),
        )
        self.audit.record(SecurityEvent.TWO_FACTOR_CHALLENGE_SENT, user_id=user.id)

    async def start_email_enable(self, session: UserSession) -> None:
        state = self._settings_for(session.user_id)
        if state.email_enabled:
            raise ConflictError("Email two-factor authentication is already enabled")
        self._require_step_up_if_protected(
            session, SensitiveAction.EMAIL_2FA_ENABLE, state.totp_enabled
        )
        await self.send_email_code(session.user_id)

    def confirm_email_enable(self, session: UserSession, code: str) -> TwoFactorSettings:
        state = self._settings_for(session.user_id)
        if state.email_enabled:
            raise ConflictError("Email two-factor authentication is already enabled")
        self._require_step_up_if_protected(
            session, SensitiveAction.EMAIL_2FA_ENABLE, state.totp_enabled
        )
        result = self.tokens.consume(code, TokenType.TWO_FACTOR_EMAIL, session.user_id)
        if not result.valid:
            raise InvalidTokenError("Invalid verification code")
        updated = self.store.update_two_factor(
            session.user_id,
            email_enabled=True,
            preferred_method=state.preferred_method or "email",
        )
        self.audit.record(SecurityEvent.EMAIL_2FA_ENABLED, user_id=session.user_id)
        self._security_alert(
            session.user_id,
            "Email verification codes turned on",
            "Sign-ins to your account now ask for a code sent to this address.",
        )
        return updated

    def disable_email(self, session: UserSession) -> int:
        """Turn off email codes; returns how many other sessions were revoked."""
        state = self._settings_for(session.user_id)
        if not state.email_enabled:
            raise ConflictError("Email two-factor authentication is not enabled")
        self.step_up.require(session, SensitiveAction.EMAIL_2FA_DISABLE)
        self.store.update_two_factor(
            session.user_id,
            email_enabled=False,
            preferred_method=self._fallback_preference(state, "email"),
        )
        self.audit.record(SecurityEvent.EMAIL_2FA_DISABLED, user_id=session.user_id)
        self._security_alert(
            session.user_id,
            "Email verification codes turned off",
            "Sign-ins no longer ask for an emailed code. Other devices were signed out.",
        )
        return self.sessions.apply_invalidation(
            InvalidationTrigger.EMAIL_2FA_DISABLE, session.user_id, session.id
        )

    # ------------------------------------------------------------------
    # TOTP
    # ------------------------------------------------------------------

    def begin_totp_setup(self, session: UserSession) -> TotpSetup:
        user = self._user(session.user_id)
        state = user.two_factor
        if state.totp_enabled:
            raise ConflictError("Authenticator app is already enabled")
        self._require_step_up_if_protected(
            session, SensitiveAction.TOTP_ENABLE, state.email_enabled
        )
        secret = generate_totp_secret()
        self.store.update_two_factor(
            user.id, totp_pending_secret=self.cipher.encrypt(secret)
        )
        logger.info("totp_setup_started", user_id=user.id)
        return TotpSetup(
            secret=secret,
            otpauth_uri=build_otpauth_uri(secret, user.email, self.settings.totp_issuer),
        )

    def confirm_totp_setup(self, session: UserSession, code: str) -> List[str]:
        """Commit the pending secret once a code from it checks out.

        Returns the first set of backup codes in plaintext.
        """
        state = self._settings_for(session.user_id)
        if state.totp_enabled:
            raise ConflictError("Authenticator app is already enabled")
        self._require_step_up_if_protected(
            session, SensitiveAction.TOTP_ENABLE, state.email_enabled
        )
        pending = (
            self.cipher.decrypt(state.totp_pending_secret)
            if state.totp_pending_secret
            else None
        )
        if not pending:
            raise ValidationError(
                "Authenticator setup has not been started",
                detail={"reason": "totp_setup_not_started"},
            )
        if not verify_totp(pending, code, self._now().timestamp()):
            logger.info("totp_setup_code_rejected", user_id=session.user_id)
            raise InvalidTokenError("Invalid verification code")
        self.store.update_two_factor(
            session.user_id,
            totp_enabled=True,
            totp_secret=state.totp_pending_secret,
            totp_pending_secret=None,
            preferred_method=state.preferred_method or "totp",
        )
        codes = self._replace_backup_codes(session.user_id)
        self.audit.record(SecurityEvent.TOTP_ENABLED, user_id=session.user_id)
        self._security_alert(
            session.user_id,
            "Authenticator app added",
            "An authenticator app is now required to sign in to your account.",
        )
        return codes

    def disable_totp(self, session: UserSession) -> int:
        state = self._settings_for(session.user_id)
        if not state.totp_enabled:
            raise ConflictError("Authenticator app is not enabled")
        self.step_up.require(session, SensitiveAction.TOTP_DISABLE)
        self.store.update_two_factor(
            session.user_id,
            totp_enabled=False,
            totp_secret=None,
            totp_pending_secret=None,
            backup_codes=[],
            preferred_method=self._fallback_preference(state, "totp"),
        )
        self.audit.record(SecurityEvent.TOTP_DISABLED, user_id=session.user_id)
        self._security_alert(
            session.user_id,
            "Authenticator app removed",
            "Your authenticator app and backup codes were removed. Other devices were signed out.",
        )
        return self.sessions.apply_invalidation(
            InvalidationTrigger.TOTP_DISABLE, session.user_id, session.id
        )

    # ------------------------------------------------------------------
    # backup codes
    # ------------------------------------------------------------------

    def _replace_backup_codes(self, user_id: str) -> List[str]:
        plain, records = generate_backup_codes(
            self.settings.backup_code_count, self.settings.backup_code_length
        )
        self.store.replace_backup_codes(user_id, records)
        return plain

    def remaining_backup_codes(self, user_id: str) -> int:
        return self._settings_for(user_id).remaining_backup_codes

    def regenerate_backup_codes(self, session: UserSession) -> List[str]:
        self.step_up.require(session, SensitiveAction.BACKUP_CODES_REGENERATE)
        if not self._settings_for(session.user_id).totp_enabled:
            raise ValidationError(
                "Backup codes require an authenticator app",
                detail={"reason": "totp_not_enabled"},
            )
        codes = self._replace_backup_codes(session.user_id)
        self.audit.record(
            SecurityEvent.BACKUP_CODES_REGENERATED, user_id=session.user_id, count=len(codes)
        )
        return codes

    def _consume_backup_code(self, user_id: str, state: TwoFactorSettings, code: str) -> bool:
        normalized = normalize_backup_code(code)
        if len(normalized) != self.settings.backup_code_length:
            return False
        match: Optional[BackupCodeRecord] = None
        for record in state.backup_codes:
            candidate = _hash_backup_code(record.salt, normalized)
            if hmac.compare_digest(candidate, record.code_hash) and record.used_at is None:
                match = record
        if match is None:
            return False
        if not self.store.mark_backup_code_used(user_id, match.id, self._now()):
            return False
        self.audit.record(
            SecurityEvent.BACKUP_CODE_USED,
            user_id=user_id,
            remaining=self.remaining_backup_codes(user_id),
        )
        return True

    # ------------------------------------------------------------------
    # login verification
    # ------------------------------------------------------------------

    def _check_proof(self, user_id: str, proof: TwoFactorProof) -> bool:
        state = self.store.get_two_factor(user_id)
        if state is None:
            return False
        if isinstance(proof, EmailCodeProof):
            if not state.email_enabled:
                return False
            return self.tokens.consume(proof.code, TokenType.TWO_FACTOR_EMAIL, user_id).valid
        if isinstance(proof, TotpCodeProof):
            if not state.totp_enabled or not state.totp_secret:
                return False
            secret = self.cipher.decrypt(state.totp_secret)
            return bool(secret) and verify_totp(secret, proof.code, self._now().timestamp())
        if isinstance(proof, BackupCodeProof):
            if not state.totp_enabled:
                return False
            return self._consume_backup_code(user_id, state, proof.code)
        raise TypeError(f"unhandled two-factor proof: {type(proof).__name__}")

    async def verify_login(
        self, user_id: str, proof: TwoFactorProof, session_id: Optional[str] = None
    ) -> str:
        """Check a second factor; every attempt spends a rate-limit point first.

        Every failure cause surfaces as the same ``AuthenticationError``
        after the jittered failure delay. Returns the method that succeeded.
        """
        await self.rate_limiter.enforce(RateLimitBucket.TWO_FACTOR_VERIFY, user_id)
        if not self._check_proof(user_id, proof):
            logger.info("two_factor_rejected", user_id=user_id, method=proof.method)
            self.audit.record(SecurityEvent.TWO_FACTOR_FAILED, user_id=user_id, method=proof.method)
            if self._failure_delay is not None:
                await self._failure_delay()
            raise AuthenticationError("Invalid verification code")
        if session_id:
            self.sessions.mark_authenticated(session_id)
        self.audit.record(SecurityEvent.TWO_FACTOR_VERIFIED, user_id=user_id, method=proof.method)
        return proof.method

    def disable_all(self, user_id: str) -> None:
        """Administrative reset of every factor."""
        self.store.update_two_factor(
            user_id,
            email_enabled=False,
            totp_enabled=False,
            totp_secret=None,
            totp_pending_secret=None,
            backup_codes=[],
            preferred_method=None,
        )
        logger.info("two_factor_reset", user_id=user_id)

    # ------------------------------------------------------------------
    # pending sign-in between password and second factor
    # ------------------------------------------------------------------

    def create_pending_token(self, user: User) -> str:
        body = {
            "user_id": user.id,
            "email": user.email,
            "methods": self.available_methods(user.id),
            "nonce": secrets.token_hex(8),
        }
        return self.cipher.encrypt(json.dumps(body, separators=(",", ":")))

    def read_pending_token(self, token: str) -> PendingTwoFactor:
        raw = self.cipher.decrypt(token or "", ttl=self.settings.pending_two_factor_ttl_seconds)
        if raw is None:
            raise InvalidTokenError("Sign-in attempt expired. Please sign in again.")
        try:
            data = json.loads(raw)
            return PendingTwoFactor(
                user_id=str(data["user_id"]),
                email=str(data["email"]),
                methods=list(data.get("methods") or []),
            )
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("pending_two_factor_malformed")
            raise InvalidTokenError("Sign-in attempt expired. Please sign in again.") from exc
