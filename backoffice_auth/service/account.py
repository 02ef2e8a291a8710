from __future__ import annotations

import asyncio
import hashlib
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from backoffice_auth.config import Settings
from backoffice_auth.logging import get_logger
from backoffice_auth.service.audit import AuditSink
from backoffice_auth.service.capability import CapabilityPurpose, CapabilityTokens
from backoffice_auth.service.credentials import PasskeyService, PasswordVerifier
from backoffice_auth.service.email import Notifier
from backoffice_auth.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidTokenError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from backoffice_auth.service.login_history import LoginHistory
from backoffice_auth.service.login_protection import LoginProtection
from backoffice_auth.service.policy import (
    InvalidationTrigger,
    RateLimitBucket,
    SecurityEvent,
    SensitiveAction,
)
from backoffice_auth.service.rate_limit import RateLimiter
from backoffice_auth.service.sessions import SessionRegistry
from backoffice_auth.service.step_up import StepUpAuthenticator
from backoffice_auth.service.tokens import TokenService, TokenType
from backoffice_auth.service.two_factor import TwoFactorProof, TwoFactorService
from backoffice_auth.storage.errors import ConstraintViolation
from backoffice_auth.storage.memory import MemoryStore
from backoffice_auth.storage.models import DeviceInfo, PasskeyCredential, Token, User, UserSession

logger = get_logger(__name__)

LOGIN_FAILED_MESSAGE = "Invalid email or password"
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class LoginResult:
    session: Optional[UserSession] = None
    pending_token: Optional[str] = None
    methods: List[str] = field(default_factory=list)

    @property
    def requires_two_factor(self) -> bool:
        return self.session is None


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()


def _normalize_email(email: str) -> str:
    normalized = (email or "").strip().lower()
    if not _EMAIL_RE.match(normalized) or len(normalized) > 254:
        raise ValidationError("Invalid email address", detail={"field": "email"})
    return normalized


class AccountSecurityService:
    """Account-level flows that tie the auth components together.

    This is where the policy tables are consulted: each sensitive mutation
    asks the step-up authenticator first and reports its invalidation
    trigger to the session registry afterwards.
    """

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        *,
        passwords: PasswordVerifier,
        passkeys: PasskeyService,
        capabilities: CapabilityTokens,
        tokens: TokenService,
        two_factor: TwoFactorService,
        sessions: SessionRegistry,
        step_up: StepUpAuthenticator,
        rate_limiter: RateLimiter,
        login_protection: LoginProtection,
        login_history: LoginHistory,
        notifier: Notifier,
        audit: AuditSink,
    ) -> None:
        self.store = store
        self.settings = settings
        self.passwords = passwords
        self.passkeys = passkeys
        self.capabilities = capabilities
        self.tokens = tokens
        self.two_factor = two_factor
        self.sessions = sessions
        self.step_up = step_up
        self.rate_limiter = rate_limiter
        self.login_protection = login_protection
        self.login_history = login_history
        self.notifier = notifier
        self.audit = audit

    async def _notify(self, func, *args: Any) -> None:
        delivered = await asyncio.to_thread(func, *args)
        if not delivered:
            logger.warning(
                "account_notification_not_delivered", kind=getattr(func, "__name__", None)
            )

    async def _alert(self, user: User, title: str, message: str) -> None:
        await self._notify(self.notifier.send_security_alert, user.email, title, message)

    def _user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    # ------------------------------------------------------------------
    # sign-in
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str, device: DeviceInfo) -> LoginResult:
        normalized = (email or "").strip().lower()
        ip = device.ip_address or "unknown"
        await self.rate_limiter.enforce(RateLimitBucket.AUTH, f"{ip}:{normalized}")

        user = self.store.get_user_by_email(normalized) if normalized else None
        if await self.login_protection.check_lockout(normalized):
            logger.info("login_blocked_locked")
            self.audit.record(SecurityEvent.LOGIN_LOCKED, email_hash=_email_hash(normalized))
            await self.login_history.record_attempt(
                success=False,
                method="password",
                device=device,
                user_id=user.id if user else None,
                identifier=normalized,
                failure_reason="account_locked",
            )
            await self.passwords.failure_delay()
            raise AuthenticationError(LOGIN_FAILED_MESSAGE)

        verified = self.passwords.verify_password(user.id if user else None, password or "")
        if not verified or not user or not user.is_active:
            status = await self.login_protection.record_failure(normalized)
            if status.just_locked and user:
                await self._notify(
                    self.notifier.send_lockout_notice,
                    user.email,
                    self.settings.lockout_duration_seconds // 60,
                )
            reason = "inactive" if verified and user else "bad_credentials"
            self.audit.record(
                SecurityEvent.LOGIN_FAILED, user_id=user.id if user else None, reason=reason
            )
            await self.login_history.record_attempt(
                success=False,
                method="password",
                device=device,
                user_id=user.id if user else None,
                identifier=normalized,
                failure_reason="account_inactive" if reason == "inactive" else "invalid_credentials",
            )
            await self.passwords.failure_delay()
            raise AuthenticationError(LOGIN_FAILED_MESSAGE)

        await self.login_protection.clear_attempts(normalized)
        methods = self.two_factor.available_methods(user.id)
        if methods:
            if methods[0] == "email":
                try:
                    await self.two_factor.send_email_code(user.id)
                except RateLimitedError:
                    # An earlier code is still valid until it expires
                    logger.info("login_code_throttled", user_id=user.id)
            logger.info("login_two_factor_pending", user_id=user.id, methods=methods)
            return LoginResult(
                pending_token=self.two_factor.create_pending_token(user), methods=methods
            )

        session = await self.sessions.create(user.id, device)
        self.audit.record(SecurityEvent.LOGIN_SUCCESS, user_id=user.id, method="password")
        await self.login_history.record_attempt(
            success=True,
            method="password",
            device=device,
            user_id=user.id,
            identifier=normalized,
            session=session,
        )
        return LoginResult(session=session)

    async def resend_login_code(self, pending_token: str) -> None:
        pending = self.two_factor.read_pending_token(pending_token)
        if "email" not in pending.methods:
            raise ValidationError("Email codes are not enabled for this account")
        await self.two_factor.send_email_code(pending.user_id)

    async def complete_two_factor_login(
        self, pending_token: str, proof: TwoFactorProof, device: DeviceInfo
    ) -> UserSession:
        pending = self.two_factor.read_pending_token(pending_token)
        try:
            await self.two_factor.verify_login(pending.user_id, proof)
        except AuthenticationError:
            await self.login_history.record_attempt(
                success=False,
                method=proof.method,
                device=device,
                user_id=pending.user_id,
                failure_reason="invalid_code",
            )
            raise
        user = self.store.get_user(pending.user_id)
        if not user or not user.is_active:
            await self.login_history.record_attempt(
                success=False,
                method=proof.method,
                device=device,
                user_id=pending.user_id,
                failure_reason="account_inactive",
            )
            raise AuthenticationError("Invalid verification code")
        session = await self.sessions.create(user.id, device)
        self.audit.record(SecurityEvent.LOGIN_SUCCESS, user_id=user.id, method=proof.method)
        await self.login_history.record_attempt(
            success=True,
            method=proof.method,
            device=device,
            user_id=user.id,
            identifier=user.email,
            session=session,
        )
        return session

    async def complete_passkey_login(
        self, passkey_token: str, device: DeviceInfo
    ) -> UserSession:
        try:
            payload = await self.capabilities.consume(
                passkey_token, CapabilityPurpose.PASSKEY_SIGN_IN
            )
        except InvalidTokenError:
            await self.login_history.record_attempt(
                success=False, method="passkey", device=device, failure_reason="invalid_passkey"
            )
            raise
        user = self.store.get_user(payload["user_id"])
        if not user or not user.is_active:
            await self.login_history.record_attempt(
                success=False,
                method="passkey",
                device=device,
                user_id=payload["user_id"],
                failure_reason="account_inactive",
            )
            raise AuthenticationError("Passkey verification failed")
        session = await self.sessions.create(user.id, device)
        self.audit.record(SecurityEvent.LOGIN_SUCCESS, user_id=user.id, method="passkey")
        await self.login_history.record_attempt(
            success=True,
            method="passkey",
            device=device,
            user_id=user.id,
            identifier=user.email,
            session=session,
        )
        return session

    def logout(self, session: UserSession) -> None:
        self.sessions.revoke(session.id, "logout")
        self.audit.record(SecurityEvent.LOGOUT, user_id=session.user_id, session_id=session.id)

    # ------------------------------------------------------------------
    # passwords
    # ------------------------------------------------------------------

    async def change_password(
        self, session: UserSession, current_password: str, new_password: str
    ) -> int:
        """Change the password and sign out every other session."""
        self.step_up.require(session, SensitiveAction.PASSWORD_CHANGE)
        await self.rate_limiter.enforce(RateLimitBucket.SENSITIVE_ACTION, session.user_id)
        if not self.passwords.verify_password(session.user_id, current_password or ""):
            await self.passwords.failure_delay()
            raise AuthenticationError("Invalid credentials")
        if current_password == new_password:
            raise ValidationError(
                "New password must differ from the current one",
                detail={"field": "new_password"},
            )
        self.passwords.set_password(session.user_id, new_password)
        revoked = self.sessions.apply_invalidation(
            InvalidationTrigger.PASSWORD_CHANGE, session.user_id, session.id
        )
        self.audit.record(SecurityEvent.PASSWORD_CHANGED, user_id=session.user_id)
        await self._alert(
            self._user(session.user_id),
            "Your password was changed",
            "The password for your account was just changed. Other devices were signed out.",
        )
        return revoked

    async def request_password_reset(self, email: str, ip: str) -> None:
        """Mail a reset link; unknown or inactive accounts get the same silence."""
        normalized = (email or "").strip().lower()
        await self.rate_limiter.enforce(RateLimitBucket.PASSWORD_RESET, f"{ip}:{normalized}")
        user = self.store.get_user_by_email(normalized) if normalized else None
        if not user or not user.is_active:
            logger.info("password_reset_unknown_account", email_hash=_email_hash(normalized))
            return
        issued = self.tokens.issue(TokenType.PASSWORD_RESET, user.id)
        await self._notify(
            self.notifier.send_password_reset,
            user.email,
            issued.raw,
            self.tokens.describe_expiry(TokenType.PASSWORD_RESET),
        )
        self.audit.record(SecurityEvent.PASSWORD_RESET_REQUESTED, user_id=user.id)

    async def complete_password_reset(
        self, raw_token: str, new_password: str, *, ip: Optional[str] = None
    ) -> int:
        """Set a new password from a reset link and sign out every session."""
        if ip:
            await self.rate_limiter.enforce(RateLimitBucket.TOKEN_VALIDATION, ip)
        self.passwords.check_policy(new_password)
        result = self.tokens.require(raw_token, TokenType.PASSWORD_RESET)
        user = self._user(result.user_id)
        self.passwords.set_password(user.id, new_password)
        revoked = self.sessions.apply_invalidation(InvalidationTrigger.PASSWORD_RESET, user.id)
        await self.login_protection.unlock(user.email)
        self.audit.record(SecurityEvent.PASSWORD_RESET_COMPLETED, user_id=user.id)
        await self._alert(
            user,
            "Your password was reset",
            "The password for your account was reset and all sessions were signed out.",
        )
        return revoked

    # ------------------------------------------------------------------
    # email change
    # ------------------------------------------------------------------

    async def initiate_email_change(self, session: UserSession, new_email: str) -> Token:
        self.step_up.require(session, SensitiveAction.EMAIL_CHANGE_INITIATE)
        await self.rate_limiter.enforce(RateLimitBucket.SENSITIVE_ACTION, session.user_id)
        normalized = _normalize_email(new_email)
        user = self._user(session.user_id)
        if normalized == user.email:
            raise ValidationError(
                "New email must differ from the current one", detail={"field": "email"}
            )
        if self.store.get_user_by_email(normalized):
            raise ConflictError("Email already in use", detail={"field": "email"})
        issued = self.tokens.issue_email_change(user.id, normalized)
        await self._notify(
            self.notifier.send_email_change_code,
            normalized,
            issued.raw,
            self.tokens.describe_expiry(TokenType.EMAIL_CHANGE),
        )
        self.audit.record(SecurityEvent.EMAIL_CHANGE_REQUESTED, user_id=user.id)
        return issued.token

    async def verify_email_change(self, session: UserSession, code: str) -> int:
        self.step_up.require(session, SensitiveAction.EMAIL_CHANGE_VERIFY)
        await self.rate_limiter.enforce(RateLimitBucket.TOKEN_VALIDATION, session.user_id)
        result = self.tokens.require(code, TokenType.EMAIL_CHANGE, session.user_id)
        previous = self._user(session.user_id)
        try:
            updated = self.store.update_user_email(session.user_id, result.payload["new_email"])
        except ConstraintViolation as exc:
            raise ConflictError("Email already in use", detail={"field": "email"}) from exc
        revoked = self.sessions.apply_invalidation(
            InvalidationTrigger.EMAIL_CHANGE, updated.id, session.id
        )
        self.audit.record(SecurityEvent.EMAIL_CHANGED, user_id=updated.id)
        await self._alert(
            previous,
            "Your account email was changed",
            f"Your sign-in email is now {updated.email}.",
        )
        return revoked

    # ------------------------------------------------------------------
    # passkeys
    # ------------------------------------------------------------------

    def register_passkey_options(
        self, session: UserSession, name: Optional[str] = None
    ) -> Dict[str, Any]:
        self.step_up.require(session, SensitiveAction.PASSKEY_REGISTER)
        user = self._user(session.user_id)
        return self.passkeys.generate_registration_options(user.id, user.email, name)

    def register_passkey(
        self,
        session: UserSession,
        response: Dict[str, Any],
        device_name: Optional[str] = None,
    ) -> PasskeyCredential:
        self.step_up.require(session, SensitiveAction.PASSKEY_REGISTER)
        return self.passkeys.verify_registration(session.user_id, response, device_name)

    def delete_passkey(self, session: UserSession, passkey_id: str) -> int:
        self.step_up.require(session, SensitiveAction.PASSKEY_DELETE)
        self.passkeys.delete_passkey(session.user_id, passkey_id)
        return self.sessions.apply_invalidation(
            InvalidationTrigger.PASSKEY_DELETE_CRITICAL, session.user_id, session.id
        )

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------

    async def revoke_session(self, session: UserSession, target_id: str) -> bool:
        await self.rate_limiter.enforce(RateLimitBucket.SENSITIVE_ACTION, session.user_id)
        target = self.sessions.get(target_id)
        if not target or target.user_id != session.user_id:
            raise NotFoundError("Session not found")
        return self.sessions.revoke(target_id, "user_revoked")

    def revoke_other_sessions(self, session: UserSession) -> int:
        self.step_up.require(session, SensitiveAction.SESSION_REVOKE_OTHER)
        return self.sessions.revoke_all_except(session.user_id, session.id, "user_revoked_others")

    def revoke_all_sessions(self, session: UserSession) -> int:
        self.step_up.require(session, SensitiveAction.SESSION_REVOKE_ALL)
        return self.sessions.revoke_all(session.user_id, "user_revoked_all")

    # ------------------------------------------------------------------
    # invitations
    # ------------------------------------------------------------------

    async def invite_user(
        self, inviter_id: str, email: str, role_id: Optional[str] = None
    ) -> Token:
        await self.rate_limiter.enforce(RateLimitBucket.ADMIN_INVITE, inviter_id)
        normalized = _normalize_email(email)
        if self.store.get_user_by_email(normalized):
            raise ConflictError("A user with this email already exists", detail={"field": "email"})
        inviter = self._user(inviter_id)
        issued = self.tokens.issue_invite(normalized, inviter.id, role_id)
        await self._notify(
            self.notifier.send_invite,
            normalized,
            issued.raw,
            inviter.email,
            self.tokens.describe_expiry(TokenType.USER_INVITE),
        )
        self.audit.record(SecurityEvent.USER_INVITED, user_id=inviter.id, role_id=role_id)
        return issued.token

    async def accept_invite(
        self, raw_token: str, password: str, device: DeviceInfo
    ) -> UserSession:
        self.passwords.check_policy(password)
        result = self.tokens.require(raw_token, TokenType.USER_INVITE)
        try:
            user = self.store.create_user(
                result.payload["email"], role=result.payload.get("role_id") or "user"
            )
        except ConstraintViolation as exc:
            raise ConflictError("A user with this email already exists") from exc
        self.passwords.set_password(user.id, password)
        self.audit.record(
            SecurityEvent.INVITE_ACCEPTED,
            user_id=user.id,
            invited_by=result.payload.get("invited_by"),
        )
        return await self.sessions.create(user.id, device, notify=False)

    # ------------------------------------------------------------------
    # administrative triggers
    # ------------------------------------------------------------------

    def record_role_change(
        self, user_id: str, role: str, current_session_id: Optional[str] = None
    ) -> int:
        if not self.store.update_user_role(user_id, role):
            raise NotFoundError("User not found")
        self.audit.record(SecurityEvent.ROLE_CHANGED, user_id=user_id, role=role)
        return self.sessions.apply_invalidation(
            InvalidationTrigger.ROLE_CHANGE, user_id, current_session_id
        )

    def record_role_permissions_update(self, user_ids: Iterable[str]) -> int:
        return sum(
            self.sessions.apply_invalidation(InvalidationTrigger.ROLE_PERMISSIONS_UPDATE, uid)
            for uid in user_ids
        )

    def record_user_apps_update(
        self, user_id: str, current_session_id: Optional[str] = None
    ) -> int:
        return self.sessions.apply_invalidation(
            InvalidationTrigger.USER_APPS_UPDATE, user_id, current_session_id
        )

    def deactivate_user(self, user_id: str) -> int:
        if not self.store.set_user_active(user_id, False):
            raise NotFoundError("User not found")
        self.audit.record(SecurityEvent.USER_DEACTIVATED, user_id=user_id)
        return self.sessions.apply_invalidation(InvalidationTrigger.USER_DEACTIVATION, user_id)

    def report_account_compromise(self, user_id: str) -> int:
        self._user(user_id)
        self.audit.record(SecurityEvent.ACCOUNT_COMPROMISE_REPORTED, user_id=user_id)
        return self.sessions.apply_invalidation(InvalidationTrigger.ACCOUNT_COMPROMISE, user_id)
