from __future__ import annotations

import copy
import threading
from dataclasses import fields as dataclass_fields
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from backoffice_auth.logging import get_logger
from backoffice_auth.storage.errors import ConstraintViolation
from backoffice_auth.storage.models import (
    BackupCodeRecord,
    LoginAttempt,
    PasskeyChallenge,
    PasskeyCredential,
    Token,
    TokenPayload,
    TwoFactorSettings,
    User,
    UserSession,
    new_id,
)

_TWO_FACTOR_FIELDS = {f.name for f in dataclass_fields(TwoFactorSettings)}
_SESSION_FIELDS = {f.name for f in dataclass_fields(UserSession)}


class MemoryStore:
    """Thread-safe in-process store for users, tokens, passkeys and sessions.

    Every read returns a copy; every write goes through a method that holds
    the data lock, so conditional updates (token consumption, backup-code
    use, passkey counter advance) are atomic with respect to each other.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.tokens: Dict[str, Token] = {}
        self.token_payloads: Dict[str, TokenPayload] = {}
        self.passkeys: Dict[str, PasskeyCredential] = {}
        self.challenges: Dict[str, PasskeyChallenge] = {}
        self.sessions: Dict[str, UserSession] = {}
        self.login_attempts: List[LoginAttempt] = []
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()

    @staticmethod
    def _copy(value):
        return copy.deepcopy(value)

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        role: str = "user",
        tenant_id: str = "public",
        locale: str = "en",
        is_active: bool = True,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                email=normalized,
                password_hash=password_hash,
                password_algo=password_algo,
                role=role,
                tenant_id=tenant_id,
                locale=locale,
                is_active=is_active,
            )
            self.users[user.id] = user
            return self._copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._copy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.email == normalized), None
            )
            return self._copy(user) if user else None

    def _require_user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if not user:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return user

    def save_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        changed_at: Optional[datetime] = None,
    ) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.password_hash = password_hash
            user.password_algo = password_algo
            user.password_changed_at = changed_at

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.password_hash:
                return None
            return user.password_hash, user.password_algo or ""

    def update_user_email(self, user_id: str, email: str) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            user = self._require_user(user_id)
            if any(
                other.email == normalized and other.id != user_id
                for other in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user.email = normalized
            return self._copy(user)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            return self._copy(user)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            return self._copy(user)

    # ------------------------------------------------------------------
    # two-factor state
    # ------------------------------------------------------------------

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorSettings]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._copy(user.two_factor) if user else None

    def update_two_factor(self, user_id: str, **changes: Any) -> TwoFactorSettings:
        unknown = set(changes) - _TWO_FACTOR_FIELDS
        if unknown:
            raise ValueError(f"unknown two-factor fields: {sorted(unknown)}")
        with self._data_lock:
            user = self._require_user(user_id)
            for key, value in changes.items():
                setattr(user.two_factor, key, value)
            return self._copy(user.two_factor)

    def replace_backup_codes(
        self, user_id: str, codes: Iterable[BackupCodeRecord]
    ) -> int:
        with self._data_lock:
            user = self._require_user(user_id)
            user.two_factor.backup_codes = list(codes)
            return len(user.two_factor.backup_codes)

    def mark_backup_code_used(
        self, user_id: str, code_id: str, used_at: datetime
    ) -> bool:
        """Mark a code used only if it is still unused; return whether it was."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            for record in user.two_factor.backup_codes:
                if record.id == code_id:
                    if record.used_at is not None:
                        return False
                    record.used_at = used_at
                    return True
            return False

    # ------------------------------------------------------------------
    # tokens
    # ------------------------------------------------------------------

    def create_token(self, token: Token, payload: Optional[Dict] = None) -> Token:
        with self._data_lock:
            if any(t.token_hash == token.token_hash for t in self.tokens.values()):
                raise ConstraintViolation("token hash collision", {"field": "token_hash"})
            self.tokens[token.id] = token
            if payload is not None:
                self.token_payloads[token.id] = TokenPayload(
                    token_id=token.id, data=dict(payload)
                )
            return self._copy(token)

    def find_token_by_hash(self, token_hash: str) -> Optional[Token]:
        with self._data_lock:
            token = next(
                (t for t in self.tokens.values() if t.token_hash == token_hash), None
            )
            return self._copy(token) if token else None

    def get_token_payload(self, token_id: str) -> Dict:
        with self._data_lock:
            payload = self.token_payloads.get(token_id)
            return dict(payload.data) if payload else {}

    def consume_token(self, token_id: str, now: datetime) -> bool:
        """Set ``used_at`` only if the token is unused and unexpired."""
        with self._data_lock:
            token = self.tokens.get(token_id)
            if not token or token.used_at is not None or token.expires_at <= now:
                return False
            token.used_at = now
            return True

    def delete_unused_tokens(
        self,
        token_type: str,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> int:
        """Drop pending tokens of a type for one user (or one invitee email)."""
        with self._data_lock:
            doomed = []
            for token in self.tokens.values():
                if token.type != token_type or token.used_at is not None:
                    continue
                if user_id is not None and token.user_id != user_id:
                    continue
                if email is not None:
                    data = self.token_payloads.get(token.id)
                    if not data or data.data.get("email") != email:
                        continue
                doomed.append(token.id)
            for token_id in doomed:
                self.tokens.pop(token_id, None)
                self.token_payloads.pop(token_id, None)
            return len(doomed)

    def delete_expired_tokens(
        self, now: datetime, token_type: Optional[str] = None
    ) -> int:
        with self._data_lock:
            doomed = [
                token_id
                for token_id, token in self.tokens.items()
                if token.expires_at <= now
                and (token_type is None or token.type == token_type)
            ]
            for token_id in doomed:
                self.tokens.pop(token_id, None)
                self.token_payloads.pop(token_id, None)
            return len(doomed)

    # ------------------------------------------------------------------
    # passkeys
    # ------------------------------------------------------------------

    def create_passkey(self, credential: PasskeyCredential) -> PasskeyCredential:
        with self._data_lock:
            self._require_user(credential.user_id)
            if any(
                p.credential_id == credential.credential_id for p in self.passkeys.values()
            ):
                raise ConstraintViolation(
                    "credential already registered", {"field": "credential_id"}
                )
            self.passkeys[credential.id] = credential
            return self._copy(credential)

    def list_passkeys(self, user_id: str) -> List[PasskeyCredential]:
        with self._data_lock:
            results = [p for p in self.passkeys.values() if p.user_id == user_id]
            return self._copy(sorted(results, key=lambda p: p.created_at))

    def get_passkey(self, passkey_id: str) -> Optional[PasskeyCredential]:
        with self._data_lock:
            passkey = self.passkeys.get(passkey_id)
            return self._copy(passkey) if passkey else None

    def get_passkey_by_credential_id(
        self, credential_id: str
    ) -> Optional[PasskeyCredential]:
        with self._data_lock:
            passkey = next(
                (p for p in self.passkeys.values() if p.credential_id == credential_id),
                None,
            )
            return self._copy(passkey) if passkey else None

    def advance_passkey_counter(
        self, passkey_id: str, expected: int, new_count: int, used_at: datetime
    ) -> bool:
        """Compare-and-set the signature counter from ``expected`` to ``new_count``."""
        with self._data_lock:
            passkey = self.passkeys.get(passkey_id)
            if not passkey or passkey.sign_count != expected:
                return False
            passkey.sign_count = new_count
            passkey.last_used_at = used_at
            return True

    def rename_passkey(
        self, user_id: str, passkey_id: str, name: str
    ) -> Optional[PasskeyCredential]:
        with self._data_lock:
            passkey = self.passkeys.get(passkey_id)
            if not passkey or passkey.user_id != user_id:
                return None
            passkey.name = name
            return self._copy(passkey)

    def delete_passkey(self, user_id: str, passkey_id: str) -> bool:
        with self._data_lock:
            passkey = self.passkeys.get(passkey_id)
            if not passkey or passkey.user_id != user_id:
                return False
            del self.passkeys[passkey_id]
            return True

    def delete_all_passkeys(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [pid for pid, p in self.passkeys.items() if p.user_id == user_id]
            for passkey_id in doomed:
                del self.passkeys[passkey_id]
            return len(doomed)

    def save_challenge(self, challenge: PasskeyChallenge) -> PasskeyChallenge:
        """Store a challenge; a user's newer registration challenge replaces older ones."""
        with self._data_lock:
            if challenge.user_id and challenge.type == "registration":
                stale = [
                    cid
                    for cid, existing in self.challenges.items()
                    if existing.user_id == challenge.user_id
                    and existing.type == "registration"
                ]
                for cid in stale:
                    del self.challenges[cid]
            self.challenges[challenge.id] = challenge
            return self._copy(challenge)

    def pop_challenge(self, challenge_value: str) -> Optional[PasskeyChallenge]:
        with self._data_lock:
            match = next(
                (
                    cid
                    for cid, existing in self.challenges.items()
                    if existing.challenge == challenge_value
                ),
                None,
            )
            if match is None:
                return None
            return self.challenges.pop(match)

    def delete_expired_challenges(self, now: datetime) -> int:
        with self._data_lock:
            doomed = [cid for cid, c in self.challenges.items() if c.expires_at <= now]
            for cid in doomed:
                del self.challenges[cid]
            return len(doomed)

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------

    def create_session(self, session: UserSession) -> UserSession:
        with self._data_lock:
            self._require_user(session.user_id)
            if any(s.session_token == session.session_token for s in self.sessions.values()):
                raise ConstraintViolation(
                    "session token collision", {"field": "session_token"}
                )
            self.sessions[session.id] = session
            return self._copy(session)

    def get_session(self, session_id: str) -> Optional[UserSession]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return self._copy(session) if session else None

    def get_session_by_token(self, session_token: str) -> Optional[UserSession]:
        with self._data_lock:
            session = next(
                (s for s in self.sessions.values() if s.session_token == session_token),
                None,
            )
            return self._copy(session) if session else None

    def update_session(self, session_id: str, **changes: Any) -> Optional[UserSession]:
        unknown = set(changes) - _SESSION_FIELDS
        if unknown:
            raise ValueError(f"unknown session fields: {sorted(unknown)}")
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session:
                return None
            for key, value in changes.items():
                setattr(session, key, value)
            return self._copy(session)

    def touch_session(
        self, session_id: str, now: datetime, expires_at: datetime
    ) -> Optional[UserSession]:
        """Extend sliding expiry on a live session; never past the absolute cap."""
        with self._data_lock:
            session = self.sessions.get(session_id)
            if (
                not session
                or session.is_revoked
                or session.expires_at <= now
                or session.absolute_expires_at <= now
            ):
                return None
            session.last_activity_at = now
            session.expires_at = min(expires_at, session.absolute_expires_at)
            return self._copy(session)

    def revoke_session(self, session_id: str, reason: str, now: datetime) -> bool:
        """Return True only when this call flipped the session to revoked."""
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or session.is_revoked:
                return False
            session.is_revoked = True
            session.revoked_reason = reason
            session.revoked_at = now
            return True

    def revoke_user_sessions(
        self,
        user_id: str,
        reason: str,
        now: datetime,
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            revoked = 0
            for session in self.sessions.values():
                if session.user_id != user_id or session.is_revoked:
                    continue
                if except_session_id and session.id == except_session_id:
                    continue
                session.is_revoked = True
                session.revoked_reason = reason
                session.revoked_at = now
                revoked += 1
            return revoked

    def list_sessions(self, user_id: Optional[str] = None) -> List[UserSession]:
        with self._data_lock:
            results = [
                s for s in self.sessions.values() if user_id is None or s.user_id == user_id
            ]
            return self._copy(results)

    def delete_expired_sessions(self, now: datetime) -> int:
        """Purge sessions past either expiry, plus revoked ones."""
        with self._data_lock:
            doomed = [
                sid
                for sid, s in self.sessions.items()
                if s.is_revoked or s.expires_at <= now or s.absolute_expires_at <= now
            ]
            for sid in doomed:
                del self.sessions[sid]
            if doomed:
                self.logger.info("sessions_purged", count=len(doomed))
            return len(doomed)

    # ------------------------------------------------------------------
    # login history
    # ------------------------------------------------------------------

    def add_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        with self._data_lock:
            self.login_attempts.append(attempt)
            return self._copy(attempt)

    def list_login_attempts(
        self,
        user_id: str,
        *,
        success: Optional[bool] = None,
        since: Optional[datetime] = None,
    ) -> List[LoginAttempt]:
        """Attempts for ``user_id``, newest first."""
        with self._data_lock:
            matches = [
                a
                for a in self.login_attempts
                if a.user_id == user_id
                and (success is None or a.success == success)
                and (since is None or a.created_at >= since)
            ]
            matches.sort(key=lambda a: a.created_at, reverse=True)
            return self._copy(matches)

    def delete_login_attempts_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            kept = [a for a in self.login_attempts if a.created_at >= cutoff]
            removed = len(self.login_attempts) - len(kept)
            self.login_attempts = kept
            return removed
