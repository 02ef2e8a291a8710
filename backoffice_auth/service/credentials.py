from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from backoffice_auth.config import Settings
from backoffice_auth.logging import get_logger
from backoffice_auth.service.audit import AuditSink
from backoffice_auth.service.capability import CapabilityPurpose, CapabilityTokens
from backoffice_auth.service.errors import (
    AuthenticationError,
    NotFoundError,
    ValidationError,
)
from backoffice_auth.service.policy import SecurityEvent
from backoffice_auth.service.webauthn import (
    SUPPORTED_ALGORITHMS,
    WebAuthnError,
    b64url_decode,
    b64url_encode,
    generate_challenge,
    load_public_key,
    parse_authenticator_data,
    parse_client_data,
    verify_assertion_signature,
    verify_client_data,
    verify_rp_id,
)
from backoffice_auth.storage.errors import ConstraintViolation
from backoffice_auth.storage.memory import MemoryStore
from backoffice_auth.storage.models import PasskeyChallenge, PasskeyCredential, new_id

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128


class PasswordVerifier:
    """Argon2id password hashing and verification.

    Unknown users still pay for a hash verification so response timing
    does not reveal whether an account exists.
    """

    def __init__(self, store: MemoryStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self._jitter = secrets.SystemRandom()

    @staticmethod
    def check_policy(password: str) -> None:
        if not isinstance(password, str) or len(password) < PASSWORD_MIN_LENGTH:
            raise ValidationError(
                f"Password must be at least {PASSWORD_MIN_LENGTH} characters",
                detail={"field": "password"},
            )
        if len(password) > PASSWORD_MAX_LENGTH:
            raise ValidationError(
                f"Password must be at most {PASSWORD_MAX_LENGTH} characters",
                detail={"field": "password"},
            )

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _burn_dummy(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerificationError:
            pass

    def verify_password(self, user_id: Optional[str], password: str) -> bool:
        record = self.store.get_password_record(user_id) if user_id else None
        if not record:
            self._burn_dummy(password or "")
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHashError, VerifyMismatchError, VerificationError):
            logger.warning("password_verification_failed", user_id=user_id)
            return False

    def set_password(
        self, user_id: str, password: str, *, changed_at: Optional[datetime] = None
    ) -> None:
        self.check_policy(password)
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(
            user_id, pwd_hash, algo, changed_at or datetime.now(timezone.utc)
        )

    async def failure_delay(self) -> None:
        """Sleep a random 100-200 ms (configurable) before reporting a failure."""
        low = self.settings.failure_delay_min_ms
        high = self.settings.failure_delay_max_ms
        await asyncio.sleep(self._jitter.uniform(low, high) / 1000)


@dataclass
class PasskeyAuthResult:
    user_id: str
    credential: PasskeyCredential
    token: str


class PasskeyService:
    """Registration and authentication ceremonies for passkeys."""

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        capabilities: CapabilityTokens,
        audit: AuditSink,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.capabilities = capabilities
        self.audit = audit
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(timezone.utc)

    def _new_challenge(self, kind: str, user_id: Optional[str]) -> PasskeyChallenge:
        now = self._now()
        return self.store.save_challenge(
            PasskeyChallenge(
                id=new_id(),
                challenge=generate_challenge(),
                type=kind,
                user_id=user_id,
                expires_at=now
                + timedelta(seconds=self.settings.passkey_challenge_ttl_seconds),
                created_at=now,
            )
        )

    @staticmethod
    def _descriptor(passkey: PasskeyCredential) -> Dict[str, Any]:
        descriptor: Dict[str, Any] = {"id": passkey.credential_id, "type": "public-key"}
        if passkey.transports:
            descriptor["transports"] = list(passkey.transports)
        return descriptor

    def generate_registration_options(
        self, user_id: str, email: str, name: Optional[str] = None
    ) -> Dict[str, Any]:
        challenge = self._new_challenge("registration", user_id)
        return {
            "challenge": challenge.challenge,
            "rp": {
                "id": self.settings.webauthn_rp_id,
                "name": self.settings.webauthn_rp_name,
            },
            "user": {
                "id": b64url_encode(user_id.encode()),
                "name": email,
                "displayName": name or email,
            },
            "pubKeyCredParams": [
                {"type": "public-key", "alg": alg} for alg in SUPPORTED_ALGORITHMS
            ],
            "timeout": self.settings.passkey_challenge_ttl_seconds * 1000,
            "attestation": "none",
            "excludeCredentials": [
                self._descriptor(p) for p in self.store.list_passkeys(user_id)
            ],
            "authenticatorSelection": {
                "residentKey": "preferred",
                "userVerification": "preferred",
            },
        }

    def _take_challenge(
        self, client_challenge: str, kind: str
    ) -> PasskeyChallenge:
        challenge = self.store.pop_challenge(client_challenge)
        if challenge is None:
            raise WebAuthnError("unknown challenge")
        if challenge.type != kind:
            raise WebAuthnError("challenge type mismatch")
        if challenge.expires_at <= self._now():
            raise WebAuthnError("challenge expired")
        return challenge

    def verify_registration(
        self, user_id: str, response: Dict[str, Any], device_name: Optional[str] = None
    ) -> PasskeyCredential:
        try:
            body = response["response"]
            credential_id = str(response["id"])
            client_data = parse_client_data(body["clientDataJSON"])
            challenge = self._take_challenge(client_data.challenge, "registration")
            if challenge.user_id != user_id:
                raise WebAuthnError("challenge belongs to another user")
            verify_client_data(
                client_data, "webauthn.create", self.settings.webauthn_origins
            )
            auth_data = parse_authenticator_data(body["authenticatorData"])
            verify_rp_id(auth_data, self.settings.webauthn_rp_id)
            public_key = str(body["publicKey"])
            load_public_key(public_key)
            b64url_decode(credential_id)
        except (KeyError, TypeError, WebAuthnError) as exc:
            logger.warning(
                "passkey_registration_rejected", user_id=user_id, error=str(exc)
            )
            raise ValidationError("Passkey registration failed") from exc

        now = self._now()
        credential = PasskeyCredential(
            id=new_id(),
            user_id=user_id,
            credential_id=credential_id,
            public_key=public_key,
            sign_count=auth_data.sign_count,
            transports=[str(t) for t in body.get("transports") or []],
            device_type="multi_device" if auth_data.backup_eligible else "single_device",
            backed_up=auth_data.backed_up,
            aaguid=auth_data.aaguid,
            name=(device_name or "").strip() or f"Passkey {now:%Y-%m-%d}",
            created_at=now,
        )
        try:
            stored = self.store.create_passkey(credential)
        except ConstraintViolation as exc:
            logger.warning("passkey_duplicate_credential", user_id=user_id)
            raise ValidationError("Passkey registration failed") from exc
        self.audit.record(
            SecurityEvent.PASSKEY_REGISTERED, user_id=user_id, passkey_id=stored.id
        )
        return stored

    def generate_authentication_options(
        self, email: Optional[str] = None
    ) -> Dict[str, Any]:
        user = self.store.get_user_by_email(email) if email else None
        user_id = user.id if user and user.is_active else None
        challenge = self._new_challenge("authentication", user_id)
        options: Dict[str, Any] = {
            "challenge": challenge.challenge,
            "rpId": self.settings.webauthn_rp_id,
            "timeout": self.settings.passkey_challenge_ttl_seconds * 1000,
            "userVerification": "preferred",
        }
        # Unknown emails get the discoverable flow so existence is not revealed
        if user_id:
            passkeys = self.store.list_passkeys(user_id)
            if passkeys:
                options["allowCredentials"] = [self._descriptor(p) for p in passkeys]
        return options

    def verify_authentication(
        self, response: Dict[str, Any], purpose: str = "login"
    ) -> PasskeyAuthResult:
        """Verify an assertion and hand back a single-use capability token.

        ``purpose`` is ``login`` or ``step_up``; the token purpose follows it
        so a sign-in assertion can never be replayed as a step-up proof.
        """
        if purpose == "login":
            token_purpose = CapabilityPurpose.PASSKEY_SIGN_IN
        elif purpose == "step_up":
            token_purpose = CapabilityPurpose.PASSKEY_STEP_UP
        else:
            raise ValidationError("Unsupported passkey purpose", detail={"purpose": purpose})

        passkey: Optional[PasskeyCredential] = None
        try:
            body = response["response"]
            client_data = parse_client_data(body["clientDataJSON"])
            challenge = self._take_challenge(client_data.challenge, "authentication")
            verify_client_data(client_data, "webauthn.get", self.settings.webauthn_origins)
            passkey = self.store.get_passkey_by_credential_id(str(response["id"]))
            if passkey is None:
                raise WebAuthnError("unknown credential")
            if challenge.user_id and challenge.user_id != passkey.user_id:
                raise WebAuthnError("credential not allowed for challenge")
            auth_data = parse_authenticator_data(body["authenticatorData"])
            verify_rp_id(auth_data, self.settings.webauthn_rp_id)
            verify_assertion_signature(
                passkey.public_key,
                b64url_decode(body["signature"]),
                auth_data.raw,
                client_data.raw,
            )
        except (KeyError, TypeError, WebAuthnError) as exc:
            logger.warning(
                "passkey_authentication_rejected",
                passkey_id=passkey.id if passkey else None,
                error=str(exc),
            )
            raise AuthenticationError("Passkey verification failed") from exc

        stored_count = passkey.sign_count
        new_count = auth_data.sign_count
        # Authenticators without a counter always report 0
        if (new_count or stored_count) and new_count <= stored_count:
            logger.warning(
                "passkey_counter_regression",
                passkey_id=passkey.id,
                stored=stored_count,
                received=new_count,
            )
            self.audit.record(
                SecurityEvent.PASSKEY_COUNTER_REGRESSION,
                user_id=passkey.user_id,
                passkey_id=passkey.id,
            )
            raise AuthenticationError("Passkey verification failed")

        now = self._now()
        if not self.store.advance_passkey_counter(passkey.id, stored_count, new_count, now):
            logger.warning("passkey_counter_race", passkey_id=passkey.id)
            raise AuthenticationError("Passkey verification failed")

        user = self.store.get_user(passkey.user_id)
        if not user or not user.is_active:
            logger.warning("passkey_user_inactive", user_id=passkey.user_id)
            raise AuthenticationError("Passkey verification failed")

        token = self.capabilities.issue(
            token_purpose,
            user.id,
            {"passkey_id": passkey.id, "verified_at": now.isoformat()},
        )
        passkey.sign_count = new_count
        passkey.last_used_at = now
        return PasskeyAuthResult(user_id=user.id, credential=passkey, token=token)

    def list_passkeys(self, user_id: str) -> List[PasskeyCredential]:
        return self.store.list_passkeys(user_id)

    def count(self, user_id: str) -> int:
        return len(self.store.list_passkeys(user_id))

    def rename_passkey(self, user_id: str, passkey_id: str, name: str) -> PasskeyCredential:
        cleaned = (name or "").strip()
        if not cleaned or len(cleaned) > 100:
            raise ValidationError("Passkey name must be 1-100 characters")
        renamed = self.store.rename_passkey(user_id, passkey_id, cleaned)
        if renamed is None:
            raise NotFoundError("Passkey not found")
        return renamed

    def delete_passkey(self, user_id: str, passkey_id: str) -> None:
        if not self.store.delete_passkey(user_id, passkey_id):
            raise NotFoundError("Passkey not found")
        self.audit.record(
            SecurityEvent.PASSKEY_DELETED, user_id=user_id, passkey_id=passkey_id
        )

    def delete_all(self, user_id: str) -> int:
        removed = self.store.delete_all_passkeys(user_id)
        if removed:
            logger.info("passkeys_deleted", user_id=user_id, count=removed)
        return removed

    def cleanup_expired_challenges(self) -> int:
        return self.store.delete_expired_challenges(self._now())
