"""Tests for passkey registration and assertion verification."""

import hashlib
import json
import os

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519

from backoffice_auth.service.capability import CapabilityPurpose
from backoffice_auth.service.errors import AuthenticationError, NotFoundError, ValidationError
from backoffice_auth.service.policy import SecurityEvent
from backoffice_auth.service.webauthn import (
    FLAG_BACKUP_ELIGIBLE,
    FLAG_USER_PRESENT,
    FLAG_USER_VERIFIED,
    WebAuthnError,
    b64url_encode,
    parse_authenticator_data,
    verify_assertion_signature,
)

ORIGIN = "http://localhost:3000"
RP_ID = "localhost"


class FakeAuthenticator:
    """Signs ceremonies the way a browser authenticator would."""

    def __init__(self, key=None, *, rp_id=RP_ID, origin=ORIGIN):
        self.key = key or ec.generate_private_key(ec.SECP256R1())
        self.credential_id = b64url_encode(os.urandom(16))
        self.rp_id = rp_id
        self.origin = origin
        self.counter = 0

    @property
    def public_key(self) -> str:
        der = self.key.public_key().public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        )
        return b64url_encode(der)

    def _client_data(self, kind, challenge):
        return json.dumps(
            {"type": kind, "challenge": challenge, "origin": self.origin}
        ).encode()

    def _auth_data(self, flags, counter):
        return (
            hashlib.sha256(self.rp_id.encode()).digest()
            + bytes([flags])
            + counter.to_bytes(4, "big")
        )

    def _sign(self, data: bytes) -> bytes:
        if isinstance(self.key, ed25519.Ed25519PrivateKey):
            return self.key.sign(data)
        return self.key.sign(data, ec.ECDSA(hashes.SHA256()))

    def register(self, options, flags=FLAG_USER_PRESENT | FLAG_USER_VERIFIED):
        return {
            "id": self.credential_id,
            "type": "public-key",
            "response": {
                "clientDataJSON": b64url_encode(
                    self._client_data("webauthn.create", options["challenge"])
                ),
                "authenticatorData": b64url_encode(self._auth_data(flags, self.counter)),
                "publicKey": self.public_key,
                "transports": ["internal"],
            },
        }

    def assert_(self, options, *, counter=None, flags=FLAG_USER_PRESENT | FLAG_USER_VERIFIED):
        if counter is None:
            self.counter += 1
            counter = self.counter
        client_data = self._client_data("webauthn.get", options["challenge"])
        auth_data = self._auth_data(flags, counter)
        signature = self._sign(auth_data + hashlib.sha256(client_data).digest())
        return {
            "id": self.credential_id,
            "type": "public-key",
            "response": {
                "clientDataJSON": b64url_encode(client_data),
                "authenticatorData": b64url_encode(auth_data),
                "signature": b64url_encode(signature),
            },
        }


@pytest.fixture
def passkeys(runtime):
    return runtime.passkeys


@pytest.fixture
def authenticator():
    return FakeAuthenticator()


@pytest.fixture
def registered(passkeys, user, authenticator):
    options = passkeys.generate_registration_options(user.id, user.email)
    return passkeys.verify_registration(user.id, authenticator.register(options), "Laptop")


class TestRegistration:
    def test_options_describe_relying_party(self, passkeys, user):
        options = passkeys.generate_registration_options(user.id, user.email, "Alice")
        assert options["rp"] == {"id": RP_ID, "name": "Backoffice"}
        assert options["attestation"] == "none"
        assert {p["alg"] for p in options["pubKeyCredParams"]} == {-7, -8, -257}
        assert options["user"]["displayName"] == "Alice"

    def test_registration_stores_credential(self, registered, user, audit):
        assert registered.user_id == user.id
        assert registered.name == "Laptop"
        assert registered.sign_count == 0
        assert registered.transports == ["internal"]
        audit.record.assert_any_call(
            SecurityEvent.PASSKEY_REGISTERED, user_id=user.id, passkey_id=registered.id
        )

    def test_existing_credentials_are_excluded(self, passkeys, user, registered):
        options = passkeys.generate_registration_options(user.id, user.email)
        assert [c["id"] for c in options["excludeCredentials"]] == [registered.credential_id]

    def test_backup_flag_marks_synced_passkey(self, passkeys, user, authenticator):
        options = passkeys.generate_registration_options(user.id, user.email)
        stored = passkeys.verify_registration(
            user.id,
            authenticator.register(options, flags=FLAG_USER_PRESENT | FLAG_BACKUP_ELIGIBLE),
        )
        assert stored.device_type == "multi_device"

    def test_challenge_is_single_use(self, passkeys, user, authenticator):
        options = passkeys.generate_registration_options(user.id, user.email)
        passkeys.verify_registration(user.id, authenticator.register(options))
        with pytest.raises(ValidationError):
            passkeys.verify_registration(user.id, FakeAuthenticator().register(options))

    def test_foreign_origin_is_rejected(self, passkeys, user):
        options = passkeys.generate_registration_options(user.id, user.email)
        evil = FakeAuthenticator(origin="https://evil.example")
        with pytest.raises(ValidationError):
            passkeys.verify_registration(user.id, evil.register(options))

    def test_challenge_of_other_user_is_rejected(self, passkeys, user, store, authenticator):
        other = store.create_user("bob@example.com")
        options = passkeys.generate_registration_options(other.id, other.email)
        with pytest.raises(ValidationError):
            passkeys.verify_registration(user.id, authenticator.register(options))

    def test_duplicate_credential_is_rejected(self, passkeys, user, authenticator, registered):
        options = passkeys.generate_registration_options(user.id, user.email)
        with pytest.raises(ValidationError):
            passkeys.verify_registration(user.id, authenticator.register(options))

    def test_expired_challenge(self, passkeys, user, authenticator, clock):
        options = passkeys.generate_registration_options(user.id, user.email)
        clock.advance(minutes=5)
        with pytest.raises(ValidationError):
            passkeys.verify_registration(user.id, authenticator.register(options))


class TestAuthentication:
    async def test_sign_in_yields_sign_in_capability(
        self, runtime, passkeys, user, authenticator, registered
    ):
        options = passkeys.generate_authentication_options(user.email)
        assert options["allowCredentials"][0]["id"] == authenticator.credential_id
        result = passkeys.verify_authentication(authenticator.assert_(options))
        assert result.user_id == user.id
        payload = await runtime.capabilities.consume(
            result.token, CapabilityPurpose.PASSKEY_SIGN_IN, user.id
        )
        assert payload["passkey_id"] == registered.id

    def test_step_up_purpose(self, runtime, passkeys, user, authenticator, registered):
        options = passkeys.generate_authentication_options()
        result = passkeys.verify_authentication(authenticator.assert_(options), "step_up")
        assert runtime.capabilities._decode(result.token)["purpose"] == "passkey_step_up"

    def test_unknown_purpose(self, passkeys):
        with pytest.raises(ValidationError):
            passkeys.verify_authentication({}, "admin")

    def test_unknown_email_gets_discoverable_options(self, passkeys):
        options = passkeys.generate_authentication_options("nobody@example.com")
        assert "allowCredentials" not in options

    def test_counter_advances(self, passkeys, store, authenticator, registered):
        for _ in range(2):
            options = passkeys.generate_authentication_options()
            passkeys.verify_authentication(authenticator.assert_(options))
        assert store.get_passkey(registered.id).sign_count == 2

    def test_counter_regression_is_rejected(self, passkeys, user, authenticator, registered, audit):
        options = passkeys.generate_authentication_options()
        passkeys.verify_authentication(authenticator.assert_(options, counter=5))
        options = passkeys.generate_authentication_options()
        with pytest.raises(AuthenticationError):
            passkeys.verify_authentication(authenticator.assert_(options, counter=5))
        audit.record.assert_any_call(
            SecurityEvent.PASSKEY_COUNTER_REGRESSION, user_id=user.id, passkey_id=registered.id
        )

    def test_counterless_authenticator_is_accepted(self, passkeys, authenticator, registered):
        for _ in range(2):
            options = passkeys.generate_authentication_options()
            passkeys.verify_authentication(authenticator.assert_(options, counter=0))

    def test_signature_from_other_key_is_rejected(self, passkeys, authenticator, registered):
        impostor = FakeAuthenticator()
        impostor.credential_id = authenticator.credential_id
        options = passkeys.generate_authentication_options()
        with pytest.raises(AuthenticationError):
            passkeys.verify_authentication(impostor.assert_(options))

    def test_missing_user_presence_is_rejected(self, passkeys, authenticator, registered):
        options = passkeys.generate_authentication_options()
        with pytest.raises(AuthenticationError):
            passkeys.verify_authentication(authenticator.assert_(options, flags=0))

    def test_inactive_user_cannot_sign_in(self, passkeys, store, user, authenticator, registered):
        store.set_user_active(user.id, False)
        options = passkeys.generate_authentication_options()
        with pytest.raises(AuthenticationError):
            passkeys.verify_authentication(authenticator.assert_(options))

    def test_challenge_bound_to_user_rejects_other_credential(
        self, passkeys, store, user, registered
    ):
        other = store.create_user("bob@example.com")
        bob_key = FakeAuthenticator()
        reg = passkeys.generate_registration_options(other.id, other.email)
        passkeys.verify_registration(other.id, bob_key.register(reg))
        options = passkeys.generate_authentication_options(user.email)
        with pytest.raises(AuthenticationError):
            passkeys.verify_authentication(bob_key.assert_(options))


class TestManagement:
    def test_delete_other_users_passkey_is_not_found(self, passkeys, store, registered):
        other = store.create_user("bob@example.com")
        with pytest.raises(NotFoundError):
            passkeys.delete_passkey(other.id, registered.id)

    def test_rename(self, passkeys, user, registered):
        assert passkeys.rename_passkey(user.id, registered.id, " Work key ").name == "Work key"
        with pytest.raises(ValidationError):
            passkeys.rename_passkey(user.id, registered.id, "  ")

    def test_expired_challenges_are_purged(self, passkeys, user, clock):
        passkeys.generate_authentication_options()
        passkeys.generate_registration_options(user.id, user.email)
        clock.advance(minutes=6)
        assert passkeys.cleanup_expired_challenges() == 2


class TestPrimitives:
    def test_ed25519_assertions_verify(self):
        key = ed25519.Ed25519PrivateKey.generate()
        device = FakeAuthenticator(key)
        auth_data = device._auth_data(FLAG_USER_PRESENT, 1)
        client_data = b'{"type":"webauthn.get"}'
        signature = device._sign(auth_data + hashlib.sha256(client_data).digest())
        verify_assertion_signature(device.public_key, signature, auth_data, client_data)
        with pytest.raises(WebAuthnError):
            verify_assertion_signature(device.public_key, signature, auth_data, b"{}")

    def test_short_authenticator_data(self):
        with pytest.raises(WebAuthnError):
            parse_authenticator_data(b64url_encode(b"\x00" * 10))
