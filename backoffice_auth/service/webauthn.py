"""WebAuthn ceremony primitives.

Only the pieces the passkey flows need: client data and authenticator
data parsing, relying-party checks and assertion signature verification.
Registration accepts the SPKI public key the browser exposes through
``AuthenticatorAttestationResponse.getPublicKey()`` with ``attestation:
"none"``, so attestation statements are never parsed.
"""

from __future__ import annotations

import base64
import hashlib
import json
import secrets
import uuid
from dataclasses import dataclass
from typing import Iterable, Optional

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from cryptography.hazmat.primitives.serialization import load_der_public_key

FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04
FLAG_BACKUP_ELIGIBLE = 0x08
FLAG_BACKED_UP = 0x10
FLAG_ATTESTED_CREDENTIAL = 0x40

# COSE algorithm ids offered at registration: ES256, EdDSA, RS256
SUPPORTED_ALGORITHMS = (-7, -8, -257)


class WebAuthnError(ValueError):
    """A ceremony response failed a structural or cryptographic check."""


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(value: str) -> bytes:
    if not isinstance(value, str):
        raise WebAuthnError("expected base64url string")
    padded = value + "=" * ((4 - len(value) % 4) % 4)
    try:
        return base64.urlsafe_b64decode(padded)
    except (ValueError, TypeError) as exc:
        raise WebAuthnError("invalid base64url") from exc


def generate_challenge(num_bytes: int = 32) -> str:
    return b64url_encode(secrets.token_bytes(num_bytes))


@dataclass(frozen=True)
class ClientData:
    type: str
    challenge: str
    origin: str
    raw: bytes


@dataclass(frozen=True)
class AuthenticatorData:
    rp_id_hash: bytes
    flags: int
    sign_count: int
    raw: bytes
    aaguid: Optional[str] = None

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_USER_PRESENT)

    @property
    def user_verified(self) -> bool:
        return bool(self.flags & FLAG_USER_VERIFIED)

    @property
    def backup_eligible(self) -> bool:
        return bool(self.flags & FLAG_BACKUP_ELIGIBLE)

    @property
    def backed_up(self) -> bool:
        return bool(self.flags & FLAG_BACKED_UP)


def parse_client_data(client_data_b64: str) -> ClientData:
    raw = b64url_decode(client_data_b64)
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise WebAuthnError("clientDataJSON is not JSON") from exc
    if not isinstance(data, dict):
        raise WebAuthnError("clientDataJSON is not an object")
    try:
        return ClientData(
            type=str(data["type"]),
            challenge=str(data["challenge"]),
            origin=str(data["origin"]),
            raw=raw,
        )
    except KeyError as exc:
        raise WebAuthnError(f"clientDataJSON missing {exc.args[0]}") from exc


def verify_client_data(
    client_data: ClientData, expected_type: str, allowed_origins: Iterable[str]
) -> None:
    if client_data.type != expected_type:
        raise WebAuthnError("unexpected ceremony type")
    origins = {origin.rstrip("/") for origin in allowed_origins}
    if client_data.origin.rstrip("/") not in origins:
        raise WebAuthnError("origin not allowed")


def parse_authenticator_data(auth_data_b64: str) -> AuthenticatorData:
    raw = b64url_decode(auth_data_b64)
    if len(raw) < 37:
        raise WebAuthnError("authenticatorData too short")
    flags = raw[32]
    aaguid = None
    if flags & FLAG_ATTESTED_CREDENTIAL and len(raw) >= 53:
        aaguid = str(uuid.UUID(bytes=raw[37:53]))
    return AuthenticatorData(
        rp_id_hash=raw[:32],
        flags=flags,
        sign_count=int.from_bytes(raw[33:37], "big"),
        raw=raw,
        aaguid=aaguid,
    )


def verify_rp_id(auth_data: AuthenticatorData, rp_id: str) -> None:
    if auth_data.rp_id_hash != hashlib.sha256(rp_id.encode()).digest():
        raise WebAuthnError("rpIdHash mismatch")
    if not auth_data.user_present:
        raise WebAuthnError("user presence flag not set")


def load_public_key(public_key_b64: str):
    try:
        key = load_der_public_key(b64url_decode(public_key_b64))
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise WebAuthnError("unreadable public key") from exc
    if not isinstance(
        key, (ec.EllipticCurvePublicKey, rsa.RSAPublicKey, ed25519.Ed25519PublicKey)
    ):
        raise WebAuthnError("unsupported public key type")
    return key


def verify_assertion_signature(
    public_key_b64: str, signature: bytes, auth_data: bytes, client_data_json: bytes
) -> None:
    """Check the signature over ``authenticatorData || SHA-256(clientDataJSON)``."""
    key = load_public_key(public_key_b64)
    signed = auth_data + hashlib.sha256(client_data_json).digest()
    try:
        if isinstance(key, ec.EllipticCurvePublicKey):
            key.verify(signature, signed, ec.ECDSA(hashes.SHA256()))
        elif isinstance(key, rsa.RSAPublicKey):
            key.verify(signature, signed, padding.PKCS1v15(), hashes.SHA256())
        else:
            key.verify(signature, signed)
    except InvalidSignature as exc:
        raise WebAuthnError("signature mismatch") from exc
