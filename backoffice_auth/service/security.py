from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from typing import Iterable, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from backoffice_auth.logging import get_logger

logger = get_logger(__name__)


def hash_verification_token(
    secret: str, token: str, purpose: str, scope: Optional[str] = None
) -> str:
    """HMAC-SHA256 of ``purpose:scope:token`` hex-encoded.

    Binding the purpose keeps a reset token from verifying as an invite;
    binding the scope (usually a user id) keeps short numeric codes from
    colliding across users.
    """
    message = f"{purpose}:{scope}:{token}" if scope else f"{purpose}:{token}"
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def generate_secure_token(num_bytes: int = 32) -> str:
    return secrets.token_hex(num_bytes)


def generate_secure_code(digits: int = 6) -> str:
    return str(secrets.randbelow(10**digits)).zfill(digits)


def derive_fernet_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class SecretCipher:
    """Encrypts secrets at rest with the current key, decrypts with any known key.

    ``legacy_keys`` are tried after the primary so secrets written before a
    rotation stay readable; ``rotate`` re-encrypts them under the primary.
    """

    def __init__(self, primary_key: str, legacy_keys: Iterable[str] = ()) -> None:
        if not primary_key:
            raise RuntimeError("Encryption key material is required")
        keys = [primary_key, *[k for k in legacy_keys if k and k != primary_key]]
        self._fernet = MultiFernet([Fernet(derive_fernet_key(k)) for k in keys])

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str, *, ttl: Optional[int] = None) -> Optional[str]:
        try:
            return self._fernet.decrypt(ciphertext.encode(), ttl=ttl).decode()
        except (InvalidToken, ValueError):
            logger.warning("secret_decrypt_failed")
            return None

    def rotate(self, ciphertext: str) -> str:
        return self._fernet.rotate(ciphertext.encode()).decode()
