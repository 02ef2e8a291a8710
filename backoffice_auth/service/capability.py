from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import threading
import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Optional

from redis.exceptions import RedisError

from backoffice_auth.config import Settings
from backoffice_auth.logging import get_logger
from backoffice_auth.service.errors import InvalidTokenError, ServiceUnavailableError
from backoffice_auth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class CapabilityPurpose(str, Enum):
    STEP_UP = "step_up"
    PASSKEY_STEP_UP = "passkey_step_up"
    PASSKEY_SIGN_IN = "passkey_sign_in"


class CapabilityTokens:
    """Short-lived HS256 tokens that carry one server-attested fact.

    A token names its purpose and its user, expires after
    ``capability_token_ttl_seconds`` and can be consumed once; the consumed
    ``jti`` is remembered in Redis (``SET NX``) or in a locked local map.
    """

    def __init__(
        self,
        settings: Settings,
        cache: Optional[RedisCache | SyncRedisCache] = None,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self._clock = clock or time.time
        self._consumed: Dict[str, float] = {}
        self._consumed_lock = threading.Lock()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.signing_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def issue(
        self,
        purpose: CapabilityPurpose | str,
        user_id: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> str:
        purpose = CapabilityPurpose(purpose)
        now = self._clock()
        claims = {
            "typ": "capability",
            "purpose": purpose.value,
            "sub": user_id,
            "jti": uuid.uuid4().hex,
            "iat": int(now),
            "exp": now + self.settings.capability_token_ttl_seconds,
            "payload": payload or {},
        }
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(claims, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str) -> Optional[Dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("capability_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("capability_invalid_algorithm")
            return None
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            claims = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("capability_payload_decode_failed", error=str(exc))
            return None
        return claims if isinstance(claims, dict) else None

    async def _mark_consumed(self, jti: str, exp: float) -> bool:
        ttl = max(1, int(exp - self._clock()) + 1)
        if self.cache is not None:
            try:
                return await self.cache.mark_token_consumed(jti, ttl)
            except (RedisError, OSError, asyncio.TimeoutError) as exc:
                logger.error("capability_store_unavailable", error=str(exc))
                raise ServiceUnavailableError() from exc
        now = self._clock()
        with self._consumed_lock:
            for stale in [k for k, v in self._consumed.items() if v <= now]:
                del self._consumed[stale]
            if jti in self._consumed:
                return False
            self._consumed[jti] = exp
            return True

    async def consume(
        self,
        token: str,
        purpose: CapabilityPurpose | str,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Verify and burn a token; return its payload or raise ``InvalidTokenError``."""
        purpose = CapabilityPurpose(purpose)
        claims = self._decode(token)
        reason = None
        if claims is None:
            reason = "bad_signature"
        elif claims.get("typ") != "capability" or claims.get("purpose") != purpose.value:
            reason = "wrong_purpose"
        elif user_id is not None and claims.get("sub") != user_id:
            reason = "wrong_user"
        else:
            try:
                exp = float(claims.get("exp"))
            except (TypeError, ValueError):
                exp = 0.0
            if exp <= self._clock():
                reason = "expired"
            elif not claims.get("jti") or not await self._mark_consumed(
                str(claims["jti"]), exp
            ):
                reason = "replayed"
        if reason:
            logger.warning(
                "capability_token_rejected", purpose=purpose.value, reason=reason
            )
            raise InvalidTokenError()
        return {"user_id": claims["sub"], **(claims.get("payload") or {})}
