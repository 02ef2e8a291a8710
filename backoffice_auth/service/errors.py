from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - validation_error (400)
    - invalid_token (400)
    - unauthorized (401)
    - forbidden (403)
    - step_up_required (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidTokenError(ValidationError):
    """Token or one-time code rejected (400).

    The message is identical for expired, consumed, mistyped and unknown
    tokens; the concrete reason is only logged.
    """
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Session has expired or was revoked (401)."""
    pass


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class StepUpRequiredError(ForbiddenError):
    """A fresh re-authentication is needed before this action (403)."""
    error_code = "step_up_required"

    def __init__(self, message: str = "Step-up authentication required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource already in the requested state (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429). ``retry_after`` is in seconds."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "Too many requests. Please try again later.",
        *,
        retry_after: int = 1,
        **kwargs,
    ) -> None:
        detail = {**(kwargs.pop("detail", None) or {}), "retry_after": retry_after}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ServiceUnavailableError(ServiceError):
    """A required dependency is down; the request was denied (503)."""
    status_code = 503
    error_code = "service_unavailable"

    def __init__(
        self,
        message: str = "Service temporarily unavailable. Please try again later.",
        *,
        retry_after: int = 60,
        **kwargs,
    ) -> None:
        detail = {**(kwargs.pop("detail", None) or {}), "retry_after": retry_after}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidTokenError",
    "AuthenticationError",
    "SessionExpiredError",
    "ForbiddenError",
    "StepUpRequiredError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "ServiceUnavailableError",
]
