from __future__ import annotations

import math
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines an HTTP status_code and a stable error_code:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (400 for duplicate registration, 409 for storage conflicts)
    - rate_limited (429)
    - server_error (500)
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
    """Malformed or policy-violating input (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Missing/invalid bearer token or wrong credential (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate registration (400 so the client sees a plain validation failure)."""
    status_code = 400
    error_code = "conflict"


class LockedError(ServiceError):
    """Temporarily locked or throttled (429) with a retry-after hint."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, retry_after_seconds: float) -> None:
        super().__init__(message)
        self.retry_after_seconds = max(1, int(math.ceil(retry_after_seconds)))


class InternalError(ServiceError):
    """Internal server error (500); callers only ever see a generic message."""
    status_code = 500
    error_code = "server_error"


class NoCredentialError(ServiceError):
    """The account has no credential set and must go through verification/reset."""
    status_code = 401
    error_code = "unauthorized"


class OtpError(ValidationError):
    """One-time code rejected; ``reason`` says why."""

    NO_PENDING_RECORD = "NO_PENDING_RECORD"
    EXPIRED = "EXPIRED"
    MISMATCH = "MISMATCH"
    TOO_MANY_ATTEMPTS = "TOO_MANY_ATTEMPTS"

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message, detail={"reason": reason})
        self.reason = reason


class TokenError(AuthenticationError):
    """Bearer token rejected; ``reason`` is INVALID, EXPIRED or MALFORMED."""

    INVALID = "INVALID"
    EXPIRED = "EXPIRED"
    MALFORMED = "MALFORMED"

    def __init__(self, reason: str) -> None:
        super().__init__("Unauthorized")
        self.reason = reason


class DeliveryError(Exception):
    """Email could not be delivered."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "LockedError",
    "InternalError",
    "NoCredentialError",
    "OtpError",
    "TokenError",
    "DeliveryError",
]
