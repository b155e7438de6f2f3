from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - mfa_misuse (400)
    - not_found (404)
    - validation_error (400)
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


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class MfaMisuseError(ServiceError):
    """An MFA operation was invoked for a user that cannot use it.

    Raised for caller mistakes such as initiating a challenge for a user
    without MFA enrolled; never returned as a user-facing auth failure.
    """
    status_code = 400
    error_code = "mfa_misuse"


class ConfigurationError(RuntimeError):
    """Fatal startup misconfiguration, e.g. a missing signing secret."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "MfaMisuseError",
    "ConfigurationError",
]
