from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` for the hosting controller layer:
    - validation_error (400)
    - unauthorized (401)
    - delivery_failed (502)
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


class AuthenticationError(ServiceError):
    """Credentials, code or token rejected (401).

    The message is deliberately generic; the specific failure kind is only
    logged.
    """
    status_code = 401
    error_code = "unauthorized"


class DeliveryFailedError(ServiceError):
    """Outbound message could not be delivered (502)."""
    status_code = 502
    error_code = "delivery_failed"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "DeliveryFailedError",
]
