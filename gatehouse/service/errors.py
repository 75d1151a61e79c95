from __future__ import annotations

from typing import Dict, Optional

INTERNAL_ERROR_MESSAGE = "An internal error occurred. Please try again later."


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - payment_required (402)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)

    ``fields`` maps form field names to user-facing messages so handlers can
    render them inline.
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
        fields: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.fields = dict(fields or {})

    @property
    def is_internal(self) -> bool:
        return self.status_code >= 500


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class PaymentRequiredError(ServiceError):
    """An active subscription is required (402)."""
    status_code = 402
    error_code = "payment_required"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate email or already verified (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


def user_message(exc: BaseException) -> str:
    """Message safe to show an end user for ``exc``.

    Service errors below 500 carry user-correctable messages; anything else
    collapses to one generic sentence.
    """
    if isinstance(exc, ServiceError) and not exc.is_internal:
        return exc.message
    return INTERNAL_ERROR_MESSAGE


__all__ = [
    "INTERNAL_ERROR_MESSAGE",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "PaymentRequiredError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "user_message",
]
