from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from gatehouse.logging import get_correlation_id
from gatehouse.storage.models import User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "payment_required",
    "forbidden",
    "csrf_failed",
    "not_found",
    "conflict",
    "gone",
    "rate_limited",
    "validation_error",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every JSON endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    company_name: Optional[str] = None
    phone: Optional[str] = None
    email_verified: bool
    subscription_status: str
    subscription_tier: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            company_name=user.company_name,
            phone=user.phone,
            email_verified=user.email_verified,
            subscription_status=str(getattr(user.subscription_status, "value", user.subscription_status)),
            subscription_tier=user.subscription_tier,
            created_at=user.created_at,
        )


class HealthResponse(BaseModel):
    status: str
    store: str
    redis: bool
