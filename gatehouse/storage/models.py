from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionStatus(str, Enum):
    INACTIVE = "inactive"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


class TokenPurpose(str, Enum):
    """The two kinds of emailed single-use tokens."""

    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class ConsumeOutcome(str, Enum):
    """Result of atomically consuming an emailed token.

    Exactly one concurrent caller observes ``CONSUMED``; everyone else sees
    ``ALREADY_USED`` (or ``UNKNOWN`` once the record has been swept).
    """

    CONSUMED = "consumed"
    ALREADY_USED = "already_used"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


@dataclass
class User:
    id: str
    email: str
    name: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    company_name: Optional[str] = None
    phone: Optional[str] = None
    email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    subscription_status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    subscription_tier: Optional[str] = None
    meta: Dict | None = None

    @property
    def has_active_subscription(self) -> bool:
        return self.subscription_status in (
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.TRIALING,
        )

    @property
    def display_name(self) -> str:
        return self.name or self.email.split("@", 1)[0]


@dataclass
class Session:
    """A login session keyed by the SHA-256 digest of its cookie token."""

    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        token_hash: str,
        user_id: str,
        ttl: timedelta,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=token_hash,
            user_id=user_id,
            created_at=now,
            expires_at=now + ttl,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class EmailToken:
    """Hashed single-use token for email verification or password reset."""

    token_hash: str
    user_id: str
    purpose: TokenPurpose
    created_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def new(
        cls, token_hash: str, user_id: str, purpose: TokenPurpose, ttl: timedelta
    ) -> "EmailToken":
        now = utcnow()
        return cls(
            token_hash=token_hash,
            user_id=user_id,
            purpose=purpose,
            created_at=now,
            expires_at=now + ttl,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    @property
    def is_used(self) -> bool:
        return self.used_at is not None

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.is_used and not self.is_expired(now)
