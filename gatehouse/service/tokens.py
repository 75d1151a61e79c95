from __future__ import annotations

import hashlib
import secrets
import string
from datetime import timedelta
from enum import Enum

from gatehouse.config import Settings

TOKEN_BYTES = 32
HEX_TOKEN_LENGTH = TOKEN_BYTES * 2
_HEX_DIGITS = frozenset(string.hexdigits.lower())


class TokenKind(str, Enum):
    SESSION = "session"
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"
    CSRF = "csrf"


def hash_token(raw: str) -> str:
    """SHA-256 hex digest used as the storage key for a raw token."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def looks_like_token(raw: str | None) -> bool:
    """Cheap shape check run before any store lookup."""
    if not raw or len(raw) != HEX_TOKEN_LENGTH:
        return False
    return all(ch in _HEX_DIGITS for ch in raw)


class TokenIssuer:
    """Generates opaque random tokens and knows their lifetimes.

    Session, verification and reset tokens are 256-bit values rendered as 64
    lowercase hex characters; CSRF tokens use URL-safe base64 because they
    travel in form fields and headers rather than links.
    """

    def __init__(self, settings: Settings) -> None:
        self._ttls = {
            TokenKind.SESSION: timedelta(hours=settings.session_ttl_hours),
            TokenKind.EMAIL_VERIFICATION: timedelta(
                hours=settings.email_verification_ttl_hours
            ),
            TokenKind.PASSWORD_RESET: timedelta(
                minutes=settings.password_reset_ttl_minutes
            ),
            TokenKind.CSRF: timedelta(seconds=settings.csrf_ttl_seconds),
        }

    def issue(self, kind: TokenKind) -> str:
        if TokenKind(kind) == TokenKind.CSRF:
            return secrets.token_urlsafe(TOKEN_BYTES)
        return secrets.token_hex(TOKEN_BYTES)

    def ttl(self, kind: TokenKind) -> timedelta:
        return self._ttls[TokenKind(kind)]


__all__ = [
    "TOKEN_BYTES",
    "TokenKind",
    "TokenIssuer",
    "hash_token",
    "looks_like_token",
]
