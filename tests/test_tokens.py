"""Unit tests for opaque token generation and hashing."""

from datetime import timedelta

from gatehouse.config import Settings
from gatehouse.service.tokens import (
    HEX_TOKEN_LENGTH,
    TokenIssuer,
    TokenKind,
    hash_token,
    looks_like_token,
)


def _issuer(**overrides):
    return TokenIssuer(Settings(**overrides))


class TestTokenIssuer:
    def test_session_tokens_are_64_lowercase_hex(self):
        """Session, verification and reset tokens share the 256-bit hex format."""
        issuer = _issuer()
        for kind in (TokenKind.SESSION, TokenKind.EMAIL_VERIFICATION, TokenKind.PASSWORD_RESET):
            token = issuer.issue(kind)
            assert len(token) == HEX_TOKEN_LENGTH
            assert looks_like_token(token)

    def test_tokens_are_unique(self):
        """A thousand draws never repeat."""
        issuer = _issuer()
        tokens = {issuer.issue(TokenKind.SESSION) for _ in range(1000)}
        assert len(tokens) == 1000

    def test_csrf_tokens_are_urlsafe(self):
        """CSRF tokens are URL-safe base64, not hex."""
        token = _issuer().issue(TokenKind.CSRF)
        assert len(token) >= 43
        assert all(ch.isalnum() or ch in "-_" for ch in token)

    def test_ttls_follow_settings(self):
        issuer = _issuer(
            session_ttl_hours=2,
            email_verification_ttl_hours=5,
            password_reset_ttl_minutes=15,
            csrf_ttl_seconds=90,
        )
        assert issuer.ttl(TokenKind.SESSION) == timedelta(hours=2)
        assert issuer.ttl(TokenKind.EMAIL_VERIFICATION) == timedelta(hours=5)
        assert issuer.ttl(TokenKind.PASSWORD_RESET) == timedelta(minutes=15)
        assert issuer.ttl(TokenKind.CSRF) == timedelta(seconds=90)

    def test_default_ttls(self):
        """Sessions last a week, verification a day, reset links an hour."""
        issuer = _issuer()
        assert issuer.ttl(TokenKind.SESSION) == timedelta(days=7)
        assert issuer.ttl(TokenKind.EMAIL_VERIFICATION) == timedelta(hours=24)
        assert issuer.ttl(TokenKind.PASSWORD_RESET) == timedelta(hours=1)


class TestHashing:
    def test_hash_is_deterministic_sha256(self):
        assert hash_token("abc") == hash_token("abc")
        assert hash_token("abc") == (
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )

    def test_hash_differs_from_raw(self):
        raw = _issuer().issue(TokenKind.SESSION)
        assert hash_token(raw) != raw


class TestShapeCheck:
    def test_rejects_malformed_values(self):
        """Wrong length, uppercase and non-hex values never reach the store."""
        assert not looks_like_token(None)
        assert not looks_like_token("")
        assert not looks_like_token("a" * 63)
        assert not looks_like_token("A" * 64)
        assert not looks_like_token("g" * 64)
        assert looks_like_token("0123456789abcdef" * 4)
