from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from starlette.responses import Response

from gatehouse.config import CookiePolicy
from gatehouse.logging import get_logger
from gatehouse.service.tokens import TokenIssuer, TokenKind, hash_token, looks_like_token
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import Session, User, utcnow
from gatehouse.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(self, user_id, token_hash, *, ttl, user_agent=None, ip_addr=None) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def revoke_session(self, session_id: str) -> bool: ...

    def revoke_user_sessions(self, user_id: str) -> int: ...

    def delete_expired_sessions(self, now=None) -> int: ...

    def get_user(self, user_id: str) -> Optional[User]: ...


@dataclass(frozen=True)
class IssuedSession:
    """A freshly created session together with the raw cookie token."""

    token: str
    session: Session


class SessionManager:
    """Create, resolve and revoke login sessions.

    The store is authoritative. When Redis is configured it caches the
    ``token hash -> user id`` mapping so most requests skip the session
    lookup; every revocation clears the cache entry as well.
    """

    def __init__(
        self,
        store: SessionStore,
        cache: Optional[RedisCache],
        issuer: TokenIssuer,
    ) -> None:
        self.store = store
        self.cache = cache
        self.issuer = issuer

    async def create_session(
        self,
        user_id: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> IssuedSession:
        ttl = self.issuer.ttl(TokenKind.SESSION)
        for _ in range(3):
            token = self.issuer.issue(TokenKind.SESSION)
            try:
                session = self.store.create_session(
                    user_id,
                    hash_token(token),
                    ttl=ttl,
                    user_agent=user_agent,
                    ip_addr=ip_addr,
                )
                break
            except ConstraintViolation as exc:
                if exc.detail.get("field") != "id":
                    raise
        else:
            raise RuntimeError("could not allocate a unique session token")
        if self.cache:
            try:
                await self.cache.cache_session(session.id, user_id, session.expires_at)
            except Exception as exc:
                logger.warning("session_cache_write_failed", error=str(exc))
        logger.info("session_created", user_id=user_id)
        return IssuedSession(token=token, session=session)

    async def _cached_user_id(self, session_id: str) -> Optional[str]:
        if not self.cache:
            return None
        try:
            return await self.cache.get_session_user(session_id)
        except Exception as exc:
            logger.warning("session_cache_read_failed", error=str(exc))
            return None

    async def resolve_session(self, token: Optional[str]) -> Optional[User]:
        """Map a cookie token to its user, or ``None`` when it authenticates nobody."""
        if not looks_like_token(token):
            return None
        session_id = hash_token(token)
        user_id = await self._cached_user_id(session_id)
        if user_id is None:
            session = self.store.get_session(session_id)
            if not session:
                return None
            if session.is_expired(utcnow()):
                logger.info("session_expired", user_id=session.user_id)
                return None
            user_id = session.user_id
        user = self.store.get_user(user_id)
        if not user:
            logger.warning("session_user_missing", user_id=user_id)
            return None
        return user

    async def invalidate_session(self, token: Optional[str]) -> None:
        if not looks_like_token(token):
            return
        session_id = hash_token(token)
        removed = self.store.revoke_session(session_id)
        if self.cache:
            await self.cache.revoke_session(session_id)
        if removed:
            logger.info("session_invalidated")

    async def invalidate_all_for_user(self, user_id: str) -> int:
        revoked = self.store.revoke_user_sessions(user_id)
        if self.cache:
            try:
                await self.cache.revoke_user_sessions(user_id)
            except Exception as exc:
                # Cached entries would outlive the store rows; fail loudly.
                logger.error(
                    "user_sessions_cache_clear_failed", user_id=user_id, error=str(exc)
                )
                raise
        logger.info("user_sessions_invalidated", user_id=user_id, count=revoked)
        return revoked

    def sweep_expired(self) -> int:
        return self.store.delete_expired_sessions(utcnow())


def set_session_cookie(response: Response, token: str, policy: CookiePolicy) -> None:
    response.set_cookie(
        policy.session_name,
        token,
        max_age=policy.session_max_age,
        path=policy.path,
        secure=policy.secure,
        httponly=True,
        samesite="lax",
    )


def clear_session_cookie(response: Response, policy: CookiePolicy) -> None:
    response.set_cookie(
        policy.session_name,
        "",
        max_age=0,
        path=policy.path,
        secure=policy.secure,
        httponly=True,
        samesite="lax",
    )
