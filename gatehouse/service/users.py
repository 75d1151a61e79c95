from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatehouse.config import Settings
from gatehouse.logging import get_logger, redact_email
from gatehouse.service.email import EmailService
from gatehouse.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from gatehouse.service.invite import normalize_code
from gatehouse.service.sessions import SessionManager
from gatehouse.service.tokens import TokenIssuer, TokenKind, hash_token, looks_like_token
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import ConsumeOutcome, Session, TokenPurpose, User

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 72
MAX_EMAIL_LENGTH = 254
MAX_NAME_LENGTH = 255
MAX_COMPANY_LENGTH = 255
MAX_PHONE_LENGTH = 50
PASSWORD_ALGO = "argon2id"


class UserStore(Protocol):
    def create_user(
        self,
        email: str,
        name: str,
        *,
        company_name: Optional[str] = None,
        phone: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user_profile(
        self,
        user_id: str,
        *,
        name: str,
        company_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_email_token(self, user_id, token_hash, purpose, *, ttl): ...

    def get_email_token(self, token_hash, purpose): ...

    def consume_email_token(self, token_hash, purpose, now=None): ...

    def delete_expired_email_tokens(self, now=None) -> int: ...


@dataclass(frozen=True)
class LoginResult:
    user: User
    token: str
    session: Session


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def email_problem(email: str) -> Optional[str]:
    """Return why ``email`` is malformed, or ``None`` when it looks deliverable."""
    if not email:
        return "Email is required"
    if len(email) > MAX_EMAIL_LENGTH:
        return "Email must be 254 characters or less"
    if email.count("@") != 1:
        return "Email must contain exactly one @ symbol"
    local, _, domain = email.partition("@")
    if not local:
        return "Email cannot start with @"
    if not domain:
        return "Email cannot end with @"
    if "." not in domain:
        return "Email domain must contain a dot"
    if ".." in email:
        return "Email cannot contain consecutive dots"
    return None


def is_valid_email(email: Optional[str]) -> bool:
    return email_problem(normalize_email(email)) is None


def password_problem(password: Optional[str]) -> Optional[str]:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        return "Password must be at least 8 characters"
    if len(password) > MAX_PASSWORD_LENGTH:
        return "Password must be 72 characters or less"
    return None


def _clean(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


class UserService:
    """Account lifecycle: registration, credentials, emailed tokens, profile.

    Every operation raises a :class:`~gatehouse.service.errors.ServiceError`
    subclass on failure so handlers can map outcomes to pages without
    inspecting storage details. Passwords are hashed with argon2id off the
    event loop.
    """

    def __init__(
        self,
        store: UserStore,
        sessions: SessionManager,
        issuer: TokenIssuer,
        email: EmailService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.issuer = issuer
        self.email = email
        self.settings = settings
        self.logger = logger
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # unknown-email logins verify against this so they cost the same as a bad password
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    # password hashing
    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _burn_dummy_verify(self, password: str) -> None:
        """Spend one argon2 verification so unknown emails cost the same as bad passwords."""
        self._verify_hash(self._dummy_hash, password)

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            self._burn_dummy_verify(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        return self._verify_hash(stored_hash, password)

    async def _save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = await asyncio.to_thread(self._hash_password, password)
        self.store.save_password(user_id, pwd_hash, algo)

    # registration and login
    async def register(
        self,
        email: str,
        password: str,
        name: str,
        *,
        company_name: Optional[str] = None,
        phone: Optional[str] = None,
        invite_code: Optional[str] = None,
    ) -> User:
        email = normalize_email(email)
        problem = email_problem(email)
        if problem:
            raise ValidationError(problem, fields={"email": problem})
        name = (name or "").strip()
        if not name:
            raise ValidationError("Name is required", fields={"name": "Name is required"})
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError(
                "Name must be 255 characters or less",
                fields={"name": "Name must be 255 characters or less"},
            )
        problem = password_problem(password)
        if problem:
            raise ValidationError(problem, fields={"password": problem})

        if self.store.get_user_by_email(email):
            raise ConflictError(
                "Email already registered", fields={"email": "Email already registered"}
            )
        pwd_hash, algo = await asyncio.to_thread(self._hash_password, password)
        try:
            user = self.store.create_user(
                email,
                name,
                company_name=_clean(company_name),
                phone=_clean(phone),
                meta={"invite_code": normalize_code(invite_code)} if _clean(invite_code) else None,
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "Email already registered",
                detail=exc.detail,
                fields={"email": "Email already registered"},
            ) from exc
        self.store.save_password(user.id, pwd_hash, algo)
        self.logger.info("user_registered", user_id=user.id)
        return user

    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
        replaces: Optional[str] = None,
    ) -> LoginResult:
        """Verify credentials and open a session.

        ``replaces`` is the session token the browser already holds; it is
        revoked once the credentials check out.
        """
        email = normalize_email(email)
        user = self.store.get_user_by_email(email) if email else None
        if not user:
            await asyncio.to_thread(self._burn_dummy_verify, password or "")
            self.logger.info("login_failed", reason="unknown_email")
            raise AuthenticationError("Invalid email or password")
        if not await asyncio.to_thread(self.verify_password, user.id, password or ""):
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise AuthenticationError("Invalid email or password")
        await self.sessions.invalidate_session(replaces)
        issued = await self.sessions.create_session(
            user.id, user_agent=user_agent, ip_addr=ip_addr
        )
        self.logger.info("login_succeeded", user_id=user.id)
        return LoginResult(user=user, token=issued.token, session=issued.session)

    async def logout(self, token: Optional[str]) -> None:
        await self.sessions.invalidate_session(token)

    def get_by_id(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        return user

    def get_by_email(self, email: str) -> User:
        user = self.store.get_user_by_email(normalize_email(email))
        if not user:
            raise NotFoundError("User not found")
        return user

    # email verification
    def create_email_verification_token(self, user_id: str) -> str:
        raw = self.issuer.issue(TokenKind.EMAIL_VERIFICATION)
        self.store.create_email_token(
            user_id,
            hash_token(raw),
            TokenPurpose.EMAIL_VERIFICATION,
            ttl=self.issuer.ttl(TokenKind.EMAIL_VERIFICATION),
        )
        return raw

    def send_verification(self, user: User) -> None:
        """Issue a fresh verification token and email it in the background."""
        token = self.create_email_verification_token(user.id)
        self.email.dispatch(
            self.email.send_verification_email,
            user.email,
            user.display_name,
            token,
            kind="email_verification",
        )
        self.logger.info("email_verification_requested", user_id=user.id)

    def verify_email(self, token: Optional[str]) -> User:
        """Consume a verification token and mark its owner verified.

        Raises ``NotFoundError`` for unknown, malformed or expired links and
        ``ConflictError`` when the link was already used or the account is
        already verified.
        """
        if not looks_like_token(token):
            raise NotFoundError("Verification link not found")
        outcome, record = self.store.consume_email_token(
            hash_token(token), TokenPurpose.EMAIL_VERIFICATION
        )
        if outcome == ConsumeOutcome.ALREADY_USED:
            raise ConflictError("Email already verified")
        if outcome != ConsumeOutcome.CONSUMED or record is None:
            self.logger.warning("email_verification_invalid_token", outcome=outcome.value)
            raise NotFoundError("Verification link expired or invalid")
        user = self.store.get_user(record.user_id)
        if not user:
            raise NotFoundError("User not found")
        if user.email_verified:
            raise ConflictError("Email already verified")
        verified = self.store.mark_email_verified(user.id)
        if not verified:
            raise ServerError("Failed to mark email verified")
        self.logger.info("email_verified", user_id=user.id)
        return verified

    def resend_verification_email(self, email: str) -> None:
        """Send a new link when an unverified account exists; silent otherwise."""
        email = normalize_email(email)
        problem = email_problem(email)
        if problem:
            raise ValidationError(problem, fields={"email": problem})
        user = self.store.get_user_by_email(email)
        if not user or user.email_verified:
            self.logger.info(
                "verification_resend_skipped",
                email_redacted=redact_email(email),
                reason="verified" if user else "unknown_email",
            )
            return
        self.send_verification(user)

    # password reset
    def create_password_reset_token(self, user_id: str) -> str:
        raw = self.issuer.issue(TokenKind.PASSWORD_RESET)
        self.store.create_email_token(
            user_id,
            hash_token(raw),
            TokenPurpose.PASSWORD_RESET,
            ttl=self.issuer.ttl(TokenKind.PASSWORD_RESET),
        )
        return raw

    def request_password_reset(self, email: str) -> None:
        """Email a reset link when the account exists; silent otherwise."""
        email = normalize_email(email)
        problem = email_problem(email)
        if problem:
            raise ValidationError(problem, fields={"email": problem})
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info(
                "password_reset_unknown_email", email_redacted=redact_email(email)
            )
            return
        token = self.create_password_reset_token(user.id)
        self.email.dispatch(
            self.email.send_password_reset_email,
            user.email,
            user.display_name,
            token,
            kind="password_reset",
        )
        self.logger.info("password_reset_requested", user_id=user.id)

    def validate_password_reset_token(self, token: Optional[str]) -> User:
        if not looks_like_token(token):
            raise NotFoundError("Reset link not found")
        record = self.store.get_email_token(hash_token(token), TokenPurpose.PASSWORD_RESET)
        if not record or not record.is_valid():
            raise NotFoundError("Reset link expired or invalid")
        user = self.store.get_user(record.user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    async def reset_password(self, token: Optional[str], new_password: str) -> User:
        problem = password_problem(new_password)
        if problem:
            raise ValidationError(problem, fields={"password": problem})
        if not looks_like_token(token):
            raise NotFoundError("Reset link not found")
        outcome, record = self.store.consume_email_token(
            hash_token(token), TokenPurpose.PASSWORD_RESET
        )
        if outcome != ConsumeOutcome.CONSUMED or record is None:
            self.logger.warning("password_reset_invalid_token", outcome=outcome.value)
            raise NotFoundError("Reset link expired or invalid")
        user = self.store.get_user(record.user_id)
        if not user:
            raise NotFoundError("User not found")
        await self._save_password(user.id, new_password)
        revoked = await self.sessions.invalidate_all_for_user(user.id)
        self.logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        return user

    # account settings
    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        problem = password_problem(new_password)
        if problem:
            raise ValidationError(problem, fields={"new_password": problem})
        user = self.get_by_id(user_id)
        if not await asyncio.to_thread(self.verify_password, user.id, current_password or ""):
            raise AuthenticationError(
                "Current password is incorrect",
                fields={"current_password": "Current password is incorrect"},
            )
        await self._save_password(user.id, new_password)
        revoked = await self.sessions.invalidate_all_for_user(user.id)
        self.logger.info("password_changed", user_id=user.id, sessions_revoked=revoked)

    def update_profile(
        self,
        user_id: str,
        *,
        name: str,
        company_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> User:
        errors: Dict[str, str] = {}
        name = (name or "").strip()
        company_name = _clean(company_name)
        phone = _clean(phone)
        if not name:
            errors["name"] = "Name is required"
        elif len(name) > MAX_NAME_LENGTH:
            errors["name"] = "Name must be 255 characters or less"
        if company_name and len(company_name) > MAX_COMPANY_LENGTH:
            errors["company_name"] = "Company name must be 255 characters or less"
        if phone and len(phone) > MAX_PHONE_LENGTH:
            errors["phone"] = "Phone must be 50 characters or less"
        if errors:
            raise ValidationError(next(iter(errors.values())), fields=errors)
        user = self.store.update_user_profile(
            user_id, name=name, company_name=company_name, phone=phone
        )
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        self.logger.info("profile_updated", user_id=user_id)
        return user

    def delete_expired(self) -> Dict[str, int]:
        sessions = self.sessions.sweep_expired()
        tokens = self.store.delete_expired_email_tokens()
        return {"sessions": sessions, "email_tokens": tokens}
