from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import (
    ConsumeOutcome,
    EmailToken,
    Session,
    SubscriptionStatus,
    TokenPurpose,
    User,
    utcnow,
)


class MemoryStore:
    """In-process store for users, credentials, sessions and emailed tokens.

    State is mirrored to ``<fs_root>/state/memory_store.json`` after every
    mutation so a development server survives restarts. Every public method
    runs under one re-entrant lock, which makes each individual operation
    (create, invalidate, consume) atomic.
    """

    def __init__(self, fs_root: str = "/tmp/gatehouse") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        self.email_tokens: Dict[str, EmailToken] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users
    def create_user(
        self,
        email: str,
        name: str,
        *,
        company_name: Optional[str] = None,
        phone: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                company_name=company_name,
                phone=phone,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def update_user_profile(
        self,
        user_id: str,
        *,
        name: str,
        company_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.name = name
            user.company_name = company_name
            user.phone = phone
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if not user.email_verified:
                user.email_verified = True
                user.email_verified_at = utcnow()
                user.updated_at = user.email_verified_at
                self._persist_state()
            return user

    def set_subscription(
        self, user_id: str, status: SubscriptionStatus, tier: Optional[str] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.subscription_status = SubscriptionStatus(status)
            user.subscription_tier = tier
            user.updated_at = utcnow()
            self._persist_state()
            return user

    # credentials
    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # sessions
    def create_session(
        self,
        user_id: str,
        token_hash: str,
        *,
        ttl: timedelta,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if token_hash in self.sessions:
                raise ConstraintViolation("session already exists", {"field": "id"})
            sess = Session.new(
                token_hash, user_id, ttl, user_agent=user_agent, ip_addr=ip_addr
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def revoke_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def revoke_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            expired = [sid for sid, sess in self.sessions.items() if sess.is_expired(now)]
            for sid in expired:
                self.sessions.pop(sid, None)
            if expired:
                self._persist_state()
            return len(expired)

    # emailed tokens
    def create_email_token(
        self,
        user_id: str,
        token_hash: str,
        purpose: TokenPurpose,
        *,
        ttl: timedelta,
    ) -> EmailToken:
        """Store a fresh token, dropping the user's other unused tokens of that purpose."""
        purpose = TokenPurpose(purpose)
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            for key, existing in list(self.email_tokens.items()):
                if (
                    existing.user_id == user_id
                    and existing.purpose == purpose
                    and not existing.is_used
                ):
                    self.email_tokens.pop(key, None)
            record = EmailToken.new(token_hash, user_id, purpose, ttl)
            self.email_tokens[token_hash] = record
            self._persist_state()
            return record

    def get_email_token(
        self, token_hash: str, purpose: TokenPurpose
    ) -> Optional[EmailToken]:
        with self._data_lock:
            record = self.email_tokens.get(token_hash)
            if not record or record.purpose != TokenPurpose(purpose):
                return None
            return record

    def consume_email_token(
        self,
        token_hash: str,
        purpose: TokenPurpose,
        now: Optional[datetime] = None,
    ) -> Tuple[ConsumeOutcome, Optional[EmailToken]]:
        now = now or utcnow()
        with self._data_lock:
            record = self.email_tokens.get(token_hash)
            if not record or record.purpose != TokenPurpose(purpose):
                return ConsumeOutcome.UNKNOWN, None
            if record.is_used:
                return ConsumeOutcome.ALREADY_USED, record
            if record.is_expired(now):
                return ConsumeOutcome.EXPIRED, record
            record.used_at = now
            self._persist_state()
            return ConsumeOutcome.CONSUMED, record

    def delete_expired_email_tokens(self, now: Optional[datetime] = None) -> int:
        """Drop tokens that are expired, or used and past their original expiry."""
        now = now or utcnow()
        with self._data_lock:
            stale = [
                key
                for key, record in self.email_tokens.items()
                if record.is_expired(now)
            ]
            for key in stale:
                self.email_tokens.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)[
                :limit
            ]

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "email_tokens": [
                self._serialize_email_token(t) for t in self.email_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.email_tokens = {
            t["token_hash"]: self._deserialize_email_token(t)
            for t in data.get("email_tokens", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "company_name": user.company_name,
            "phone": user.phone,
            "email_verified": user.email_verified,
            "email_verified_at": self._serialize_datetime(user.email_verified_at),
            "subscription_status": SubscriptionStatus(user.subscription_status).value,
            "subscription_tier": user.subscription_tier,
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name", ""),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at") or data["created_at"]
            ),
            company_name=data.get("company_name"),
            phone=data.get("phone"),
            email_verified=bool(data.get("email_verified", False)),
            email_verified_at=self._deserialize_datetime(data.get("email_verified_at")),
            subscription_status=SubscriptionStatus(
                data.get("subscription_status") or SubscriptionStatus.INACTIVE.value
            ),
            subscription_tier=data.get("subscription_tier"),
            meta=data.get("meta"),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "user_agent": session.user_agent,
            "ip_addr": session.ip_addr,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
        )

    def _serialize_email_token(self, record: EmailToken) -> dict:
        return {
            "id": record.id,
            "token_hash": record.token_hash,
            "user_id": record.user_id,
            "purpose": TokenPurpose(record.purpose).value,
            "created_at": self._serialize_datetime(record.created_at),
            "expires_at": self._serialize_datetime(record.expires_at),
            "used_at": self._serialize_datetime(record.used_at),
        }

    def _deserialize_email_token(self, data: dict) -> EmailToken:
        return EmailToken(
            id=data.get("id") or str(uuid.uuid4()),
            token_hash=data["token_hash"],
            user_id=data["user_id"],
            purpose=TokenPurpose(data["purpose"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used_at=self._deserialize_datetime(data.get("used_at")),
        )
