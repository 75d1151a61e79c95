from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL DEFAULT '',
        company_name TEXT,
        phone TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        email_verified_at TIMESTAMPTZ,
        subscription_status TEXT NOT NULL DEFAULT 'inactive',
        subscription_tier TEXT,
        meta JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        user_agent TEXT,
        ip_addr TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS email_token (
        id UUID PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        purpose TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        used_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS email_token_user_idx ON email_token (user_id, purpose)",
)


class PostgresStore:
    """Postgres-backed store for accounts, sessions and emailed tokens.

    Each public method issues one statement (or one short transaction), so
    invalidation and token consumption are atomic at the database level.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: dict) -> User:
        meta = row.get("meta")
        if isinstance(meta, str):
            meta = json.loads(meta)
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name") or "",
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            company_name=row.get("company_name"),
            phone=row.get("phone"),
            email_verified=bool(row.get("email_verified", False)),
            email_verified_at=row.get("email_verified_at"),
            subscription_status=SubscriptionStatus(
                row.get("subscription_status") or SubscriptionStatus.INACTIVE.value
            ),
            subscription_tier=row.get("subscription_tier"),
            meta=meta,
        )

    @staticmethod
    def _token_from_row(row: dict) -> EmailToken:
        return EmailToken(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            purpose=TokenPurpose(row["purpose"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            used_at=row.get("used_at"),
        )

    # users
    def create_user(
        self,
        email: str,
        name: str,
        *,
        company_name: Optional[str] = None,
        phone: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, company_name, phone, meta)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        name,
                        company_name,
                        phone,
                        json.dumps(meta) if meta else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def update_user_profile(
        self,
        user_id: str,
        *,
        name: str,
        company_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET name = %s, company_name = %s, phone = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (name, company_name, phone, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET email_verified = TRUE,
                    email_verified_at = COALESCE(email_verified_at, now()),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_subscription(
        self, user_id: str, status: SubscriptionStatus, tier: Optional[str] = None
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET subscription_status = %s, subscription_tier = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (SubscriptionStatus(status).value, tier, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    # credentials
    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

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
        sess = Session.new(
            token_hash, user_id, ttl, user_agent=user_agent, ip_addr=ip_addr
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, created_at, expires_at, user_agent, ip_addr)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.created_at,
                        sess.expires_at,
                        user_agent,
                        ip_addr,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"field": "id"})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
        )

    def revoke_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE id = %s", (session_id,)
            )
            return result.rowcount > 0

    def revoke_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s", (now or utcnow(),)
            )
            return result.rowcount

    # emailed tokens
    def create_email_token(
        self,
        user_id: str,
        token_hash: str,
        purpose: TokenPurpose,
        *,
        ttl: timedelta,
    ) -> EmailToken:
        record = EmailToken.new(token_hash, user_id, TokenPurpose(purpose), ttl)
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        """
                        DELETE FROM email_token
                        WHERE user_id = %s AND purpose = %s AND used_at IS NULL
                        """,
                        (user_id, record.purpose.value),
                    )
                    conn.execute(
                        """
                        INSERT INTO email_token (id, token_hash, user_id, purpose, created_at, expires_at)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        """,
                        (
                            record.id,
                            record.token_hash,
                            record.user_id,
                            record.purpose.value,
                            record.created_at,
                            record.expires_at,
                        ),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return record

    def get_email_token(
        self, token_hash: str, purpose: TokenPurpose
    ) -> Optional[EmailToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM email_token WHERE token_hash = %s AND purpose = %s",
                (token_hash, TokenPurpose(purpose).value),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def consume_email_token(
        self,
        token_hash: str,
        purpose: TokenPurpose,
        now: Optional[datetime] = None,
    ) -> Tuple[ConsumeOutcome, Optional[EmailToken]]:
        now = now or utcnow()
        purpose_value = TokenPurpose(purpose).value
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE email_token
                SET used_at = %s
                WHERE token_hash = %s AND purpose = %s
                  AND used_at IS NULL AND expires_at > %s
                RETURNING *
                """,
                (now, token_hash, purpose_value, now),
            ).fetchone()
            if row:
                return ConsumeOutcome.CONSUMED, self._token_from_row(row)
            existing = conn.execute(
                "SELECT * FROM email_token WHERE token_hash = %s AND purpose = %s",
                (token_hash, purpose_value),
            ).fetchone()
        if not existing:
            return ConsumeOutcome.UNKNOWN, None
        record = self._token_from_row(existing)
        if record.is_used:
            return ConsumeOutcome.ALREADY_USED, record
        return ConsumeOutcome.EXPIRED, record

    def delete_expired_email_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM email_token WHERE expires_at <= %s", (now or utcnow(),)
            )
            return result.rowcount


__all__ = ["PostgresStore"]
