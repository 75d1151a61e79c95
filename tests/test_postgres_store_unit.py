import uuid
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path

import pytest
from psycopg import errors

from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import ConsumeOutcome, TokenPurpose, utcnow
from gatehouse.storage.postgres import PostgresStore


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Replays scripted results and records every statement."""

    def __init__(self, script):
        self.script = script
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        outcome = self.script.pop(0) if self.script else FakeResult()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    @contextmanager
    def transaction(self):
        self.statements.append(("BEGIN", None))
        yield
        self.statements.append(("COMMIT", None))


class FakePool:
    def __init__(self, script=None):
        self.conn = FakeConnection(list(script or []))

    @contextmanager
    def connection(self):
        yield self.conn


def _store(tmp_path: Path, script=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(script)
    store.dsn = "postgresql://unused"
    return store


def _token_row(**overrides):
    now = utcnow()
    row = {
        "id": str(uuid.uuid4()),
        "token_hash": "h" * 64,
        "user_id": str(uuid.uuid4()),
        "purpose": "password_reset",
        "created_at": now,
        "expires_at": now + timedelta(hours=1),
        "used_at": None,
    }
    row.update(overrides)
    return row


def test_duplicate_email_maps_to_constraint_violation(tmp_path):
    store = _store(tmp_path, [errors.UniqueViolation("duplicate key")])
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("ada@example.com", "Ada")
    assert exc_info.value.detail == {"field": "email"}


def test_session_id_collision_is_reported_as_id_conflict(tmp_path):
    store = _store(tmp_path, [errors.UniqueViolation("duplicate key")])
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_session(str(uuid.uuid4()), "a" * 64, ttl=timedelta(hours=1))
    assert exc_info.value.detail == {"field": "id"}


def test_consume_uses_single_conditional_update(tmp_path):
    row = _token_row(used_at=utcnow())
    store = _store(tmp_path, [FakeResult([row])])
    outcome, record = store.consume_email_token("h" * 64, TokenPurpose.PASSWORD_RESET)
    assert outcome == ConsumeOutcome.CONSUMED
    assert record.token_hash == "h" * 64
    sql, params = store.pool.conn.statements[0]
    assert sql.startswith("UPDATE email_token SET used_at = %s")
    assert "used_at IS NULL AND expires_at > %s RETURNING *" in sql
    assert params[1:3] == ("h" * 64, "password_reset")


def test_consume_distinguishes_used_expired_and_unknown(tmp_path):
    used = _token_row(used_at=utcnow())
    expired = _token_row(expires_at=utcnow() - timedelta(minutes=1))
    store = _store(
        tmp_path,
        [FakeResult(), FakeResult([used]), FakeResult(), FakeResult([expired]), FakeResult(), FakeResult()],
    )
    assert store.consume_email_token("h" * 64, TokenPurpose.PASSWORD_RESET)[0] == ConsumeOutcome.ALREADY_USED
    assert store.consume_email_token("h" * 64, TokenPurpose.PASSWORD_RESET)[0] == ConsumeOutcome.EXPIRED
    assert store.consume_email_token("h" * 64, TokenPurpose.PASSWORD_RESET) == (ConsumeOutcome.UNKNOWN, None)


def test_create_email_token_replaces_unused_in_one_transaction(tmp_path):
    store = _store(tmp_path)
    user_id = str(uuid.uuid4())
    record = store.create_email_token(
        user_id, "t" * 64, TokenPurpose.EMAIL_VERIFICATION, ttl=timedelta(hours=24)
    )
    statements = [sql for sql, _ in store.pool.conn.statements]
    assert statements[0] == "BEGIN"
    assert statements[1].startswith("DELETE FROM email_token WHERE user_id = %s")
    assert statements[2].startswith("INSERT INTO email_token")
    assert statements[3] == "COMMIT"
    assert record.purpose == TokenPurpose.EMAIL_VERIFICATION


def test_revocations_return_rowcounts(tmp_path):
    store = _store(tmp_path, [FakeResult(rowcount=3), FakeResult(rowcount=0), FakeResult(rowcount=2)])
    assert store.revoke_user_sessions(str(uuid.uuid4())) == 3
    assert store.revoke_session("a" * 64) is False
    assert store.delete_expired_sessions() == 2


def test_user_row_mapping(tmp_path):
    now = utcnow()
    row = {
        "id": uuid.uuid4(),
        "email": "ada@example.com",
        "name": "Ada",
        "company_name": None,
        "phone": None,
        "email_verified": True,
        "email_verified_at": now,
        "subscription_status": "trialing",
        "subscription_tier": "pro",
        "meta": '{"source": "invite"}',
        "created_at": now,
        "updated_at": now,
    }
    store = _store(tmp_path, [FakeResult([row])])
    user = store.get_user_by_email("ada@example.com")
    assert user.id == str(row["id"])
    assert user.has_active_subscription
    assert user.meta == {"source": "invite"}
