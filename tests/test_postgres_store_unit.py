"""PostgresStore unit tests with the connection pool stubbed out."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors

from quickauth.service.lockout import LockoutPolicy
from quickauth.storage.errors import ConstraintViolation
from quickauth.storage.models import (
    Account,
    CustomerProfile,
    PendingSecret,
    Role,
    SecretKind,
)
from quickauth.storage.postgres import PostgresStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, result):
        self.result = result

    def fetchone(self):
        if isinstance(self.result, list):
            return self.result[0] if self.result else None
        return self.result

    def fetchall(self):
        if self.result is None:
            return []
        return self.result if isinstance(self.result, list) else [self.result]


class FakeConnection:
    def __init__(self, script, log):
        self.script = script
        self.log = log

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, query, params=None):
        self.log.append((" ".join(query.split()), params))
        result = self.script.pop(0) if self.script else None
        if isinstance(result, Exception):
            raise result
        return FakeCursor(result)


class ScriptedPool:
    """Hands out connections that answer queries from a fixed script."""

    def __init__(self, *results):
        self.script = list(results)
        self.log = []

    def connection(self):
        return FakeConnection(self.script, self.log)


class DuplicateKey(errors.UniqueViolation):
    def __init__(self, constraint):
        super().__init__("duplicate key value violates unique constraint")
        self._constraint = constraint

    @property
    def diag(self):
        return SimpleNamespace(constraint_name=self._constraint)


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://unused"
    return store


def _row(**overrides):
    row = {
        "id": "acc-1",
        "email": "alice@x.com",
        "phone": None,
        "first_name": "Alice",
        "last_name": "Smith",
        "role": "customer",
        "date_of_birth": None,
        "avatar_url": None,
        "profile": {"kind": "customer", "addresses": [], "preferences": {}, "loyalty_points": 0},
        "password_hash": "$argon2id$stub",
        "is_email_verified": False,
        "is_phone_verified": False,
        "is_active": True,
        "failed_attempts": 0,
        "last_failed_at": None,
        "locked_until": None,
        "last_login_at": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def _account() -> Account:
    return Account(
        id="acc-1",
        email="alice@x.com",
        first_name="Alice",
        last_name="Smith",
        role=Role.CUSTOMER,
        profile=CustomerProfile(),
        password_hash="$argon2id$stub",
    )


def test_get_account_maps_row_and_secrets():
    pool = ScriptedPool(
        _row(),
        [{"kind": "phone_otp", "digest": "d", "expires_at": NOW}],
    )
    account = _store(pool).get_account("acc-1")
    assert account.email == "alice@x.com"
    assert isinstance(account.profile, CustomerProfile)
    assert account.password_hash is None
    assert account.pending_secrets[SecretKind.PHONE_OTP].digest == "d"


def test_get_account_with_password():
    pool = ScriptedPool(_row(), [])
    account = _store(pool).get_account("acc-1", with_password=True)
    assert account.password_hash == "$argon2id$stub"


def test_find_by_email_is_case_insensitive_and_skips_inactive():
    pool = ScriptedPool(_row(is_active=False))
    store = _store(pool)
    assert store.find_account_by_email("ALICE@x.com") is None
    query, params = pool.log[0]
    assert "lower(email) = lower(%s)" in query
    assert params == ("ALICE@x.com",)


@pytest.mark.parametrize(
    "constraint, field",
    [("account_email_lower_idx", "email"), ("account_phone_idx", "phone")],
)
def test_insert_maps_unique_violation(constraint, field):
    pool = ScriptedPool(DuplicateKey(constraint))
    with pytest.raises(ConstraintViolation) as excinfo:
        _store(pool).insert_account(_account())
    assert excinfo.value.detail == {"field": field}


def test_update_keeps_hash_when_none_given():
    pool = ScriptedPool({"id": "acc-1"}, _row(), [])
    _store(pool).update_account(_account())
    query, params = pool.log[0]
    assert "COALESCE(%s, password_hash)" in query
    assert params[8] is None


def test_update_missing_account():
    pool = ScriptedPool(None)
    with pytest.raises(KeyError):
        _store(pool).update_account(_account())


def test_record_login_failure_single_statement():
    locked_until = NOW + timedelta(hours=2)
    pool = ScriptedPool(
        {"failed_attempts": 5, "last_failed_at": NOW, "locked_until": locked_until}
    )
    state = _store(pool).record_login_failure("acc-1", LockoutPolicy(), NOW)
    assert state.attempts == 5
    assert state.locked_until == locked_until
    assert len(pool.log) == 1
    query, params = pool.log[0]
    assert "FOR UPDATE" in query
    assert params["max_attempts"] == 5
    assert params["locked_until"] == locked_until


def test_consume_secret_checks_expiry_in_the_delete():
    pool = ScriptedPool(None)
    assert _store(pool).consume_secret(SecretKind.PASSWORD_RESET, "digest", NOW) is None
    query, params = pool.log[0]
    assert query.startswith("DELETE FROM account_secret")
    assert "s.expires_at >= %s" in query
    assert "a.is_active" in query
    assert params == ("password_reset", "digest", NOW)


def test_clear_secret_with_expected_digest():
    pool = ScriptedPool({"account_id": "acc-1"})
    assert _store(pool).clear_secret("acc-1", SecretKind.PHONE_OTP, expected_digest="d")
    query, params = pool.log[0]
    assert query.endswith("AND digest = %s RETURNING account_id")
    assert params == ("acc-1", "phone_otp", "d")


def test_set_secret_upserts():
    pool = ScriptedPool(None)
    _store(pool).set_secret("acc-1", SecretKind.PHONE_OTP, PendingSecret("d", NOW))
    query, _ = pool.log[0]
    assert "ON CONFLICT (account_id, kind)" in query
