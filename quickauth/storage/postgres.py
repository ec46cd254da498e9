from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from quickauth.logging import get_logger
from quickauth.service.lockout import LockoutPolicy
from quickauth.storage.errors import ConstraintViolation
from quickauth.storage.models import (
    Account,
    LockoutState,
    PendingSecret,
    Role,
    SecretKind,
    profile_from_dict,
    profile_to_dict,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        phone TEXT,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        role TEXT NOT NULL,
        date_of_birth DATE,
        avatar_url TEXT,
        profile JSONB,
        password_hash TEXT NOT NULL,
        is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_phone_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        failed_attempts INTEGER NOT NULL DEFAULT 0 CHECK (failed_attempts >= 0),
        last_failed_at TIMESTAMPTZ,
        locked_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS account_email_lower_idx ON account (lower(email))",
    "CREATE UNIQUE INDEX IF NOT EXISTS account_phone_idx ON account (phone) WHERE phone IS NOT NULL",
    """
    CREATE TABLE IF NOT EXISTS account_secret (
        account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        kind TEXT NOT NULL,
        digest TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (account_id, kind)
    )
    """,
    "CREATE INDEX IF NOT EXISTS account_secret_digest_idx ON account_secret (kind, digest)",
)

_CONSTRAINT_FIELDS = {
    "account_email_lower_idx": "email",
    "account_phone_idx": "phone",
    "account_pkey": "id",
}

_ACCOUNT_COLUMNS = (
    "id, email, phone, first_name, last_name, role, date_of_birth, avatar_url, "
    "profile, password_hash, is_email_verified, is_phone_verified, is_active, "
    "failed_attempts, last_failed_at, locked_until, last_login_at, created_at, updated_at"
)


class PostgresStore:
    """Postgres-backed account store.

    Uniqueness of email (case-insensitive) and phone is enforced by unique
    indexes, so a duplicate insert fails atomically instead of racing a
    separate existence check.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _constraint_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(exc.diag, "constraint_name", None) or ""
        field = _CONSTRAINT_FIELDS.get(constraint, "unknown")
        return ConstraintViolation(f"{field} already exists", {"field": field})

    def _row_to_account(
        self,
        row: Dict[str, Any],
        secrets: Optional[Dict[SecretKind, PendingSecret]] = None,
        *,
        with_password: bool,
    ) -> Account:
        role = Role(row["role"])
        profile_raw = row.get("profile")
        if isinstance(profile_raw, str):
            profile_raw = json.loads(profile_raw)
        return Account(
            id=row["id"],
            email=row["email"],
            phone=row.get("phone"),
            first_name=row["first_name"],
            last_name=row["last_name"],
            role=role,
            date_of_birth=row.get("date_of_birth"),
            avatar_url=row.get("avatar_url"),
            profile=profile_from_dict(role, profile_raw),
            is_email_verified=row["is_email_verified"],
            is_phone_verified=row["is_phone_verified"],
            is_active=row["is_active"],
            lockout=LockoutState(
                attempts=row["failed_attempts"],
                last_attempt_at=row.get("last_failed_at"),
                locked_until=row.get("locked_until"),
            ),
            pending_secrets=secrets or {},
            last_login_at=row.get("last_login_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            password_hash=row["password_hash"] if with_password else None,
        )

    def _load_secrets(self, conn, account_id: str) -> Dict[SecretKind, PendingSecret]:
        rows = conn.execute(
            "SELECT kind, digest, expires_at FROM account_secret WHERE account_id = %s",
            (account_id,),
        ).fetchall()
        return {
            SecretKind(row["kind"]): PendingSecret(
                digest=row["digest"], expires_at=row["expires_at"]
            )
            for row in rows
        }

    # ---- accounts ----------------------------------------------------

    def insert_account(self, account: Account) -> Account:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO account ({_ACCOUNT_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.email,
                        account.phone,
                        account.first_name,
                        account.last_name,
                        account.role.value,
                        account.date_of_birth,
                        account.avatar_url,
                        json.dumps(profile_to_dict(account.profile)),
                        account.password_hash,
                        account.is_email_verified,
                        account.is_phone_verified,
                        account.is_active,
                        account.lockout.attempts,
                        account.lockout.last_attempt_at,
                        account.lockout.locked_until,
                        account.last_login_at,
                        account.created_at,
                        account.updated_at,
                    ),
                )
                for kind, secret in account.pending_secrets.items():
                    conn.execute(
                        """
                        INSERT INTO account_secret (account_id, kind, digest, expires_at)
                        VALUES (%s, %s, %s, %s)
                        """,
                        (account.id, kind.value, secret.digest, secret.expires_at),
                    )
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc) from exc
        inserted = self.get_account(account.id)
        if inserted is None:
            raise RuntimeError(f"account {account.id} missing after insert")
        return inserted

    def get_account(
        self, account_id: str, *, with_password: bool = False
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM account WHERE id = %s", (account_id,)
            ).fetchone()
            if not row:
                return None
            return self._row_to_account(
                row, self._load_secrets(conn, account_id), with_password=with_password
            )

    def find_account_by_email(
        self,
        email: str,
        *,
        with_password: bool = False,
        include_inactive: bool = False,
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM account WHERE lower(email) = lower(%s)",
                (email.strip(),),
            ).fetchone()
            if not row:
                return None
            if not row["is_active"] and not include_inactive:
                return None
            return self._row_to_account(
                row, self._load_secrets(conn, row["id"]), with_password=with_password
            )

    def update_account(
        self, account: Account, *, password_hash: Optional[str] = None
    ) -> Account:
        """Write identity, profile and flag fields; see ``MemoryStore.update_account``."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE account SET
                        email = %s,
                        phone = %s,
                        first_name = %s,
                        last_name = %s,
                        role = %s,
                        date_of_birth = %s,
                        avatar_url = %s,
                        profile = %s,
                        password_hash = COALESCE(%s, password_hash),
                        is_email_verified = %s,
                        is_phone_verified = %s,
                        is_active = %s,
                        last_login_at = %s,
                        updated_at = %s
                    WHERE id = %s
                    RETURNING id
                    """,
                    (
                        account.email,
                        account.phone,
                        account.first_name,
                        account.last_name,
                        account.role.value,
                        account.date_of_birth,
                        account.avatar_url,
                        json.dumps(profile_to_dict(account.profile)),
                        password_hash,
                        account.is_email_verified,
                        account.is_phone_verified,
                        account.is_active,
                        account.last_login_at,
                        account.updated_at,
                        account.id,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc) from exc
        if not row:
            raise KeyError(account.id)
        updated = self.get_account(account.id)
        if updated is None:
            raise KeyError(account.id)
        return updated

    # ---- lockout -----------------------------------------------------

    def record_login_failure(
        self, account_id: str, policy: LockoutPolicy, now: datetime
    ) -> LockoutState:
        """Apply the failure transition in one statement.

        Mirrors ``LockoutPolicy.register_failure``: an expired lock restarts
        the count before incrementing.
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                WITH next AS (
                    SELECT id,
                           CASE
                               WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
                               ELSE failed_attempts + 1
                           END AS attempts
                    FROM account
                    WHERE id = %(id)s
                    FOR UPDATE
                )
                UPDATE account a SET
                    failed_attempts = next.attempts,
                    last_failed_at = %(now)s,
                    locked_until = CASE
                        WHEN next.attempts >= %(max_attempts)s THEN %(locked_until)s
                        ELSE NULL
                    END
                FROM next
                WHERE a.id = next.id
                RETURNING a.failed_attempts, a.last_failed_at, a.locked_until
                """,
                {
                    "id": account_id,
                    "now": now,
                    "max_attempts": policy.max_attempts,
                    "locked_until": now + policy.lock_duration,
                },
            ).fetchone()
        if not row:
            raise KeyError(account_id)
        return LockoutState(
            attempts=row["failed_attempts"],
            last_attempt_at=row["last_failed_at"],
            locked_until=row["locked_until"],
        )

    def reset_lockout(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account
                SET failed_attempts = 0, last_failed_at = NULL, locked_until = NULL
                WHERE id = %s
                """,
                (account_id,),
            )

    # ---- pending secrets ---------------------------------------------

    def set_secret(
        self, account_id: str, kind: SecretKind, secret: PendingSecret
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO account_secret (account_id, kind, digest, expires_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (account_id, kind)
                DO UPDATE SET digest = EXCLUDED.digest, expires_at = EXCLUDED.expires_at
                """,
                (account_id, kind.value, secret.digest, secret.expires_at),
            )

    def get_secret(self, account_id: str, kind: SecretKind) -> Optional[PendingSecret]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT digest, expires_at FROM account_secret
                WHERE account_id = %s AND kind = %s
                """,
                (account_id, kind.value),
            ).fetchone()
        if not row:
            return None
        return PendingSecret(digest=row["digest"], expires_at=row["expires_at"])

    def clear_secret(
        self,
        account_id: str,
        kind: SecretKind,
        *,
        expected_digest: Optional[str] = None,
    ) -> bool:
        query = "DELETE FROM account_secret WHERE account_id = %s AND kind = %s"
        params: tuple = (account_id, kind.value)
        if expected_digest is not None:
            query += " AND digest = %s"
            params = params + (expected_digest,)
        with self._connect() as conn:
            cur = conn.execute(query + " RETURNING account_id", params)
            return cur.fetchone() is not None

    def consume_secret(
        self, kind: SecretKind, digest: str, now: datetime
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM account_secret s
                USING account a
                WHERE s.account_id = a.id
                  AND a.is_active
                  AND s.kind = %s
                  AND s.digest = %s
                  AND s.expires_at >= %s
                RETURNING s.account_id
                """,
                (kind.value, digest, now),
            ).fetchone()
        if not row:
            return None
        return self.get_account(row["account_id"])
