from __future__ import annotations

import uuid
from typing import Any, Callable, List, Optional, TypeVar

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from agriqual.logging import get_logger
from agriqual.storage.errors import ConstraintViolation
from agriqual.storage.models import (
    Account,
    CredentialHistoryEntry,
    LockoutState,
    LoginAttempt,
    PendingRegistration,
    utcnow,
)

T = TypeVar("T")

LOGIN_PURPOSE = "login"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        phone TEXT,
        role TEXT NOT NULL DEFAULT 'farmer',
        credential_hash TEXT,
        legacy_password TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        failed_login_count INTEGER NOT NULL DEFAULT 0,
        lock_until TIMESTAMPTZ,
        token_version INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS credential_history (
        id BIGSERIAL PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        credential_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS credential_history_account_created
        ON credential_history (account_id, created_at DESC, id DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS lockout_state (
        account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        purpose TEXT NOT NULL,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        lock_until TIMESTAMPTZ,
        last_attempt_at TIMESTAMPTZ,
        PRIMARY KEY (account_id, purpose)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_registration (
        email TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        phone TEXT,
        role TEXT NOT NULL DEFAULT 'farmer',
        credential_hash TEXT NOT NULL,
        otp_hash TEXT NOT NULL,
        otp_expiry TIMESTAMPTZ NOT NULL,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS login_attempt (
        id BIGSERIAL PRIMARY KEY,
        email TEXT NOT NULL,
        account_id TEXT,
        ip_address TEXT,
        user_agent TEXT,
        success BOOLEAN NOT NULL,
        reason TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_attempt_email ON login_attempt (email, created_at DESC)",
)


def _account_from_row(row: dict) -> Account:
    return Account(
        id=str(row["id"]),
        email=row["email"],
        name=row["name"],
        phone=row.get("phone"),
        role=row.get("role") or "farmer",
        credential_hash=row.get("credential_hash"),
        legacy_password=row.get("legacy_password"),
        email_verified=bool(row.get("email_verified")),
        failed_login_count=int(row.get("failed_login_count") or 0),
        lock_until=row.get("lock_until"),
        token_version=int(row.get("token_version") or 1),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _pending_from_row(row: dict) -> PendingRegistration:
    return PendingRegistration(
        email=row["email"],
        name=row["name"],
        phone=row.get("phone"),
        role=row.get("role") or "farmer",
        credential_hash=row["credential_hash"],
        otp_hash=row["otp_hash"],
        otp_expiry=row["otp_expiry"],
        failed_attempts=int(row.get("failed_attempts") or 0),
        created_at=row.get("created_at") or utcnow(),
    )


class PostgresStore:
    """Postgres-backed store shared by every replica."""

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
        """Create tables that are missing; existing tables are left untouched."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # accounts
    def create_account(
        self,
        email: str,
        name: str,
        *,
        phone: Optional[str] = None,
        role: str = "farmer",
        credential_hash: Optional[str] = None,
        legacy_password: Optional[str] = None,
        email_verified: bool = False,
    ) -> Account:
        account_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (id, email, name, phone, role, credential_hash,
                                         legacy_password, email_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account_id,
                        email.strip().lower(),
                        name,
                        phone,
                        role,
                        credential_hash,
                        legacy_password,
                        email_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return _account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return _account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return _account_from_row(row) if row else None

    def update_account_role(self, account_id: str, role: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE account SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role, account_id),
            ).fetchone()
        return _account_from_row(row) if row else None

    # credentials
    def set_credential(
        self,
        account_id: str,
        credential_hash: str,
        *,
        retire_current: bool = False,
        retention: int = 10,
    ) -> Account:
        with self._connect() as conn:
            with conn.transaction():
                current = conn.execute(
                    "SELECT credential_hash FROM account WHERE id = %s FOR UPDATE",
                    (account_id,),
                ).fetchone()
                if not current:
                    raise ConstraintViolation(
                        "account not found for credentials", {"account_id": account_id}
                    )
                if retire_current and current.get("credential_hash"):
                    conn.execute(
                        "INSERT INTO credential_history (account_id, credential_hash) VALUES (%s, %s)",
                        (account_id, current["credential_hash"]),
                    )
                    conn.execute(
                        """
                        DELETE FROM credential_history
                        WHERE account_id = %s AND id NOT IN (
                            SELECT id FROM credential_history WHERE account_id = %s
                            ORDER BY created_at DESC, id DESC LIMIT %s
                        )
                        """,
                        (account_id, account_id, retention),
                    )
                row = conn.execute(
                    """
                    UPDATE account
                    SET credential_hash = %s,
                        legacy_password = NULL,
                        token_version = token_version + %s,
                        updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (credential_hash, 1 if retire_current else 0, account_id),
                ).fetchone()
        return _account_from_row(row)

    def list_credential_history(
        self, account_id: str, limit: int = 5
    ) -> List[CredentialHistoryEntry]:
        if limit <= 0:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT account_id, credential_hash, created_at FROM credential_history
                WHERE account_id = %s ORDER BY created_at DESC, id DESC LIMIT %s
                """,
                (account_id, limit),
            ).fetchall()
        return [
            CredentialHistoryEntry(
                account_id=str(row["account_id"]),
                credential_hash=row["credential_hash"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # lockout
    def get_lockout(self, account_id: str, purpose: str) -> Optional[LockoutState]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM lockout_state WHERE account_id = %s AND purpose = %s",
                (account_id, purpose),
            ).fetchone()
        if not row:
            return None
        return LockoutState(
            account_id=str(row["account_id"]),
            purpose=row["purpose"],
            failed_attempts=int(row["failed_attempts"]),
            lock_until=row.get("lock_until"),
            last_attempt_at=row.get("last_attempt_at"),
        )

    def update_lockout(
        self, account_id: str, purpose: str, mutate: Callable[[LockoutState], T]
    ) -> T:
        """Read-modify-write the lockout row while holding its row lock."""

        with self._connect() as conn:
            with conn.transaction():
                conn.execute(
                    """
                    INSERT INTO lockout_state (account_id, purpose) VALUES (%s, %s)
                    ON CONFLICT (account_id, purpose) DO NOTHING
                    """,
                    (account_id, purpose),
                )
                row = conn.execute(
                    """
                    SELECT * FROM lockout_state
                    WHERE account_id = %s AND purpose = %s FOR UPDATE
                    """,
                    (account_id, purpose),
                ).fetchone()
                state = LockoutState(
                    account_id=account_id,
                    purpose=purpose,
                    failed_attempts=int(row["failed_attempts"]),
                    lock_until=row.get("lock_until"),
                    last_attempt_at=row.get("last_attempt_at"),
                )
                result = mutate(state)
                conn.execute(
                    """
                    UPDATE lockout_state
                    SET failed_attempts = %s, lock_until = %s, last_attempt_at = %s
                    WHERE account_id = %s AND purpose = %s
                    """,
                    (
                        state.failed_attempts,
                        state.lock_until,
                        state.last_attempt_at,
                        account_id,
                        purpose,
                    ),
                )
                if purpose == LOGIN_PURPOSE:
                    conn.execute(
                        "UPDATE account SET failed_login_count = %s, lock_until = %s WHERE id = %s",
                        (state.failed_attempts, state.lock_until, account_id),
                    )
        return result

    # pending registrations
    def upsert_pending_registration(self, pending: PendingRegistration) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO pending_registration (email, name, phone, role, credential_hash,
                                                  otp_hash, otp_expiry, failed_attempts, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, 0, %s)
                ON CONFLICT (email) DO UPDATE
                SET name = EXCLUDED.name,
                    phone = EXCLUDED.phone,
                    role = EXCLUDED.role,
                    credential_hash = EXCLUDED.credential_hash,
                    otp_hash = EXCLUDED.otp_hash,
                    otp_expiry = EXCLUDED.otp_expiry,
                    failed_attempts = 0,
                    created_at = EXCLUDED.created_at
                """,
                (
                    pending.email.strip().lower(),
                    pending.name,
                    pending.phone,
                    pending.role,
                    pending.credential_hash,
                    pending.otp_hash,
                    pending.otp_expiry,
                    pending.created_at,
                ),
            )

    def get_pending_registration(self, email: str) -> Optional[PendingRegistration]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pending_registration WHERE email = %s",
                (email.strip().lower(),),
            ).fetchone()
        return _pending_from_row(row) if row else None

    def delete_pending_registration(
        self, email: str, otp_hash: Optional[str] = None
    ) -> bool:
        """Delete the pending record; with ``otp_hash``, only if it still carries that code."""

        with self._connect() as conn:
            if otp_hash is None:
                cur = conn.execute(
                    "DELETE FROM pending_registration WHERE email = %s",
                    (email.strip().lower(),),
                )
            else:
                cur = conn.execute(
                    "DELETE FROM pending_registration WHERE email = %s AND otp_hash = %s",
                    (email.strip().lower(), otp_hash),
                )
            return cur.rowcount > 0

    def record_pending_failure(self, email: str, max_attempts: int) -> int:
        email = email.strip().lower()
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    UPDATE pending_registration SET failed_attempts = failed_attempts + 1
                    WHERE email = %s RETURNING failed_attempts
                    """,
                    (email,),
                ).fetchone()
                if not row:
                    return 0
                attempts = int(row["failed_attempts"])
                if attempts >= max_attempts:
                    conn.execute(
                        "DELETE FROM pending_registration WHERE email = %s", (email,)
                    )
        return attempts

    def complete_registration(self, email: str, otp_hash: str) -> Optional[Account]:
        """Consume the pending record and promote it in one transaction."""

        email = email.strip().lower()
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    DELETE FROM pending_registration WHERE email = %s AND otp_hash = %s
                    RETURNING *
                    """,
                    (email, otp_hash),
                ).fetchone()
                if not row:
                    return None
                pending = _pending_from_row(row)
                existing = conn.execute(
                    "SELECT * FROM account WHERE email = %s FOR UPDATE", (email,)
                ).fetchone()
                if existing and existing.get("email_verified"):
                    # keep the DELETE above; the code is spent either way
                    conflict = True
                    account_row: Optional[dict[str, Any]] = None
                elif existing:
                    conflict = False
                    account_row = conn.execute(
                        """
                        UPDATE account
                        SET name = %s, phone = COALESCE(%s, phone), role = %s,
                            credential_hash = %s, legacy_password = NULL,
                            email_verified = TRUE, failed_login_count = 0,
                            lock_until = NULL, updated_at = now()
                        WHERE id = %s
                        RETURNING *
                        """,
                        (
                            pending.name,
                            pending.phone,
                            pending.role,
                            pending.credential_hash,
                            existing["id"],
                        ),
                    ).fetchone()
                    conn.execute(
                        "DELETE FROM lockout_state WHERE account_id = %s AND purpose = %s",
                        (existing["id"], LOGIN_PURPOSE),
                    )
                else:
                    conflict = False
                    account_row = conn.execute(
                        """
                        INSERT INTO account (id, email, name, phone, role, credential_hash,
                                             email_verified)
                        VALUES (%s, %s, %s, %s, %s, %s, TRUE)
                        RETURNING *
                        """,
                        (
                            str(uuid.uuid4()),
                            email,
                            pending.name,
                            pending.phone,
                            pending.role,
                            pending.credential_hash,
                        ),
                    ).fetchone()
        if conflict:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _account_from_row(account_row)

    # audit
    def record_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_attempt (email, account_id, ip_address, user_agent,
                                           success, reason, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.email,
                    attempt.account_id,
                    attempt.ip_address,
                    attempt.user_agent,
                    attempt.success,
                    attempt.reason,
                    attempt.created_at,
                ),
            )

    def list_login_attempts(self, email: str, limit: int = 20) -> List[LoginAttempt]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM login_attempt WHERE email = %s
                ORDER BY created_at DESC, id DESC LIMIT %s
                """,
                (email.strip().lower(), limit),
            ).fetchall()
        return [
            LoginAttempt(
                email=row["email"],
                success=bool(row["success"]),
                account_id=row.get("account_id"),
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                reason=row.get("reason"),
                created_at=row["created_at"],
            )
            for row in rows
        ]
