from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from portalauth.logging import get_logger
from portalauth.storage.errors import ConstraintViolation
from portalauth.storage.models import (
    AccountStatus,
    OTPRecord,
    PasswordResetToken,
    Principal,
    normalize_email,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT,
        role TEXT NOT NULL DEFAULT 'job_seeker',
        status TEXT NOT NULL DEFAULT 'inactive',
        verified BOOLEAN NOT NULL DEFAULT FALSE,
        verified_at TIMESTAMPTZ,
        last_login TIMESTAMPTZ,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS verification_token (
        id UUID PRIMARY KEY,
        identifier TEXT NOT NULL,
        code_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS verification_token_identifier_idx ON verification_token (identifier)",
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        id UUID PRIMARY KEY,
        identifier TEXT NOT NULL,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed credential store.

    Counter updates are single statements or short transactions holding a
    row lock, so concurrent failures for the same identifier serialize.
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
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _row_to_principal(row: Dict[str, Any]) -> Principal:
        return Principal(
            id=str(row["id"]),
            name=row["name"],
            email=row["email"],
            password_hash=row.get("password_hash"),
            role=row.get("role", "job_seeker"),
            status=row.get("status", AccountStatus.INACTIVE.value),
            verified=bool(row.get("verified", False)),
            verified_at=row.get("verified_at"),
            last_login=row.get("last_login"),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            locked_until=row.get("locked_until"),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

    @staticmethod
    def _row_to_otp(row: Dict[str, Any]) -> OTPRecord:
        return OTPRecord(
            id=str(row["id"]),
            email=row["identifier"],
            code_hash=row["code_hash"],
            expires_at=row["expires_at"],
            attempts=int(row.get("attempts") or 0),
            locked_until=row.get("locked_until"),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

    # principals
    def create_user(
        self,
        name: str,
        email: str,
        password_hash: Optional[str],
        role: str,
        *,
        status: str = AccountStatus.INACTIVE.value,
        verified: bool = False,
    ) -> Principal:
        user = Principal.new(name, email, password_hash, role, status=status, verified=verified)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, name, email, password_hash, role, status, verified, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.name,
                        user.email,
                        user.password_hash,
                        user.role,
                        user.status,
                        user.verified,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_principal(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_principal(row) if row else None

    def register_login_failure(
        self, user_id: str, *, threshold: int, lockout: timedelta
    ) -> Tuple[int, Optional[datetime]]:
        locked_until = self._now() + lockout
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = failed_login_attempts + 1,
                    locked_until = CASE
                        WHEN failed_login_attempts + 1 >= %s THEN %s
                        ELSE locked_until
                    END
                WHERE id = %s
                RETURNING failed_login_attempts, locked_until
                """,
                (threshold, locked_until, user_id),
            ).fetchone()
        if not row:
            return 0, None
        return int(row["failed_login_attempts"]), row.get("locked_until")

    def reset_login_failures(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET failed_login_attempts = 0, locked_until = NULL WHERE id = %s",
                (user_id,),
            )

    def record_login(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login = %s WHERE id = %s",
                (self._now(), user_id),
            )

    def mark_email_verified(self, user_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET verified = TRUE, verified_at = %s, status = %s
                WHERE id = %s
                RETURNING *
                """,
                (self._now(), AccountStatus.ACTIVE.value, user_id),
            ).fetchone()
        return self._row_to_principal(row) if row else None

    def update_user_status(self, user_id: str, status: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET status = %s WHERE id = %s RETURNING *",
                (status, user_id),
            ).fetchone()
        return self._row_to_principal(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return self._row_to_principal(row) if row else None

    def save_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s RETURNING id",
                (password_hash, user_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    # verification codes
    def replace_otp(self, email: str, code_hash: str, expires_at: datetime) -> OTPRecord:
        normalized = normalize_email(email)
        record_id = str(uuid.uuid4())
        with self._connect() as conn:
            with conn.transaction():
                lock_row = conn.execute(
                    """
                    SELECT max(locked_until) AS locked_until, max(attempts) AS attempts
                    FROM verification_token
                    WHERE identifier = %s AND locked_until > %s
                    """,
                    (normalized, self._now()),
                ).fetchone()
                locked_until = lock_row.get("locked_until") if lock_row else None
                attempts = int(lock_row.get("attempts") or 0) if locked_until else 0
                conn.execute(
                    "DELETE FROM verification_token WHERE identifier = %s", (normalized,)
                )
                row = conn.execute(
                    """
                    INSERT INTO verification_token (id, identifier, code_hash, expires_at, attempts, locked_until)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (record_id, normalized, code_hash, expires_at, attempts, locked_until),
                ).fetchone()
        return self._row_to_otp(row)

    def get_otp(self, email: str) -> Optional[OTPRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM verification_token
                WHERE identifier = %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (normalize_email(email),),
            ).fetchone()
        return self._row_to_otp(row) if row else None

    def get_otp_lock(self, email: str) -> Optional[datetime]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT max(locked_until) AS locked_until FROM verification_token
                WHERE identifier = %s AND locked_until > %s
                """,
                (normalize_email(email), self._now()),
            ).fetchone()
        return row.get("locked_until") if row else None

    def register_otp_failure(
        self, email: str, *, threshold: int, lockout: timedelta
    ) -> Tuple[int, Optional[datetime]]:
        normalized = normalize_email(email)
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    SELECT id, attempts FROM verification_token
                    WHERE identifier = %s
                    ORDER BY created_at DESC
                    LIMIT 1
                    FOR UPDATE
                    """,
                    (normalized,),
                ).fetchone()
                if not row:
                    return 0, None
                attempts = int(row["attempts"] or 0) + 1
                locked_until = self._now() + lockout if attempts >= threshold else None
                conn.execute(
                    """
                    UPDATE verification_token
                    SET attempts = %s, locked_until = COALESCE(%s, locked_until)
                    WHERE id = %s
                    """,
                    (attempts, locked_until, row["id"]),
                )
        return attempts, locked_until

    def delete_otps(self, email: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM verification_token WHERE identifier = %s",
                (normalize_email(email),),
            )

    # password reset
    def replace_password_reset_token(
        self, email: str, token_hash: str, expires_at: datetime
    ) -> PasswordResetToken:
        token = PasswordResetToken(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            token_hash=token_hash,
            expires_at=expires_at,
        )
        with self._connect() as conn:
            with conn.transaction():
                conn.execute(
                    "DELETE FROM password_reset_token WHERE identifier = %s", (token.email,)
                )
                conn.execute(
                    """
                    INSERT INTO password_reset_token (id, identifier, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (token.id, token.email, token.token_hash, token.expires_at, token.created_at),
                )
        return token

    def consume_password_reset_token(self, token_hash: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM password_reset_token WHERE token_hash = %s RETURNING identifier, expires_at",
                (token_hash,),
            ).fetchone()
        if not row or row["expires_at"] <= self._now():
            return None
        return row["identifier"]
