from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from genesis_auth.logging import get_logger
from genesis_auth.storage.errors import ConstraintViolation, StoreUnavailable
from genesis_auth.storage.models import (
    USER_MUTABLE_FIELDS,
    RefreshTokenRecord,
    User,
    new_id,
    normalize_email,
    utcnow,
)

_USER_COLUMNS = USER_MUTABLE_FIELDS | {"id", "email", "created_at", "updated_at"}


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        email_verification_token_hash TEXT,
        email_verification_expires_at TIMESTAMPTZ,
        password_reset_token_hash TEXT,
        password_reset_expires_at TIMESTAMPTZ,
        password_changed_at TIMESTAMPTZ,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (email)",
    "CREATE INDEX IF NOT EXISTS app_user_verification_idx ON app_user (email_verification_token_hash)",
    "CREATE INDEX IF NOT EXISTS app_user_reset_idx ON app_user (password_reset_token_hash)",
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        replaced_by UUID,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ,
        user_agent TEXT,
        ip_address TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
)


class PostgresStore:
    """Credential store backed by Postgres via a psycopg connection pool.

    Conditional updates are single statements guarded by their WHERE clause,
    so concurrent callers race on the row lock rather than in Python.
    """

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection(timeout=self.timeout_seconds) as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("store_pool_timeout", timeout=self.timeout_seconds)
            raise StoreUnavailable("timed out acquiring a database connection") from exc
        except errors.OperationalError as exc:
            self.logger.error("store_operational_error", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` and ``refresh_token`` tables if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            name=row.get("name") or "",
            role=row.get("role", "user"),
            is_active=row.get("is_active", True),
            is_email_verified=row.get("is_email_verified", False),
            email_verification_token_hash=row.get("email_verification_token_hash"),
            email_verification_expires_at=row.get("email_verification_expires_at"),
            password_reset_token_hash=row.get("password_reset_token_hash"),
            password_reset_expires_at=row.get("password_reset_expires_at"),
            password_changed_at=row.get("password_changed_at"),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> RefreshTokenRecord:
        replaced_by = row.get("replaced_by")
        return RefreshTokenRecord(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            is_revoked=row.get("is_revoked", False),
            revoked_at=row.get("revoked_at"),
            replaced_by=str(replaced_by) if replaced_by else None,
            created_at=row.get("created_at") or utcnow(),
            last_used_at=row.get("last_used_at"),
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
        )

    # users
    def _find_user(self, column: str, value: Any) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {column} = %s", (value,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def find_user_by_email(self, email: str) -> Optional[User]:
        return self._find_user("email", normalize_email(email))

    def find_user_by_id(self, user_id: str) -> Optional[User]:
        # ids arrive from URL paths; a non-UUID can never match the UUID column
        if not _is_uuid(user_id):
            return None
        return self._find_user("id", user_id)

    def find_user_by_verification_hash(self, token_hash: str) -> Optional[User]:
        return self._find_user("email_verification_token_hash", token_hash)

    def find_user_by_reset_hash(self, token_hash: str) -> Optional[User]:
        return self._find_user("password_reset_token_hash", token_hash)

    def insert_user(
        self,
        *,
        email: str,
        password_hash: str,
        name: str = "",
        role: str = "user",
        is_active: bool = True,
        is_email_verified: bool = False,
        email_verification_token_hash: Optional[str] = None,
        email_verification_expires_at: Optional[datetime] = None,
    ) -> User:
        user_id = new_id()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (
                        id, email, password_hash, name, role, is_active, is_email_verified,
                        email_verification_token_hash, email_verification_expires_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        normalize_email(email),
                        password_hash,
                        name,
                        role,
                        is_active,
                        is_email_verified,
                        email_verification_token_hash,
                        email_verification_expires_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def atomic_update_user(
        self, user_id: str, predicate: Dict[str, Any], patch: Dict[str, Any]
    ) -> bool:
        unknown = (set(patch) - USER_MUTABLE_FIELDS) | (set(predicate) - _USER_COLUMNS)
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if not patch:
            return False
        assignments = ", ".join(f"{name} = %s" for name in patch)
        conditions = "".join(f" AND {name} IS NOT DISTINCT FROM %s" for name in predicate)
        params = [*patch.values(), user_id, *predicate.values()]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() "
                f"WHERE id = %s{conditions} RETURNING id",
                params,
            ).fetchone()
        return row is not None

    def increment_failed_logins(
        self, user_id: str, *, threshold: int, lock_until: datetime, now: datetime
    ) -> Tuple[int, Optional[datetime]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET
                    failed_login_attempts = CASE
                        WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
                        ELSE failed_login_attempts + 1
                    END,
                    locked_until = CASE
                        WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN
                            CASE WHEN 1 >= %(threshold)s THEN %(lock_until)s ELSE NULL END
                        WHEN locked_until IS NULL AND failed_login_attempts + 1 >= %(threshold)s
                            THEN %(lock_until)s
                        ELSE locked_until
                    END,
                    updated_at = now()
                WHERE id = %(user_id)s
                RETURNING failed_login_attempts, locked_until
                """,
                {
                    "user_id": user_id,
                    "threshold": threshold,
                    "lock_until": lock_until,
                    "now": now,
                },
            ).fetchone()
        if not row:
            return 0, None
        return int(row["failed_login_attempts"]), row.get("locked_until")

    # refresh tokens
    def find_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def insert_refresh_token(
        self,
        *,
        token_hash: str,
        user_id: str,
        expires_at: datetime,
        token_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (id, token_hash, user_id, expires_at, user_agent, ip_address)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        token_id or new_id(),
                        token_hash,
                        user_id,
                        expires_at,
                        user_agent,
                        ip_address,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", {"user_id": user_id})
        return self._token_from_row(row)

    def atomic_revoke(
        self,
        token_id: str,
        expected_revoked_state: bool = False,
        *,
        replaced_by: Optional[str] = None,
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE,
                    revoked_at = now(),
                    last_used_at = now(),
                    replaced_by = COALESCE(%s, replaced_by)
                WHERE id = %s AND is_revoked = %s
                RETURNING id
                """,
                (replaced_by, token_id, expected_revoked_state),
            ).fetchone()
        return row is not None

    def touch_refresh_token(self, token_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE refresh_token SET last_used_at = now() WHERE id = %s", (token_id,)
            )

    def revoke_all_for_user(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token SET is_revoked = TRUE, revoked_at = now()
                WHERE user_id = %s AND is_revoked = FALSE
                """,
                (user_id,),
            )
            return result.rowcount

    def list_refresh_tokens(
        self, user_id: str, *, active_only: bool = True, now: Optional[datetime] = None
    ) -> List[RefreshTokenRecord]:
        current = now or utcnow()
        with self._connect() as conn:
            if active_only:
                rows = conn.execute(
                    """
                    SELECT * FROM refresh_token
                    WHERE user_id = %s AND is_revoked = FALSE AND expires_at > %s
                    ORDER BY created_at DESC
                    """,
                    (user_id, current),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM refresh_token WHERE user_id = %s ORDER BY created_at DESC",
                    (user_id,),
                ).fetchall()
        return [self._token_from_row(row) for row in rows]

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s", (now or utcnow(),)
            )
            return result.rowcount
