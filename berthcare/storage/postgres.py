from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from berthcare.logging import get_logger
from berthcare.storage.errors import (
    ConstraintViolation,
    DuplicateToken,
    StoreUnavailable,
)
from berthcare.storage.models import RefreshRecord, Role, User, utcnow


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        role=Role(row.get("role", Role.CAREGIVER.value)),
        zone_id=str(row["zone_id"]) if row.get("zone_id") else None,
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        is_active=row.get("is_active", True),
        created_at=row.get("created_at") or utcnow(),
        last_login_at=row.get("last_login_at"),
    )


def _refresh_from_row(row: Dict[str, Any]) -> RefreshRecord:
    return RefreshRecord(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token_hash=row["token_hash"],
        device_id=row["device_id"],
        expires_at=row["expires_at"],
        revoked_at=row.get("revoked_at"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


class PostgresStore:
    """Postgres-backed users and refresh-token revocation records.

    Every write is a single statement or a single transaction. Per-user
    revocation relies on row locks: two concurrent ``revoke_all`` calls
    serialize on the same rows and the second one re-checks
    ``revoked_at IS NULL`` and counts nothing.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        timeout: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.timeout = timeout
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
            open=True,
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        """Borrow a pooled connection; commits on success, rolls back on error."""
        try:
            with self.pool.connection(timeout=self.timeout) as conn:
                yield conn
        except (PoolTimeout, OperationalError) as exc:
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StoreUnavailable(
                "relational store unavailable", store="database"
            ) from exc

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Ensure auth tables exist before serving requests."""

        required_tables = ["users", "refresh_tokens"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_users_auth.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: Role = Role.CAREGIVER,
        zone_id: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (id, email, password_hash, first_name, last_name, role, zone_id, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email.strip().lower(),
                        password_hash,
                        first_name,
                        last_name,
                        Role(role).value,
                        zone_id,
                        is_active,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = %s AND deleted_at IS NULL",
                (email.strip().lower(),),
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE id = %s AND deleted_at IS NULL", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_password_record(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM users WHERE id = %s AND deleted_at IS NULL",
                (user_id,),
            ).fetchone()
        return str(row["password_hash"]) if row else None

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )

    def record_login(self, user_id: str, at: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET last_login_at = %s WHERE id = %s",
                (at or utcnow(), user_id),
            )

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE users SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (Role(role).value, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE users SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    # refresh records
    def create_refresh_record(
        self, user_id: str, token_hash: str, device_id: str, expires_at: datetime
    ) -> RefreshRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_tokens (id, user_id, token_hash, device_id, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), user_id, token_hash, device_id, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise DuplicateToken("refresh token already recorded", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh record owner missing", {"user_id": user_id})
        return _refresh_from_row(row)

    def get_refresh_record(self, token_hash: str) -> Optional[RefreshRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_tokens WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _refresh_from_row(row) if row else None

    def find_active_refresh_record(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[RefreshRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM refresh_tokens
                WHERE token_hash = %s AND revoked_at IS NULL AND expires_at > %s
                """,
                (token_hash, now or utcnow()),
            ).fetchone()
        return _refresh_from_row(row) if row else None

    def revoke_all_refresh_records(
        self, user_id: str, now: Optional[datetime] = None
    ) -> int:
        now = now or utcnow()
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_tokens
                SET revoked_at = %s, updated_at = %s
                WHERE user_id = %s AND revoked_at IS NULL AND expires_at > %s
                """,
                (now, now, user_id, now),
            )
            return max(cur.rowcount, 0)

    def rotate_refresh_record(
        self,
        old_record_id: str,
        user_id: str,
        token_hash: str,
        device_id: str,
        expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[RefreshRecord]:
        """Revoke ``old_record_id`` and insert its successor in one transaction.

        Returns ``None`` when the old record was no longer active, which means a
        concurrent refresh already consumed it.
        """
        now = now or utcnow()
        try:
            with self._connect() as conn:
                revoked = conn.execute(
                    """
                    UPDATE refresh_tokens
                    SET revoked_at = %s, updated_at = %s
                    WHERE id = %s AND revoked_at IS NULL AND expires_at > %s
                    RETURNING id
                    """,
                    (now, now, old_record_id, now),
                ).fetchone()
                if not revoked:
                    return None
                row = conn.execute(
                    """
                    INSERT INTO refresh_tokens (id, user_id, token_hash, device_id, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), user_id, token_hash, device_id, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise DuplicateToken("refresh token already recorded", {"field": "token_hash"})
        return _refresh_from_row(row)

    def list_active_refresh_records(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[RefreshRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_tokens
                WHERE user_id = %s AND revoked_at IS NULL AND expires_at > %s
                ORDER BY created_at DESC
                """,
                (user_id, now or utcnow()),
            ).fetchall()
        return [_refresh_from_row(row) for row in rows]

    def prune_refresh_records(self, older_than: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM refresh_tokens
                WHERE expires_at < %s OR (revoked_at IS NOT NULL AND revoked_at < %s)
                """,
                (older_than, older_than),
            )
            return max(cur.rowcount, 0)
