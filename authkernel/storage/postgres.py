from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authkernel.logging import get_logger
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import (
    DEFAULT_ROLES,
    Role,
    Session,
    User,
    normalize_ip_address,
    normalize_user_agent,
    utcnow,
)

_USER_COLUMNS = """
    id, email, username, password_hash, first_name, last_name, is_active,
    is_verified, last_login_at, created_at, updated_at, deleted_at
"""

_SESSION_COLUMNS = """
    id, user_id, refresh_token, user_agent, ip_address, is_active,
    expires_at, created_at, updated_at
"""

_REQUIRED_TABLES = ("users", "roles", "user_roles", "sessions")


def _constraint_field(exc: errors.IntegrityError, candidates: tuple[str, ...]) -> str:
    """Name the column behind a constraint violation from its constraint name."""
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    for candidate in candidates:
        if candidate in constraint:
            return candidate
    return candidates[0]


class PostgresStore:
    """Postgres-backed users/roles/sessions store.

    Calls made inside ``transaction()`` share one pooled connection; each of
    them runs in its own savepoint so a failed best-effort statement does not
    abort the surrounding transaction.
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
        self._tx_conn: ContextVar[Any] = ContextVar(
            f"authkernel_pg_tx_{id(self)}", default=None
        )
        self._verify_required_schema()
        self.ensure_default_roles()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        conn = self._tx_conn.get()
        if conn is not None:
            with conn.transaction():
                yield conn
            return
        with self.pool.connection() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        if self._tx_conn.get() is not None:
            with self._connect():
                yield self
            return
        with self.pool.connection() as conn:
            with conn.transaction():
                token = self._tx_conn.set(conn)
                try:
                    yield self
                finally:
                    self._tx_conn.reset(token)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_auth_schema.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # rows
    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            password_hash=row["password_hash"],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            is_active=row.get("is_active", True),
            is_verified=row.get("is_verified", False),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            deleted_at=row.get("deleted_at"),
        )

    @staticmethod
    def _row_to_role(row: Dict[str, Any]) -> Role:
        return Role(
            id=str(row["id"]),
            name=row["name"],
            description=row.get("description"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        raw_ip = row.get("ip_address")
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token=row["refresh_token"],
            user_agent=normalize_user_agent(row.get("user_agent")),
            ip_address=normalize_ip_address(str(raw_ip) if raw_ip is not None else None),
            is_active=row.get("is_active", True),
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    # users
    def create_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO users (id, email, username, password_hash, first_name,
                        last_name, is_active, is_verified, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        user.id,
                        user.email,
                        user.username,
                        user.password_hash,
                        user.first_name,
                        user.last_name,
                        user.is_active,
                        user.is_verified,
                        user.created_at,
                        user.updated_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc, ("email", "username"))
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s AND deleted_at IS NULL",
                (user_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE email = %s AND deleted_at IS NULL",
                (email,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE username = %s AND deleted_at IS NULL",
                (username,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user(self, user: User) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE users
                    SET email = %s, username = %s, password_hash = %s, first_name = %s,
                        last_name = %s, is_active = %s, is_verified = %s,
                        last_login_at = %s, updated_at = now()
                    WHERE id = %s AND deleted_at IS NULL
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        user.email,
                        user.username,
                        user.password_hash,
                        user.first_name,
                        user.last_name,
                        user.is_active,
                        user.is_verified,
                        user.last_login_at,
                        user.id,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc, ("email", "username"))
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row) if row else None

    def update_last_login(self, user_id: str, at: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE users SET last_login_at = %s WHERE id = %s AND deleted_at IS NULL",
                (at, user_id),
            )
            return result.rowcount > 0

    def update_password_hash(
        self, user_id: str, password_hash: str, *, expected_hash: Optional[str] = None
    ) -> bool:
        sql = (
            "UPDATE users SET password_hash = %s, updated_at = now() "
            "WHERE id = %s AND deleted_at IS NULL"
        )
        params: tuple = (password_hash, user_id)
        if expected_hash is not None:
            sql += " AND password_hash = %s"
            params += (expected_hash,)
        with self._connect() as conn:
            result = conn.execute(sql, params)
            return result.rowcount > 0

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE users SET deleted_at = now(), updated_at = now() WHERE id = %s AND deleted_at IS NULL",
                (user_id,),
            )
            return result.rowcount > 0

    def list_users(self, limit: int = 20, offset: int = 0) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_USER_COLUMNS} FROM users
                WHERE deleted_at IS NULL
                ORDER BY created_at DESC
                LIMIT %s OFFSET %s
                """,
                (limit, offset),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def count_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM users WHERE deleted_at IS NULL"
            ).fetchone()
        return int(row["total"]) if row else 0

    def email_exists(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT EXISTS(SELECT 1 FROM users WHERE email = %s AND deleted_at IS NULL) AS found",
                (email,),
            ).fetchone()
        return bool(row and row["found"])

    def username_exists(self, username: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT EXISTS(SELECT 1 FROM users WHERE username = %s AND deleted_at IS NULL) AS found",
                (username,),
            ).fetchone()
        return bool(row and row["found"])

    # roles
    def create_role(self, role: Role) -> Role:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO roles (id, name, description, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING id, name, description, created_at, updated_at
                    """,
                    (role.id, role.name, role.description, role.created_at, role.updated_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"field": "name"})
        return self._row_to_role(row)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, description, created_at, updated_at FROM roles WHERE id = %s",
                (role_id,),
            ).fetchone()
        return self._row_to_role(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, description, created_at, updated_at FROM roles WHERE name = %s",
                (name,),
            ).fetchone()
        return self._row_to_role(row) if row else None

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, name, description, created_at, updated_at FROM roles ORDER BY name"
            ).fetchall()
        return [self._row_to_role(row) for row in rows]

    def update_role(self, role: Role) -> Optional[Role]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE roles SET name = %s, description = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING id, name, description, created_at, updated_at
                    """,
                    (role.name, role.description, role.id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"field": "name"})
        return self._row_to_role(row) if row else None

    def delete_role(self, role_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM roles WHERE id = %s", (role_id,))
            return result.rowcount > 0

    def ensure_default_roles(self) -> None:
        with self._connect() as conn:
            for name, description in DEFAULT_ROLES.items():
                conn.execute(
                    """
                    INSERT INTO roles (id, name, description)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (name) DO NOTHING
                    """,
                    (str(uuid.uuid4()), name, description),
                )

    def assign_role(self, user_id: str, role_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_roles (id, user_id, role_id)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id, role_id) DO NOTHING
                    """,
                    (str(uuid.uuid4()), user_id, role_id),
                )
        except errors.ForeignKeyViolation as exc:
            field = _constraint_field(exc, ("user_id", "role_id"))
            raise ConstraintViolation(f"{field} does not exist", {"field": field})

    def remove_role(self, user_id: str, role_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM user_roles WHERE user_id = %s AND role_id = %s",
                (user_id, role_id),
            )
            return result.rowcount > 0

    def get_user_roles(self, user_id: str) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.id, r.name, r.description, r.created_at, r.updated_at
                FROM roles r
                JOIN user_roles ur ON ur.role_id = r.id
                WHERE ur.user_id = %s
                ORDER BY r.name
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_role(row) for row in rows]

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO sessions (id, user_id, refresh_token, user_agent, ip_address,
                        is_active, expires_at, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s::inet, %s, %s, %s, %s)
                    RETURNING {_SESSION_COLUMNS}
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token,
                        normalize_user_agent(session.user_agent),
                        normalize_ip_address(session.ip_address),
                        session.is_active,
                        session.expires_at,
                        session.created_at,
                        session.updated_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc, ("refresh_token", "pkey"))
            raise ConstraintViolation(
                "session already exists",
                {"field": "refresh_token" if field == "refresh_token" else "id"},
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"field": "user_id"})
        return self._row_to_session(row)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE refresh_token = %s",
                    (refresh_token,),
                ).fetchone()
        except errors.DataError as exc:
            # Client-supplied text the column cannot hold (e.g. NUL bytes) matches nothing
            self.logger.info("refresh_token_lookup_rejected", error_type=type(exc).__name__)
            return None
        return self._row_to_session(row) if row else None

    def list_active_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM sessions
                WHERE user_id = %s AND is_active = TRUE AND expires_at > now()
                ORDER BY created_at DESC
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def update_session(self, session: Session) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE sessions
                SET user_agent = %s, ip_address = %s::inet, is_active = %s,
                    expires_at = %s, updated_at = now()
                WHERE id = %s
                RETURNING {_SESSION_COLUMNS}
                """,
                (
                    normalize_user_agent(session.user_agent),
                    normalize_ip_address(session.ip_address),
                    session.is_active,
                    session.expires_at,
                    session.id,
                ),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM sessions WHERE id = %s", (session_id,))
            return result.rowcount > 0

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM sessions WHERE user_id = %s", (user_id,))
            return result.rowcount

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM sessions WHERE expires_at <= %s", (now or utcnow(),)
            )
            return result.rowcount
