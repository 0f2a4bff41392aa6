from __future__ import annotations

import contextlib
import uuid
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from taskdesk.logging import get_logger
from taskdesk.storage.errors import ConstraintViolation, SchemaError, StorageError
from taskdesk.storage.models import ROLES, ActivityLog, RefreshToken, Todo, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'user',
        bio TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS todo (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id),
        assignee_id TEXT REFERENCES app_user(id),
        title TEXT NOT NULL,
        description TEXT,
        due_date TIMESTAMPTZ,
        category TEXT NOT NULL DEFAULT 'Other',
        priority TEXT NOT NULL DEFAULT 'Moderate',
        notes TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        reminded BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS todo_user_idx ON todo (user_id)",
    "CREATE INDEX IF NOT EXISTS todo_assignee_idx ON todo (assignee_id)",
    "CREATE INDEX IF NOT EXISTS todo_due_idx ON todo (due_date) WHERE deleted_at IS NULL",
    """
    CREATE TABLE IF NOT EXISTS activity_log (
        id TEXT PRIMARY KEY,
        user_id TEXT REFERENCES app_user(id),
        action TEXT NOT NULL,
        details TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS activity_log_user_idx ON activity_log (user_id)",
)

_REQUIRED_TABLES = ("app_user", "user_auth_credential", "refresh_token", "todo", "activity_log")

_GROUPABLE_TODO_COLUMNS = {"status", "priority", "category"}
_UPDATABLE_USER_COLUMNS = {"name", "email", "bio"}
_USER_ORDERINGS = {"created_at": "created_at DESC", "name": "lower(name) ASC"}
_UPDATABLE_TODO_COLUMNS = {
    "title",
    "description",
    "due_date",
    "category",
    "priority",
    "notes",
    "status",
    "assignee_id",
    "reminded",
}


class PostgresStore:
    """Postgres-backed store for users, sessions, todos and the activity log.

    Methods open a pooled connection per call unless they run inside
    ``transaction()``, in which case they share the connection bound to the
    current context so the whole block commits or rolls back together.
    """

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._tx_conn: ContextVar[Optional[Any]] = ContextVar(
            f"taskdesk_pg_tx_{id(self)}", default=None
        )
        self._ensure_schema()
        self._verify_required_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        active = self._tx_conn.get()
        if active is not None:
            yield active
            return
        with self.pool.connection() as conn:
            yield conn

    @contextlib.contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        active = self._tx_conn.get()
        if active is not None:
            # Nested blocks become savepoints on the shared connection
            with active.transaction():
                yield self
            return
        with self.pool.connection() as conn:
            token = self._tx_conn.set(conn)
            try:
                with conn.transaction():
                    yield self
            finally:
                self._tx_conn.reset(token)

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

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
            raise SchemaError(
                "Missing required Postgres tables: {}".format(", ".join(sorted(missing)))
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # row mappers
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            name=row["name"],
            email=row["email"],
            role=row.get("role", "user"),
            bio=row.get("bio"),
            created_at=row.get("created_at") or utcnow(),
            deleted_at=row.get("deleted_at"),
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _todo_from_row(row: Dict[str, Any]) -> Todo:
        return Todo(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=row["title"],
            description=row.get("description"),
            due_date=row.get("due_date"),
            category=row.get("category") or "Other",
            priority=row.get("priority") or "Moderate",
            notes=row.get("notes"),
            status=row.get("status") or "pending",
            assignee_id=str(row["assignee_id"]) if row.get("assignee_id") else None,
            reminded=bool(row.get("reminded", False)),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            deleted_at=row.get("deleted_at"),
        )

    @staticmethod
    def _activity_from_row(row: Dict[str, Any]) -> ActivityLog:
        return ActivityLog(
            id=str(row["id"]),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            action=row["action"],
            details=row.get("details") or "",
            created_at=row.get("created_at") or utcnow(),
            deleted_at=row.get("deleted_at"),
        )

    @staticmethod
    def _paging_clause(offset: int, limit: Optional[int]) -> Tuple[str, List[Any]]:
        if limit is None:
            return " OFFSET %s", [offset]
        return " LIMIT %s OFFSET %s", [limit, offset]

    # users
    def create_user(self, name: str, email: str, *, role: str = "user") -> User:
        user = User(id=str(uuid.uuid4()), name=name, email=email, role=role)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, name, email, role, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (user.id, name, email, role, user.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE email = %s", (email,)).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(
        self,
        *,
        include_deleted: bool = False,
        order_by: str = "created_at",
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[User]:
        ordering = _USER_ORDERINGS.get(order_by)
        if ordering is None:
            raise StorageError(f"cannot order users by {order_by}")
        query = "SELECT * FROM app_user"
        if not include_deleted:
            query += " WHERE deleted_at IS NULL"
        query += f" ORDER BY {ordering}"
        paging, params = self._paging_clause(offset, limit)
        with self._connect() as conn:
            rows = conn.execute(query + paging, params).fetchall()
        return [self._user_from_row(r) for r in rows]

    def count_users(self, *, include_deleted: bool = False) -> int:
        query = "SELECT COUNT(*) AS total FROM app_user"
        if not include_deleted:
            query += " WHERE deleted_at IS NULL"
        with self._connect() as conn:
            row = conn.execute(query).fetchone()
        return int(row["total"]) if row else 0

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_COLUMNS
        if unknown:
            raise StorageError(f"cannot update user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        assignments = ", ".join(f"{column} = %s" for column in fields)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments} WHERE id = %s RETURNING *",
                    [*fields.values(), user_id],
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        if role not in ROLES:
            raise StorageError(f"unknown role: {role}")
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *", (role, user_id)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_deleted(
        self, user_id: str, deleted_at: Optional[datetime]
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET deleted_at = %s WHERE id = %s RETURNING *",
                (deleted_at, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
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
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # refresh tokens
    def create_refresh_token(
        self, user_id: str, token: str, ttl_minutes: int
    ) -> RefreshToken:
        record = RefreshToken.new(user_id, token, ttl_minutes)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, user_id, token, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (record.id, user_id, token, record.expires_at, record.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def delete_refresh_token(self, token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE token = %s", (token,))
            return cur.rowcount > 0

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at < %s", (now or utcnow(),)
            )
            return cur.rowcount

    def has_live_session(
        self, session_id: str, user_id: str, now: Optional[datetime] = None
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 AS live FROM refresh_token
                WHERE id = %s AND user_id = %s AND expires_at >= %s
                """,
                (session_id, user_id, now or utcnow()),
            ).fetchone()
        return bool(row)

    # todos
    def create_todo(self, user_id: str, title: str, **fields: Any) -> Todo:
        unknown = set(fields) - _UPDATABLE_TODO_COLUMNS
        if unknown:
            raise StorageError(f"unknown todo fields: {sorted(unknown)}")
        todo = Todo(
            id=str(uuid.uuid4()),
            user_id=user_id,
            title=title,
            **{k: v for k, v in fields.items() if v is not None},
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO todo (
                        id, user_id, assignee_id, title, description, due_date, category,
                        priority, notes, status, reminded, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        todo.id,
                        todo.user_id,
                        todo.assignee_id,
                        todo.title,
                        todo.description,
                        todo.due_date,
                        todo.category,
                        todo.priority,
                        todo.notes,
                        todo.status,
                        todo.reminded,
                        todo.created_at,
                        todo.updated_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("todo references a missing user", {"field": "assignee_id"})
        return todo

    def get_todo(self, todo_id: str, *, include_deleted: bool = False) -> Optional[Todo]:
        query = "SELECT * FROM todo WHERE id = %s"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        with self._connect() as conn:
            row = conn.execute(query, (todo_id,)).fetchone()
        return self._todo_from_row(row) if row else None

    def update_todo(self, todo_id: str, **fields: Any) -> Optional[Todo]:
        unknown = set(fields) - _UPDATABLE_TODO_COLUMNS
        if unknown:
            raise StorageError(f"cannot update todo fields: {sorted(unknown)}")
        assignments = [f"{column} = %s" for column in fields]
        assignments.append("updated_at = now()")
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE todo SET {', '.join(assignments)} WHERE id = %s AND deleted_at IS NULL RETURNING *",
                    [*fields.values(), todo_id],
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("todo assignee does not exist", {"field": "assignee_id"})
        return self._todo_from_row(row) if row else None

    def soft_delete_todo(self, todo_id: str, deleted_at: Optional[datetime] = None) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE todo SET deleted_at = %s WHERE id = %s AND deleted_at IS NULL",
                (deleted_at or utcnow(), todo_id),
            )
            return cur.rowcount > 0

    @staticmethod
    def _todo_where(
        owner_id: Optional[str] = None,
        assignee_id: Optional[str] = None,
        participant_id: Optional[str] = None,
        due_from: Optional[datetime] = None,
        due_to: Optional[datetime] = None,
        include_deleted: bool = False,
    ) -> Tuple[str, List[Any]]:
        clauses = [] if include_deleted else ["deleted_at IS NULL"]
        params: List[Any] = []
        if owner_id:
            clauses.append("user_id = %s")
            params.append(owner_id)
        if assignee_id:
            clauses.append("assignee_id = %s")
            params.append(assignee_id)
        if participant_id:
            clauses.append("(user_id = %s OR assignee_id = %s)")
            params.extend([participant_id, participant_id])
        if due_from:
            clauses.append("due_date >= %s")
            params.append(due_from)
        if due_to:
            clauses.append("due_date <= %s")
            params.append(due_to)
        if not clauses:
            return "", params
        return " WHERE " + " AND ".join(clauses), params

    def list_todos(
        self,
        *,
        owner_id: Optional[str] = None,
        assignee_id: Optional[str] = None,
        participant_id: Optional[str] = None,
        due_from: Optional[datetime] = None,
        due_to: Optional[datetime] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Todo]:
        where, params = self._todo_where(owner_id, assignee_id, participant_id, due_from, due_to)
        paging, paging_params = self._paging_clause(offset, limit)
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM todo" + where + " ORDER BY created_at DESC" + paging,
                params + paging_params,
            ).fetchall()
        return [self._todo_from_row(r) for r in rows]

    def count_todos(self, **filters: Any) -> int:
        where, params = self._todo_where(**filters)
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM todo" + where, params).fetchone()
        return int(row["total"]) if row else 0

    def count_todos_by(self, field_name: str, **filters: Any) -> Dict[str, int]:
        if field_name not in _GROUPABLE_TODO_COLUMNS:
            raise StorageError(f"cannot group todos by {field_name}")
        where, params = self._todo_where(**filters)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {field_name} AS key, COUNT(*) AS total FROM todo{where} GROUP BY {field_name}",
                params,
            ).fetchall()
        return {row["key"]: int(row["total"]) for row in rows}

    def soft_delete_user_todos(self, user_id: str, deleted_at: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE todo SET deleted_at = %s WHERE user_id = %s AND deleted_at IS NULL",
                (deleted_at, user_id),
            )
            return cur.rowcount

    def restore_user_todos(self, user_id: str, deleted_at: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE todo SET deleted_at = NULL WHERE user_id = %s AND deleted_at = %s",
                (user_id, deleted_at),
            )
            return cur.rowcount

    def claim_due_todos(self, start: datetime, end: datetime) -> List[Todo]:
        """Mark not-yet-reminded open todos due in ``[start, end]`` and return them.

        ``FOR UPDATE SKIP LOCKED`` keeps concurrent schedulers on other nodes
        from claiming the same rows.
        """
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE todo SET reminded = TRUE
                WHERE id IN (
                    SELECT id FROM todo
                    WHERE deleted_at IS NULL
                      AND reminded = FALSE
                      AND status <> 'completed'
                      AND due_date BETWEEN %s AND %s
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                (start, end),
            ).fetchall()
        return [self._todo_from_row(r) for r in rows]

    def set_todo_reminded(self, todo_id: str, reminded: bool) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE todo SET reminded = %s WHERE id = %s", (reminded, todo_id))

    # activity log
    def append_activity(
        self, user_id: Optional[str], action: str, details: str = ""
    ) -> ActivityLog:
        entry = ActivityLog(id=str(uuid.uuid4()), user_id=user_id, action=action, details=details)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO activity_log (id, user_id, action, details, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (entry.id, user_id, action, details, entry.created_at),
            )
        return entry

    @staticmethod
    def _activity_where(
        user_id: Optional[str], include_deleted: bool
    ) -> Tuple[str, Sequence[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if not include_deleted:
            clauses.append("deleted_at IS NULL")
        if user_id:
            clauses.append("user_id = %s")
            params.append(user_id)
        if not clauses:
            return "", params
        return " WHERE " + " AND ".join(clauses), params

    def list_activity(
        self,
        *,
        user_id: Optional[str] = None,
        include_deleted: bool = False,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[ActivityLog]:
        where, params = self._activity_where(user_id, include_deleted)
        paging, paging_params = self._paging_clause(offset, limit)
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM activity_log" + where + " ORDER BY created_at DESC" + paging,
                [*params, *paging_params],
            ).fetchall()
        return [self._activity_from_row(r) for r in rows]

    def count_activity(
        self, *, user_id: Optional[str] = None, include_deleted: bool = False
    ) -> int:
        where, params = self._activity_where(user_id, include_deleted)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM activity_log" + where, params
            ).fetchone()
        return int(row["total"]) if row else 0

    def soft_delete_user_activity(self, user_id: str, deleted_at: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE activity_log SET deleted_at = %s WHERE user_id = %s AND deleted_at IS NULL",
                (deleted_at, user_id),
            )
            return cur.rowcount

    def restore_user_activity(self, user_id: str, deleted_at: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE activity_log SET deleted_at = NULL WHERE user_id = %s AND deleted_at = %s",
                (user_id, deleted_at),
            )
            return cur.rowcount
