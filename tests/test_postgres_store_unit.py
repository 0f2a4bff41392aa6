import contextlib
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path

import pytest

from taskdesk.storage.errors import StorageError
from taskdesk.storage.postgres import PostgresStore


class RecordingCursor:
    def __init__(self, rows, rowcount=0):
        self._rows = rows
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class RecordingConnection:
    def __init__(self, rows=None):
        self.rows = rows or []
        self.queries = []

    def execute(self, query, params=None):
        self.queries.append((query, list(params) if params is not None else None))
        return RecordingCursor(self.rows, rowcount=len(self.rows))


class RecordingPool:
    def __init__(self, conn):
        self.conn = conn

    @contextlib.contextmanager
    def connection(self):
        yield self.conn


def _store(tmp_path: Path, rows=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.fs_root = tmp_path
    store.pool = RecordingPool(RecordingConnection(rows))
    store._tx_conn = ContextVar("taskdesk_pg_tx_test", default=None)
    return store


def test_todo_where_defaults_to_live_rows():
    where, params = PostgresStore._todo_where()
    assert where == " WHERE deleted_at IS NULL"
    assert params == []


def test_todo_where_participant_matches_owner_or_assignee():
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    where, params = PostgresStore._todo_where(participant_id="u1", due_from=start)
    assert "(user_id = %s OR assignee_id = %s)" in where
    assert "due_date >= %s" in where
    assert params == ["u1", "u1", start]


def test_todo_where_include_deleted_drops_filter():
    where, params = PostgresStore._todo_where(owner_id="u1", include_deleted=True)
    assert where == " WHERE user_id = %s"
    assert params == ["u1"]


def test_activity_where_and_paging_clause():
    assert PostgresStore._activity_where(None, True) == ("", [])
    where, params = PostgresStore._activity_where("u1", False)
    assert where == " WHERE deleted_at IS NULL AND user_id = %s"
    assert params == ["u1"]
    assert PostgresStore._paging_clause(20, 10) == (" LIMIT %s OFFSET %s", [10, 20])
    assert PostgresStore._paging_clause(0, None) == (" OFFSET %s", [0])


def test_row_mappers_fill_defaults():
    todo = PostgresStore._todo_from_row(
        {"id": "t1", "user_id": "u1", "title": "Plan", "assignee_id": None}
    )
    assert todo.category == "Other"
    assert todo.priority == "Moderate"
    assert todo.status == "pending"
    assert todo.assignee_id is None
    assert todo.reminded is False

    user = PostgresStore._user_from_row({"id": "u1", "name": "Ada", "email": "ada@example.com"})
    assert user.role == "user"
    assert user.is_active


def test_list_todos_builds_paged_query(tmp_path: Path):
    store = _store(tmp_path, rows=[{"id": "t1", "user_id": "u1", "title": "Plan"}])

    todos = store.list_todos(owner_id="u1", offset=10, limit=5)

    assert [t.id for t in todos] == ["t1"]
    query, params = store.pool.conn.queries[-1]
    assert query.startswith("SELECT * FROM todo WHERE deleted_at IS NULL AND user_id = %s")
    assert "ORDER BY created_at DESC LIMIT %s OFFSET %s" in query
    assert params == ["u1", 5, 10]


def test_list_users_by_name_is_case_insensitive(tmp_path: Path):
    store = _store(tmp_path)
    store.list_users(order_by="name")
    query, _ = store.pool.conn.queries[-1]
    assert "ORDER BY lower(name) ASC" in query


def test_list_users_rejects_unknown_ordering(tmp_path: Path):
    store = _store(tmp_path)
    with pytest.raises(StorageError):
        store.list_users(order_by="email; DROP TABLE app_user")


def test_count_todos_by_rejects_unknown_column(tmp_path: Path):
    store = _store(tmp_path)
    with pytest.raises(StorageError):
        store.count_todos_by("title")


def test_count_todos_by_groups_rows(tmp_path: Path):
    store = _store(tmp_path, rows=[{"key": "pending", "total": 2}, {"key": "completed", "total": 1}])
    assert store.count_todos_by("status", participant_id="u1") == {"pending": 2, "completed": 1}


def test_update_todo_rejects_unknown_columns(tmp_path: Path):
    store = _store(tmp_path)
    with pytest.raises(StorageError):
        store.update_todo("t1", user_id="someone-else")


def test_has_live_session_checks_one_row(tmp_path: Path):
    now = datetime(2026, 3, 1, tzinfo=timezone.utc)
    store = _store(tmp_path, rows=[{"live": 1}])

    assert store.has_live_session("s1", "u1", now) is True

    query, params = store.pool.conn.queries[-1]
    assert "WHERE id = %s AND user_id = %s AND expires_at >= %s" in query
    assert params == ["s1", "u1", now]


def test_has_live_session_without_row(tmp_path: Path):
    assert _store(tmp_path).has_live_session("s1", "u1") is False


def test_update_user_role_rejects_unknown_role(tmp_path: Path):
    store = _store(tmp_path)
    with pytest.raises(StorageError):
        store.update_user_role("u1", "superuser")
    assert store.pool.conn.queries == []
