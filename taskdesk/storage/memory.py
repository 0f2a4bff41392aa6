from __future__ import annotations

import contextlib
import copy
import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from taskdesk.logging import get_logger
from taskdesk.storage.errors import ConstraintViolation, StorageError
from taskdesk.storage.models import (
    ROLES,
    ActivityLog,
    RefreshToken,
    Todo,
    User,
    utcnow,
)

# Columns the analytics helpers may group todos by
_GROUPABLE_TODO_FIELDS = {"status", "priority", "category"}
_UPDATABLE_USER_FIELDS = {"name", "email", "bio"}
_USER_ORDERINGS = {"created_at", "name"}
_UPDATABLE_TODO_FIELDS = {
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


class MemoryStore:
    """In-process backing store used for tests and single-node development.

    All tables live in dicts guarded by one re-entrant lock. ``transaction()``
    holds that lock for the whole block and restores a snapshot if the block
    raises, so multi-row mutations are all-or-nothing. State is mirrored to a
    JSON file under ``fs_root/state`` after every committed change.
    """

    def __init__(self, fs_root: str = "/tmp/taskdesk") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.todos: Dict[str, Todo] = {}
        self.activity: Dict[str, ActivityLog] = {}
        # RLock so store methods can be called from inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # transactions
    @contextlib.contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            if self._tx_depth:
                # Nested blocks join the outermost transaction
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return
            snapshot = self._snapshot()
            self._tx_depth = 1
            try:
                yield self
            except BaseException:
                self._tx_depth = 0
                self._restore(snapshot)
                self.logger.info("memory_transaction_rolled_back")
                raise
            self._tx_depth = 0
            self._persist_state()

    def _snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(
            {
                "users": self.users,
                "credentials": self.credentials,
                "refresh_tokens": self.refresh_tokens,
                "todos": self.todos,
                "activity": self.activity,
            }
        )

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        self.users = snapshot["users"]
        self.credentials = snapshot["credentials"]
        self.refresh_tokens = snapshot["refresh_tokens"]
        self.todos = snapshot["todos"]
        self.activity = snapshot["activity"]

    def verify_connection(self) -> None:
        self._state_path()

    # users
    def create_user(self, name: str, email: str, *, role: str = "user") -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), name=name, email=email, role=role)
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def _filtered_users(self, include_deleted: bool) -> List[User]:
        results = [u for u in self.users.values() if include_deleted or u.deleted_at is None]
        return sorted(results, key=lambda u: u.created_at, reverse=True)

    def list_users(
        self,
        *,
        include_deleted: bool = False,
        order_by: str = "created_at",
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[User]:
        if order_by not in _USER_ORDERINGS:
            raise StorageError(f"cannot order users by {order_by}")
        with self._data_lock:
            users = self._filtered_users(include_deleted)
            if order_by == "name":
                users.sort(key=lambda u: u.name.lower())
            end = None if limit is None else offset + limit
            return [replace(u) for u in users[offset:end]]

    def count_users(self, *, include_deleted: bool = False) -> int:
        with self._data_lock:
            return len(self._filtered_users(include_deleted))

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise StorageError(f"cannot update user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            email = fields.get("email")
            if email and any(
                u.email == email and u.id != user_id for u in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            for key, value in fields.items():
                setattr(user, key, value)
            self._persist_state()
            return replace(user)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        if role not in ROLES:
            raise StorageError(f"unknown role: {role}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return replace(user)

    def set_user_deleted(
        self, user_id: str, deleted_at: Optional[datetime]
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.deleted_at = deleted_at
            self._persist_state()
            return replace(user)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh tokens
    def create_refresh_token(
        self, user_id: str, token: str, ttl_minutes: int
    ) -> RefreshToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            record = RefreshToken.new(user_id, token, ttl_minutes)
            self.refresh_tokens[token] = record
            self._persist_state()
            return replace(record)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def delete_refresh_token(self, token: str) -> bool:
        with self._data_lock:
            removed = self.refresh_tokens.pop(token, None) is not None
            if removed:
                self._persist_state()
            return removed

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            stale = [t for t, rec in self.refresh_tokens.items() if rec.user_id == user_id]
            for token in stale:
                self.refresh_tokens.pop(token, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            stale = [t for t, rec in self.refresh_tokens.items() if rec.is_expired(cutoff)]
            for token in stale:
                self.refresh_tokens.pop(token, None)
            if stale:
                self._persist_state()
            return len(stale)

    def has_live_session(
        self, session_id: str, user_id: str, now: Optional[datetime] = None
    ) -> bool:
        """True while the refresh row ``session_id`` exists for ``user_id`` and is unexpired."""
        cutoff = now or utcnow()
        with self._data_lock:
            return any(
                rec.id == session_id and rec.user_id == user_id and not rec.is_expired(cutoff)
                for rec in self.refresh_tokens.values()
            )

    # todos
    def create_todo(self, user_id: str, title: str, **fields: Any) -> Todo:
        unknown = set(fields) - _UPDATABLE_TODO_FIELDS
        if unknown:
            raise StorageError(f"unknown todo fields: {sorted(unknown)}")
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("todo owner does not exist", {"field": "user_id"})
            assignee_id = fields.get("assignee_id")
            if assignee_id and assignee_id not in self.users:
                raise ConstraintViolation(
                    "todo assignee does not exist", {"field": "assignee_id"}
                )
            todo = Todo(
                id=str(uuid.uuid4()),
                user_id=user_id,
                title=title,
                **{k: v for k, v in fields.items() if v is not None},
            )
            self.todos[todo.id] = todo
            self._persist_state()
            return replace(todo)

    def get_todo(self, todo_id: str, *, include_deleted: bool = False) -> Optional[Todo]:
        with self._data_lock:
            todo = self.todos.get(todo_id)
            if not todo or (todo.deleted_at is not None and not include_deleted):
                return None
            return replace(todo)

    def update_todo(self, todo_id: str, **fields: Any) -> Optional[Todo]:
        unknown = set(fields) - _UPDATABLE_TODO_FIELDS
        if unknown:
            raise StorageError(f"cannot update todo fields: {sorted(unknown)}")
        with self._data_lock:
            todo = self.todos.get(todo_id)
            if not todo or todo.deleted_at is not None:
                return None
            assignee_id = fields.get("assignee_id")
            if assignee_id and assignee_id not in self.users:
                raise ConstraintViolation(
                    "todo assignee does not exist", {"field": "assignee_id"}
                )
            for key, value in fields.items():
                setattr(todo, key, value)
            todo.updated_at = utcnow()
            self._persist_state()
            return replace(todo)

    def soft_delete_todo(self, todo_id: str, deleted_at: Optional[datetime] = None) -> bool:
        with self._data_lock:
            todo = self.todos.get(todo_id)
            if not todo or todo.deleted_at is not None:
                return False
            todo.deleted_at = deleted_at or utcnow()
            self._persist_state()
            return True

    @staticmethod
    def _todo_matches(
        todo: Todo,
        owner_id: Optional[str],
        assignee_id: Optional[str],
        participant_id: Optional[str],
        due_from: Optional[datetime],
        due_to: Optional[datetime],
        include_deleted: bool = False,
    ) -> bool:
        if todo.deleted_at is not None and not include_deleted:
            return False
        if owner_id and todo.user_id != owner_id:
            return False
        if assignee_id and todo.assignee_id != assignee_id:
            return False
        if participant_id and participant_id not in (todo.user_id, todo.assignee_id):
            return False
        if due_from or due_to:
            if todo.due_date is None:
                return False
            if due_from and todo.due_date < due_from:
                return False
            if due_to and todo.due_date > due_to:
                return False
        return True

    def _filtered_todos(self, **filters: Any) -> List[Todo]:
        results = [
            t
            for t in self.todos.values()
            if self._todo_matches(
                t,
                filters.get("owner_id"),
                filters.get("assignee_id"),
                filters.get("participant_id"),
                filters.get("due_from"),
                filters.get("due_to"),
                bool(filters.get("include_deleted")),
            )
        ]
        return sorted(results, key=lambda t: t.created_at, reverse=True)

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
        with self._data_lock:
            todos = self._filtered_todos(
                owner_id=owner_id,
                assignee_id=assignee_id,
                participant_id=participant_id,
                due_from=due_from,
                due_to=due_to,
            )
            end = None if limit is None else offset + limit
            return [replace(t) for t in todos[offset:end]]

    def count_todos(self, **filters: Any) -> int:
        with self._data_lock:
            return len(self._filtered_todos(**filters))

    def count_todos_by(self, field_name: str, **filters: Any) -> Dict[str, int]:
        if field_name not in _GROUPABLE_TODO_FIELDS:
            raise StorageError(f"cannot group todos by {field_name}")
        counts: Dict[str, int] = {}
        with self._data_lock:
            for todo in self._filtered_todos(**filters):
                key = getattr(todo, field_name)
                counts[key] = counts.get(key, 0) + 1
        return counts

    def soft_delete_user_todos(self, user_id: str, deleted_at: datetime) -> int:
        with self._data_lock:
            affected = [
                t for t in self.todos.values() if t.user_id == user_id and t.deleted_at is None
            ]
            for todo in affected:
                todo.deleted_at = deleted_at
            if affected:
                self._persist_state()
            return len(affected)

    def restore_user_todos(self, user_id: str, deleted_at: datetime) -> int:
        with self._data_lock:
            affected = [
                t for t in self.todos.values() if t.user_id == user_id and t.deleted_at == deleted_at
            ]
            for todo in affected:
                todo.deleted_at = None
            if affected:
                self._persist_state()
            return len(affected)

    def claim_due_todos(self, start: datetime, end: datetime) -> List[Todo]:
        """Mark not-yet-reminded open todos due in ``[start, end]`` and return them."""
        with self._data_lock:
            claimed = [
                t
                for t in self.todos.values()
                if t.deleted_at is None
                and not t.reminded
                and t.status != "completed"
                and t.due_date is not None
                and start <= t.due_date <= end
            ]
            for todo in claimed:
                todo.reminded = True
            if claimed:
                self._persist_state()
            return [replace(t) for t in claimed]

    def set_todo_reminded(self, todo_id: str, reminded: bool) -> None:
        with self._data_lock:
            todo = self.todos.get(todo_id)
            if not todo:
                return
            todo.reminded = reminded
            self._persist_state()

    # activity log
    def append_activity(
        self, user_id: Optional[str], action: str, details: str = ""
    ) -> ActivityLog:
        with self._data_lock:
            entry = ActivityLog(
                id=str(uuid.uuid4()), user_id=user_id, action=action, details=details
            )
            self.activity[entry.id] = entry
            self._persist_state()
            return replace(entry)

    def _filtered_activity(
        self, user_id: Optional[str], include_deleted: bool
    ) -> List[ActivityLog]:
        results = [
            e
            for e in self.activity.values()
            if (include_deleted or e.deleted_at is None)
            and (user_id is None or e.user_id == user_id)
        ]
        return sorted(results, key=lambda e: e.created_at, reverse=True)

    def list_activity(
        self,
        *,
        user_id: Optional[str] = None,
        include_deleted: bool = False,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[ActivityLog]:
        with self._data_lock:
            entries = self._filtered_activity(user_id, include_deleted)
            end = None if limit is None else offset + limit
            return [replace(e) for e in entries[offset:end]]

    def count_activity(
        self, *, user_id: Optional[str] = None, include_deleted: bool = False
    ) -> int:
        with self._data_lock:
            return len(self._filtered_activity(user_id, include_deleted))

    def soft_delete_user_activity(self, user_id: str, deleted_at: datetime) -> int:
        with self._data_lock:
            affected = [
                e for e in self.activity.values() if e.user_id == user_id and e.deleted_at is None
            ]
            for entry in affected:
                entry.deleted_at = deleted_at
            if affected:
                self._persist_state()
            return len(affected)

    def restore_user_activity(self, user_id: str, deleted_at: datetime) -> int:
        with self._data_lock:
            affected = [
                e for e in self.activity.values() if e.user_id == user_id and e.deleted_at == deleted_at
            ]
            for entry in affected:
                entry.deleted_at = None
            if affected:
                self._persist_state()
            return len(affected)

    # persistence
    def _persist_state(self) -> None:
        if self._tx_depth:
            # Written once when the outermost transaction commits
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
            "todos": [self._serialize_todo(t) for t in self.todos.values()],
            "activity": [self._serialize_activity(e) for e in self.activity.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StorageError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.refresh_tokens = {
            r["token"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.todos = {t["id"]: self._deserialize_todo(t) for t in data.get("todos", [])}
        self.activity = {
            e["id"]: self._deserialize_activity(e) for e in data.get("activity", [])
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            todos=len(self.todos),
            path=str(path),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "role": user.role,
            "bio": user.bio,
            "created_at": self._serialize_datetime(user.created_at),
            "deleted_at": self._serialize_datetime(user.deleted_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            name=data.get("name", ""),
            email=data["email"],
            role=data.get("role", "user"),
            bio=data.get("bio"),
            created_at=self._deserialize_datetime(data["created_at"]),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )

    def _serialize_refresh_token(self, record: RefreshToken) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token": record.token,
            "created_at": self._serialize_datetime(record.created_at),
            "expires_at": self._serialize_datetime(record.expires_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            user_id=data["user_id"],
            token=data["token"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
        )

    def _serialize_todo(self, todo: Todo) -> dict:
        return {
            "id": todo.id,
            "user_id": todo.user_id,
            "title": todo.title,
            "description": todo.description,
            "due_date": self._serialize_datetime(todo.due_date),
            "category": todo.category,
            "priority": todo.priority,
            "notes": todo.notes,
            "status": todo.status,
            "assignee_id": todo.assignee_id,
            "reminded": todo.reminded,
            "created_at": self._serialize_datetime(todo.created_at),
            "updated_at": self._serialize_datetime(todo.updated_at),
            "deleted_at": self._serialize_datetime(todo.deleted_at),
        }

    def _deserialize_todo(self, data: dict) -> Todo:
        return Todo(
            id=data["id"],
            user_id=data["user_id"],
            title=data["title"],
            description=data.get("description"),
            due_date=self._deserialize_datetime(data.get("due_date")),
            category=data.get("category", "Other"),
            priority=data.get("priority", "Moderate"),
            notes=data.get("notes"),
            status=data.get("status", "pending"),
            assignee_id=data.get("assignee_id"),
            reminded=data.get("reminded", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )

    def _serialize_activity(self, entry: ActivityLog) -> dict:
        return {
            "id": entry.id,
            "user_id": entry.user_id,
            "action": entry.action,
            "details": entry.details,
            "created_at": self._serialize_datetime(entry.created_at),
            "deleted_at": self._serialize_datetime(entry.deleted_at),
        }

    def _deserialize_activity(self, data: dict) -> ActivityLog:
        return ActivityLog(
            id=data["id"],
            user_id=data.get("user_id"),
            action=data["action"],
            details=data.get("details", ""),
            created_at=self._deserialize_datetime(data["created_at"]),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )
