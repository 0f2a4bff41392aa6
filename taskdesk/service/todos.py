from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Optional

from taskdesk.config import Settings
from taskdesk.logging import get_logger
from taskdesk.service import mail_templates
from taskdesk.service.activity import CREATE_TODO, ActivityLogService
from taskdesk.service.email import EmailService
from taskdesk.service.errors import ForbiddenActionError, ValidationError
from taskdesk.service.policy import Actor, AuthorizationPolicy
from taskdesk.storage.errors import ConstraintViolation
from taskdesk.storage.models import (
    TODO_CATEGORIES,
    TODO_PRIORITIES,
    TODO_STATUSES,
    Page,
    Todo,
    User,
)
from taskdesk.storage.paging import page_window

logger = get_logger(__name__)

FILTER_MY = "my"
FILTER_ASSIGNED_BY_ME = "assignedByMe"
FILTER_ASSIGNED_TO_ME = "assignedToMe"
FILTER_ALL = "all"
TODO_FILTERS = (FILTER_MY, FILTER_ASSIGNED_BY_ME, FILTER_ASSIGNED_TO_ME, FILTER_ALL)

EDITABLE_FIELDS = (
    "title",
    "description",
    "due_date",
    "category",
    "priority",
    "notes",
    "status",
    "assignee_id",
)
RECENT_TODO_COUNT = 5
MAX_RANGE_DAYS = 366


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _percentages(counts: Dict[str, int], total: int) -> Dict[str, float]:
    return {key: round(count * 100.0 / total, 1) if total else 0.0 for key, count in counts.items()}


class TodoService:
    """Todo CRUD, calendar queries and dashboards scoped by visibility.

    Non-admins only ever see todos they own or are assigned to; everything
    else is reported as not found.
    """

    def __init__(
        self,
        store,
        policy: AuthorizationPolicy,
        activity: ActivityLogService,
        email: EmailService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.policy = policy
        self.activity = activity
        self.email = email
        self.settings = settings

    # validation
    @staticmethod
    def _check_choice(field: str, value: Optional[str], choices: tuple) -> None:
        if value is not None and value not in choices:
            raise ValidationError(
                f"{field} must be one of: {', '.join(choices)}", detail={"field": field}
            )

    def _clean_fields(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"unknown todo fields: {', '.join(sorted(unknown))}")
        cleaned = dict(fields)
        for key in ("category", "priority", "status"):
            if key in cleaned and cleaned[key] is None:
                cleaned.pop(key)
        if "title" in cleaned:
            title = (cleaned["title"] or "").strip()
            if not title:
                raise ValidationError("title is required", detail={"field": "title"})
            cleaned["title"] = title
        self._check_choice("category", cleaned.get("category"), TODO_CATEGORIES)
        self._check_choice("priority", cleaned.get("priority"), TODO_PRIORITIES)
        self._check_choice("status", cleaned.get("status"), TODO_STATUSES)
        if "due_date" in cleaned:
            cleaned["due_date"] = _as_utc(cleaned["due_date"])
        if cleaned.get("assignee_id"):
            self._require_active_user(cleaned["assignee_id"], "assignee_id")
        return cleaned

    def _require_active_user(self, user_id: str, field: str) -> User:
        user = self.store.get_user(user_id)
        if user is None or not user.is_active:
            raise ValidationError(f"{field} does not refer to an active user", detail={"field": field})
        return user

    def _actor_user(self, actor: Actor) -> User:
        return self.store.get_user(actor.id) or User(id=actor.id, name=actor.email, email=actor.email)

    def _scope(self, actor: Actor, filter_name: str) -> Dict[str, Any]:
        if filter_name not in TODO_FILTERS:
            raise ValidationError(
                f"filter must be one of: {', '.join(TODO_FILTERS)}", detail={"field": "filter"}
            )
        if filter_name in (FILTER_MY, FILTER_ASSIGNED_BY_ME):
            return {"owner_id": actor.id}
        if filter_name == FILTER_ASSIGNED_TO_ME:
            return {"assignee_id": actor.id}
        return self._visible_scope(actor)

    @staticmethod
    def _visible_scope(actor: Actor) -> Dict[str, Any]:
        return {} if actor.is_admin else {"participant_id": actor.id}

    def _page(self, scope: Dict[str, Any], page: Optional[int], limit: Optional[int]) -> Page[Todo]:
        page, limit, offset = page_window(
            page,
            limit,
            default_limit=self.settings.default_page_size,
            max_limit=self.settings.max_page_size,
        )
        items = self.store.list_todos(offset=offset, limit=limit, **scope)
        return Page(items=items, total=self.store.count_todos(**scope), page=page, limit=limit)

    # CRUD
    async def create(self, actor: Actor, *, owner_id: Optional[str] = None, **fields: Any) -> Todo:
        owner = actor.id
        if owner_id and owner_id != actor.id:
            if not actor.is_admin:
                raise ForbiddenActionError("only admins can create todos for other users")
            owner = self._require_active_user(owner_id, "user_id").id
        if "title" not in fields:
            raise ValidationError("title is required", detail={"field": "title"})
        cleaned = self._clean_fields(fields)
        assignee = self.store.get_user(cleaned["assignee_id"]) if cleaned.get("assignee_id") else None

        with self.store.transaction():
            try:
                todo = self.store.create_todo(owner, cleaned.pop("title"), **cleaned)
            except ConstraintViolation as exc:
                raise ValidationError(exc.message, detail=exc.detail) from exc
            details = f"Todo created: {todo.title}"
            if assignee is not None:
                details += f" (assigned to {assignee.name})"
            self.activity.record(actor.id, CREATE_TODO, details)

        logger.info("todo_created", todo_id=todo.id, owner_id=owner, assignee_id=todo.assignee_id)
        if assignee is not None:
            message = mail_templates.task_assigned(assignee, self._actor_user(actor), todo)
            await self.email.dispatch(message, assignee.email)
        return todo

    def list_visible(self, actor: Actor, page: Optional[int] = None, limit: Optional[int] = None) -> Page[Todo]:
        return self._page(self._visible_scope(actor), page, limit)

    def get(self, actor: Actor, todo_id: str) -> Todo:
        return self.policy.ensure_todo_access(actor, self.store.get_todo(todo_id))

    async def update(self, actor: Actor, todo_id: str, changes: Dict[str, Any]) -> Todo:
        """Apply ``changes`` (only the fields the caller sent) and notify the assignee."""
        if not changes:
            raise ValidationError("no todo fields to update")
        cleaned = self._clean_fields(changes)
        if "due_date" in cleaned:
            # A new due date earns a new reminder
            cleaned["reminded"] = False

        with self.store.transaction():
            old = self.get(actor, todo_id)
            try:
                new = self.store.update_todo(old.id, **cleaned)
            except ConstraintViolation as exc:
                raise ValidationError(exc.message, detail=exc.detail) from exc

        logger.info("todo_updated", todo_id=new.id, fields=sorted(changes))
        await self._notify_update(actor, old, new)
        return new

    async def update_status(self, actor: Actor, todo_id: str, status: str) -> Todo:
        return await self.update(actor, todo_id, {"status": status})

    async def _notify_update(self, actor: Actor, old: Todo, new: Todo) -> None:
        if not new.assignee_id:
            return
        assignee = self.store.get_user(new.assignee_id)
        if assignee is None:
            return
        editor = self._actor_user(actor)
        if new.assignee_id != old.assignee_id:
            await self.email.dispatch(
                mail_templates.task_assigned(assignee, editor, new), assignee.email
            )
        await self.email.dispatch(
            mail_templates.task_updated(assignee, editor, old, new), assignee.email
        )

    def delete(self, actor: Actor, todo_id: str) -> None:
        with self.store.transaction():
            todo = self.get(actor, todo_id)
            self.store.soft_delete_todo(todo.id)
        logger.info("todo_deleted", todo_id=todo_id, actor_id=actor.id)

    # calendar
    def by_date(
        self,
        actor: Actor,
        day: date,
        filter_name: str = FILTER_MY,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Page[Todo]:
        scope = self._scope(actor, filter_name)
        scope["due_from"] = datetime.combine(day, time.min, tzinfo=timezone.utc)
        scope["due_to"] = datetime.combine(day, time.max, tzinfo=timezone.utc)
        return self._page(scope, page, limit)

    def by_range(
        self, actor: Actor, start: datetime, end: datetime, filter_name: str = FILTER_MY
    ) -> Dict[str, list[Todo]]:
        """Group due todos in ``[start, end]`` by ISO calendar day."""
        start, end = _as_utc(start), _as_utc(end)
        if start > end:
            raise ValidationError("start must not be after end", detail={"field": "start"})
        if end - start > timedelta(days=MAX_RANGE_DAYS):
            raise ValidationError(f"range cannot exceed {MAX_RANGE_DAYS} days")
        scope = self._scope(actor, filter_name)
        todos = self.store.list_todos(due_from=start, due_to=end, **scope)
        summary: Dict[str, list[Todo]] = {}
        for todo in sorted(todos, key=lambda t: t.due_date):
            summary.setdefault(todo.due_date.date().isoformat(), []).append(todo)
        return summary

    # dashboards
    def dashboard(self, actor: Actor) -> Dict[str, Any]:
        scope = self._visible_scope(actor)
        counts = self.store.count_todos_by("status", **scope)
        overview = {status: counts.get(status, 0) for status in TODO_STATUSES}
        recent = self.store.list_todos(offset=0, limit=RECENT_TODO_COUNT, **scope)
        return {"overview": overview, "recent": recent}

    def analytics(self, actor: Actor) -> Dict[str, Any]:
        """Counts and percentages of the actor's own and assigned todos."""
        scope = {"participant_id": actor.id}
        total = self.store.count_todos(**scope)
        result: Dict[str, Any] = {"total": total}
        for field_name, choices in (
            ("status", TODO_STATUSES),
            ("priority", TODO_PRIORITIES),
            ("category", TODO_CATEGORIES),
        ):
            raw = self.store.count_todos_by(field_name, **scope)
            counts = {choice: raw.get(choice, 0) for choice in choices}
            result[f"{field_name}_counts"] = counts
            result[f"{field_name}_percentages"] = _percentages(counts, total)
        return result
