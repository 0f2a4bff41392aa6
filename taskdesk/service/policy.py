from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from taskdesk.service.errors import (
    ForbiddenActionError,
    NotFoundError,
    ValidationError,
)
from taskdesk.storage.models import ROLE_ADMIN, Todo, User

ACTION_DEACTIVATE = "deactivate"
ACTION_RESTORE = "restore"
ACTION_PROMOTE = "promote"
ACTION_DEMOTE = "demote"
ADMIN_ACTIONS = (ACTION_DEACTIVATE, ACTION_RESTORE, ACTION_PROMOTE, ACTION_DEMOTE)


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as described by its access token claims."""

    id: str
    email: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


class AuthorizationPolicy:
    """Decides which todos and accounts an actor may act on.

    Todos the actor cannot see are reported exactly like missing ones so that
    callers cannot probe for their existence.
    """

    def can_access_todo(self, actor: Actor, todo: Todo) -> bool:
        if actor.is_admin:
            return True
        return actor.id in (todo.user_id, todo.assignee_id)

    def ensure_todo_access(self, actor: Actor, todo: Optional[Todo]) -> Todo:
        if todo is None or todo.is_deleted or not self.can_access_todo(actor, todo):
            raise NotFoundError("todo not found")
        return todo

    def ensure_admin(self, actor: Actor) -> None:
        if not actor.is_admin:
            raise ForbiddenActionError("admin role required")

    def ensure_can_manage(self, actor: Actor, target: Optional[User], action: str) -> User:
        """Validate an administrative lifecycle or role action against ``target``."""
        if action not in ADMIN_ACTIONS:
            raise ValidationError(f"unknown admin action: {action}")
        self.ensure_admin(actor)
        if target is None:
            raise NotFoundError("user not found")
        if target.id == actor.id:
            raise ForbiddenActionError(f"admins cannot {action} their own account")

        if action == ACTION_RESTORE:
            if target.is_active:
                raise ValidationError("user is not deactivated")
            return target
        if not target.is_active:
            raise ForbiddenActionError("user is deactivated")
        if action in (ACTION_DEACTIVATE, ACTION_PROMOTE) and target.is_admin:
            raise ForbiddenActionError(f"cannot {action} another admin")
        if action == ACTION_DEMOTE and not target.is_admin:
            raise ValidationError("user is not an admin")
        return target
