from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from taskdesk.config import Settings
from taskdesk.logging import get_logger
from taskdesk.service import mail_templates
from taskdesk.service.activity import (
    DEACTIVATE_USER,
    DEMOTE_USER,
    PROMOTE_USER,
    RESTORE_USER,
    ActivityLogService,
)
from taskdesk.service.email import EmailService
from taskdesk.service.errors import NotFoundError
from taskdesk.service.policy import (
    ACTION_DEACTIVATE,
    ACTION_DEMOTE,
    ACTION_PROMOTE,
    ACTION_RESTORE,
    Actor,
    AuthorizationPolicy,
)
from taskdesk.service.tokens import TokenService
from taskdesk.storage.models import ROLE_ADMIN, ROLE_USER, ActivityLog, Page, User, utcnow
from taskdesk.storage.paging import page_window

logger = get_logger(__name__)


@dataclass
class UserDetails:
    user: User
    todo_count: int
    recent_activity: list[ActivityLog]


class AdminService:
    """Account administration.

    Deactivation cascades: the user, every live todo they own and every live
    activity row attributed to them are soft-deleted with one shared
    timestamp, and all of their refresh tokens are dropped. Restore clears
    exactly the rows carrying that timestamp, so todos deleted earlier on
    their own stay deleted.
    """

    def __init__(
        self,
        store,
        tokens: TokenService,
        policy: AuthorizationPolicy,
        activity: ActivityLogService,
        email: EmailService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.policy = policy
        self.activity = activity
        self.email = email
        self.settings = settings

    def list_users(
        self, actor: Actor, page: Optional[int] = None, limit: Optional[int] = None
    ) -> Page[User]:
        self.policy.ensure_admin(actor)
        page, limit, offset = page_window(
            page,
            limit,
            default_limit=self.settings.default_page_size,
            max_limit=self.settings.max_page_size,
        )
        users = self.store.list_users(include_deleted=True, offset=offset, limit=limit)
        total = self.store.count_users(include_deleted=True)
        return Page(items=users, total=total, page=page, limit=limit)

    def user_details(self, actor: Actor, user_id: str) -> UserDetails:
        self.policy.ensure_admin(actor)
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        return UserDetails(
            user=user,
            todo_count=self.store.count_todos(owner_id=user.id, include_deleted=True),
            recent_activity=self.activity.recent_for_user(user.id, 10),
        )

    def activity_log(
        self, actor: Actor, page: Optional[int] = None, limit: Optional[int] = None
    ) -> Page[ActivityLog]:
        self.policy.ensure_admin(actor)
        return self.activity.list_all(page, limit)

    def deactivate(self, actor: Actor, user_id: str) -> User:
        with self.store.transaction():
            target = self.policy.ensure_can_manage(
                actor, self.store.get_user(user_id), ACTION_DEACTIVATE
            )
            stamp = utcnow()
            user = self.store.set_user_deleted(target.id, stamp)
            todos = self.store.soft_delete_user_todos(target.id, stamp)
            logs = self.store.soft_delete_user_activity(target.id, stamp)
            self.tokens.revoke_all(target.id)
            self.activity.record(
                actor.id,
                DEACTIVATE_USER,
                f"Admin {actor.email} deactivated user {target.email}",
            )
        logger.info(
            "user_deactivated",
            user_id=target.id,
            admin_id=actor.id,
            todos_archived=todos,
            logs_archived=logs,
        )
        return user

    def restore(self, actor: Actor, user_id: str) -> User:
        with self.store.transaction():
            target = self.policy.ensure_can_manage(
                actor, self.store.get_user(user_id), ACTION_RESTORE
            )
            stamp = target.deleted_at
            user = self.store.set_user_deleted(target.id, None)
            todos = self.store.restore_user_todos(target.id, stamp)
            logs = self.store.restore_user_activity(target.id, stamp)
            self.activity.record(
                actor.id,
                RESTORE_USER,
                f"Admin {actor.email} restored user {target.email}",
            )
        logger.info(
            "user_restored",
            user_id=target.id,
            admin_id=actor.id,
            todos_restored=todos,
            logs_restored=logs,
        )
        return user

    def _change_role(self, actor: Actor, user_id: str, action: str, role: str, tag: str) -> User:
        with self.store.transaction():
            target = self.policy.ensure_can_manage(actor, self.store.get_user(user_id), action)
            user = self.store.update_user_role(target.id, role)
            # Live sessions must sign in again to pick up the new role
            self.tokens.revoke_all(target.id)
            self.activity.record(
                actor.id,
                tag,
                f"Admin {actor.email} changed {target.email} role to {role}",
            )
        logger.info("user_role_changed", user_id=target.id, admin_id=actor.id, role=role)
        return user

    async def promote(self, actor: Actor, user_id: str) -> User:
        user = self._change_role(actor, user_id, ACTION_PROMOTE, ROLE_ADMIN, PROMOTE_USER)
        await self.email.dispatch(mail_templates.promotion(user), user.email)
        return user

    async def demote(self, actor: Actor, user_id: str) -> User:
        user = self._change_role(actor, user_id, ACTION_DEMOTE, ROLE_USER, DEMOTE_USER)
        await self.email.dispatch(mail_templates.demotion(user), user.email)
        return user
