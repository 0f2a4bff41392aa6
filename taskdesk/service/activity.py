from __future__ import annotations

from typing import Optional, Protocol

from taskdesk.logging import get_logger
from taskdesk.storage.models import ActivityLog, Page
from taskdesk.storage.paging import page_window

logger = get_logger(__name__)

USER_REGISTERED = "USER_REGISTERED"
USER_LOGGED_IN = "USER_LOGGED_IN"
USER_LOGGED_OUT = "USER_LOGGED_OUT"
UPDATE_PROFILE = "UPDATE_PROFILE"
CREATE_TODO = "CREATE_TODO"
PROMOTE_USER = "PROMOTE_USER"
DEMOTE_USER = "DEMOTE_USER"
DEACTIVATE_USER = "DEACTIVATE_USER"
RESTORE_USER = "RESTORE_USER"
PASSWORD_RESET = "PASSWORD_RESET"


class ActivityStore(Protocol):
    def append_activity(
        self, user_id: Optional[str], action: str, details: str = ""
    ) -> ActivityLog: ...

    def list_activity(
        self,
        *,
        user_id: Optional[str] = None,
        include_deleted: bool = False,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> list[ActivityLog]: ...

    def count_activity(
        self, *, user_id: Optional[str] = None, include_deleted: bool = False
    ) -> int: ...


class ActivityLogService:
    """Append-only audit trail with newest-first paginated reads."""

    def __init__(self, store: ActivityStore, *, default_limit: int = 10, max_limit: int = 100):
        self.store = store
        self.default_limit = default_limit
        self.max_limit = max_limit

    def record(self, user_id: Optional[str], action: str, details: str = "") -> ActivityLog:
        entry = self.store.append_activity(user_id, action, details)
        logger.info("activity_recorded", action=action, user_id=user_id)
        return entry

    def _page(
        self, user_id: Optional[str], page: Optional[int], limit: Optional[int]
    ) -> Page[ActivityLog]:
        page, limit, offset = page_window(
            page, limit, default_limit=self.default_limit, max_limit=self.max_limit
        )
        items = self.store.list_activity(user_id=user_id, offset=offset, limit=limit)
        total = self.store.count_activity(user_id=user_id)
        return Page(items=items, total=total, page=page, limit=limit)

    def list_all(self, page: Optional[int] = None, limit: Optional[int] = None) -> Page[ActivityLog]:
        return self._page(None, page, limit)

    def list_for_user(
        self, user_id: str, page: Optional[int] = None, limit: Optional[int] = None
    ) -> Page[ActivityLog]:
        return self._page(user_id, page, limit)

    def recent_for_user(self, user_id: str, count: int = 10) -> list[ActivityLog]:
        """Latest entries for ``user_id`` including rows hidden by a deactivation."""
        return self.store.list_activity(
            user_id=user_id, include_deleted=True, offset=0, limit=count
        )
