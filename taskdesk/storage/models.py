from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Generic, List, Optional, TypeVar

ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLES = (ROLE_USER, ROLE_ADMIN)

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "inProgress"
STATUS_COMPLETED = "completed"
TODO_STATUSES = (STATUS_PENDING, STATUS_IN_PROGRESS, STATUS_COMPLETED)
TODO_PRIORITIES = ("Low", "Moderate", "High")
TODO_CATEGORIES = ("Work", "Personal", "Other")

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    name: str
    email: str
    role: str = ROLE_USER
    bio: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str, token: str, ttl_minutes: int) -> "RefreshToken":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=token,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at


@dataclass
class Todo:
    id: str
    user_id: str
    title: str
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    category: str = "Other"
    priority: str = "Moderate"
    notes: Optional[str] = None
    status: str = STATUS_PENDING
    assignee_id: Optional[str] = None
    reminded: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class ActivityLog:
    id: str
    action: str
    details: str = ""
    user_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class Page(Generic[T]):
    """One page of a newest-first listing."""

    items: List[T]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return math.ceil(self.total / self.limit)
