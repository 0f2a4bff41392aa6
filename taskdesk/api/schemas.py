from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskdesk.storage.models import ActivityLog, Page, Todo, User

MAX_TITLE_LENGTH = 200
MAX_TEXT_LENGTH = 10_000

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_token",
    "session_expired",
    "session_revoked",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize ``value`` after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2 or not all(
        len(label) <= 63 and _EMAIL_DOMAIN_LABEL.match(label) for label in labels
    ):
        raise ValueError("invalid email address format")
    return normalized


def _validate_password_length(value: str) -> str:
    if len(value) < 6:
        raise ValueError("password must be at least 6 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


# auth
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: str
    password: str

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = _normalize_unicode(value).strip()
        if not value:
            raise ValueError("name is required")
        return value

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_length(value)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=128)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class PasswordForgotRequest(BaseModel):
    email: str = Field(..., max_length=254)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=2048)
    password: str

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_length(value)


class SessionResponse(BaseModel):
    user: "UserResponse"
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class AccessTokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    role: str


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str
    provider: str


# users
class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    email: Optional[str] = None
    bio: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("email")
    @classmethod
    def _validate_profile_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    role: str
    bio: Optional[str] = None
    created_at: datetime
    deleted_at: Optional[datetime] = None
    is_active: bool

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            role=user.role,
            bio=user.bio,
            created_at=user.created_at,
            deleted_at=user.deleted_at,
            is_active=user.is_active,
        )


class DirectoryEntry(BaseModel):
    """Directory listing row; email is only filled in for admins."""

    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    email: Optional[str] = None


class PageMeta(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int

    @classmethod
    def from_page(cls, page: Page) -> "PageMeta":
        return cls(total=page.total, page=page.page, limit=page.limit, total_pages=page.total_pages)


class UserListResponse(BaseModel):
    items: List[UserResponse]
    pagination: PageMeta


class DirectoryResponse(BaseModel):
    items: List[DirectoryEntry]
    pagination: PageMeta


# todos
TodoCategory = Literal["Work", "Personal", "Other"]
TodoPriority = Literal["Low", "Moderate", "High"]
TodoStatus = Literal["pending", "inProgress", "completed"]
TodoFilter = Literal["my", "assignedByMe", "assignedToMe", "all"]


class TodoCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(..., min_length=1, max_length=MAX_TITLE_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)
    due_date: Optional[datetime] = None
    category: Optional[TodoCategory] = None
    priority: Optional[TodoPriority] = None
    notes: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)
    status: Optional[TodoStatus] = None
    assignee_id: Optional[str] = Field(default=None, max_length=64)
    user_id: Optional[str] = Field(
        default=None, max_length=64, description="Owner to create the todo for (admins only)"
    )


class TodoUpdateRequest(BaseModel):
    """Partial update; only fields present in the request body are applied."""

    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, min_length=1, max_length=MAX_TITLE_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)
    due_date: Optional[datetime] = None
    category: Optional[TodoCategory] = None
    priority: Optional[TodoPriority] = None
    notes: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)
    status: Optional[TodoStatus] = None
    assignee_id: Optional[str] = Field(default=None, max_length=64)


class TodoStatusRequest(BaseModel):
    status: TodoStatus


class TodoResponse(BaseModel):
    id: str
    user_id: str
    assignee_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    category: str
    priority: str
    notes: Optional[str] = None
    status: str
    reminded: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_todo(cls, todo: Todo) -> "TodoResponse":
        return cls(
            id=todo.id,
            user_id=todo.user_id,
            assignee_id=todo.assignee_id,
            title=todo.title,
            description=todo.description,
            due_date=todo.due_date,
            category=todo.category,
            priority=todo.priority,
            notes=todo.notes,
            status=todo.status,
            reminded=todo.reminded,
            created_at=todo.created_at,
            updated_at=todo.updated_at,
        )


class TodoListResponse(BaseModel):
    items: List[TodoResponse]
    pagination: PageMeta

    @classmethod
    def from_page(cls, page: Page[Todo]) -> "TodoListResponse":
        return cls(
            items=[TodoResponse.from_todo(t) for t in page.items],
            pagination=PageMeta.from_page(page),
        )


class CalendarEntry(BaseModel):
    id: str
    title: str
    status: str
    due_date: datetime


class DashboardResponse(BaseModel):
    overview: dict[str, int]
    recent: List[TodoResponse]


class AnalyticsResponse(BaseModel):
    total: int
    status_counts: dict[str, int]
    status_percentages: dict[str, float]
    priority_counts: dict[str, int]
    priority_percentages: dict[str, float]
    category_counts: dict[str, int]
    category_percentages: dict[str, float]


# activity and admin
class ActivityResponse(BaseModel):
    id: str
    user_id: Optional[str] = None
    action: str
    details: str
    created_at: datetime
    deleted_at: Optional[datetime] = None

    @classmethod
    def from_entry(cls, entry: ActivityLog) -> "ActivityResponse":
        return cls(
            id=entry.id,
            user_id=entry.user_id,
            action=entry.action,
            details=entry.details,
            created_at=entry.created_at,
            deleted_at=entry.deleted_at,
        )


class ActivityListResponse(BaseModel):
    items: List[ActivityResponse]
    pagination: PageMeta

    @classmethod
    def from_page(cls, page: Page[ActivityLog]) -> "ActivityListResponse":
        return cls(
            items=[ActivityResponse.from_entry(e) for e in page.items],
            pagination=PageMeta.from_page(page),
        )


class AdminUserDetailsResponse(BaseModel):
    user: UserResponse
    todo_count: int
    recent_activity: List[ActivityResponse]


SessionResponse.model_rebuild()
