from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Response

from taskdesk.api.schemas import (
    AccessTokenResponse,
    ActivityListResponse,
    ActivityResponse,
    AdminUserDetailsResponse,
    AnalyticsResponse,
    CalendarEntry,
    DashboardResponse,
    DirectoryEntry,
    DirectoryResponse,
    Envelope,
    LoginRequest,
    OAuthStartResponse,
    PageMeta,
    PasswordForgotRequest,
    PasswordResetConfirm,
    ProfileUpdateRequest,
    RegisterRequest,
    SessionResponse,
    TodoCreateRequest,
    TodoFilter,
    TodoListResponse,
    TodoResponse,
    TodoStatusRequest,
    TodoUpdateRequest,
    TokenRefreshRequest,
    UserListResponse,
    UserResponse,
)
from taskdesk.logging import get_logger
from taskdesk.service.errors import RateLimitedError
from taskdesk.service.policy import Actor
from taskdesk.service.runtime import check_rate_limit, get_runtime
from taskdesk.service.tokens import IssuedSession
from taskdesk.storage.models import Page, User
from taskdesk.storage.paging import page_window

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> None:
    """Apply the token bucket for ``key`` and raise 429 once it is empty."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
    if not allowed:
        logger.info("rate_limit_exceeded", key=key.split(":", 1)[0])
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after_seconds": reset_seconds}
        )


async def get_actor(authorization: Optional[str] = Header(None)) -> Actor:
    runtime = get_runtime()
    return runtime.sessions.authenticate(authorization)


async def get_admin_actor(actor: Actor = Depends(get_actor)) -> Actor:
    get_runtime().policy.ensure_admin(actor)
    return actor


def _session_payload(user: User, session: IssuedSession) -> SessionResponse:
    return SessionResponse(
        user=UserResponse.from_user(user),
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        token_type=session.token_type,
        access_expires_at=session.access_expires_at,
        refresh_expires_at=session.refresh_expires_at,
    )


def _user_list(page: Page[User]) -> UserListResponse:
    return UserListResponse(
        items=[UserResponse.from_user(u) for u in page.items],
        pagination=PageMeta.from_page(page),
    )


# auth
@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account; the caller signs in separately."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
    )
    user = await runtime.auth.register(body.name, body.email, body.password)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email.strip().lower()}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    user, session = runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=_session_payload(user, session))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_access_token(body: TokenRefreshRequest):
    """Trade a refresh token for a new access token.

    401 ``session_expired`` and 403 ``session_revoked`` both mean the client
    must sign in again.
    """
    runtime = get_runtime()
    rotated = runtime.auth.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        data=AccessTokenResponse(
            access_token=rotated.access_token,
            expires_at=rotated.access_expires_at,
            role=rotated.user.role,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(actor: Actor = Depends(get_actor)):
    runtime = get_runtime()
    removed = runtime.auth.logout(actor)
    return Envelope(status="ok", data={"sessions_revoked": removed})


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordForgotRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email.strip().lower()}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.auth.request_password_reset(body.email)
    # Same answer whether or not the address is registered
    return Envelope(
        status="ok",
        data={"message": "if the address is registered, a reset link has been sent"},
    )


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    runtime.auth.reset_password(body.token, body.password)
    return Envelope(status="ok", data={"message": "password updated; sign in again"})


@router.post("/auth/oauth/google/start", response_model=Envelope, tags=["auth"])
async def oauth_start():
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "oauth:start:google", limit=20, window_seconds=60)
    start = await runtime.auth.start_oauth()
    return Envelope(status="ok", data=OAuthStartResponse(**start))


@router.get("/auth/oauth/google/callback", response_model=Envelope, tags=["auth"])
async def oauth_callback(
    code: str = Query(..., max_length=512, description="Authorization code from Google"),
    state: str = Query(..., max_length=128, description="State issued by the start call"),
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "oauth:callback:google", limit=10, window_seconds=60)
    user, session = await runtime.auth.complete_oauth(code, state)
    return Envelope(status="ok", data=_session_payload(user, session))


# profile and directory
@router.get("/profile", response_model=Envelope, tags=["profile"])
async def get_profile(actor: Actor = Depends(get_actor)):
    user = get_runtime().auth.get_profile(actor)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.patch("/profile", response_model=Envelope, tags=["profile"])
async def update_profile(body: ProfileUpdateRequest, actor: Actor = Depends(get_actor)):
    user = get_runtime().auth.update_profile(
        actor, name=body.name, email=body.email, bio=body.bio
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/users", response_model=Envelope, tags=["profile"])
async def list_users(
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    actor: Actor = Depends(get_actor),
):
    """Active users for assignee pickers; only admins see email addresses."""
    runtime = get_runtime()
    page, limit, offset = page_window(
        page,
        limit,
        default_limit=runtime.settings.max_page_size,
        max_limit=runtime.settings.max_page_size,
    )
    users, total = runtime.auth.list_directory(offset=offset, limit=limit)
    items = [
        DirectoryEntry(id=u.id, name=u.name, email=u.email if actor.is_admin else None)
        for u in users
    ]
    meta = PageMeta.from_page(Page(items=users, total=total, page=page, limit=limit))
    return Envelope(status="ok", data=DirectoryResponse(items=items, pagination=meta))


@router.get("/activity", response_model=Envelope, tags=["activity"])
async def my_activity(
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    actor: Actor = Depends(get_actor),
):
    result = get_runtime().activity.list_for_user(actor.id, page, limit)
    return Envelope(status="ok", data=ActivityListResponse.from_page(result))


# todos
@router.post("/todos", response_model=Envelope, status_code=201, tags=["todos"])
async def create_todo(body: TodoCreateRequest, actor: Actor = Depends(get_actor)):
    fields = body.model_dump(exclude_unset=True)
    owner_id = fields.pop("user_id", None)
    todo = await get_runtime().todos.create(actor, owner_id=owner_id, **fields)
    return Envelope(status="ok", data=TodoResponse.from_todo(todo))


@router.get("/todos", response_model=Envelope, tags=["todos"])
async def list_todos(
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    actor: Actor = Depends(get_actor),
):
    result = get_runtime().todos.list_visible(actor, page, limit)
    return Envelope(status="ok", data=TodoListResponse.from_page(result))


@router.get("/todos/by-date", response_model=Envelope, tags=["todos"])
async def todos_by_date(
    day: date = Query(..., alias="date", description="Calendar day, YYYY-MM-DD"),
    filter_name: TodoFilter = Query("my", alias="filter"),
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    actor: Actor = Depends(get_actor),
):
    result = get_runtime().todos.by_date(actor, day, filter_name, page, limit)
    return Envelope(status="ok", data=TodoListResponse.from_page(result))


@router.get("/todos/by-range", response_model=Envelope, tags=["todos"])
async def todos_by_range(
    start: datetime = Query(...),
    end: datetime = Query(...),
    filter_name: TodoFilter = Query("my", alias="filter"),
    actor: Actor = Depends(get_actor),
):
    summary = get_runtime().todos.by_range(actor, start, end, filter_name)
    data = {
        day: [
            CalendarEntry(id=t.id, title=t.title, status=t.status, due_date=t.due_date)
            for t in todos
        ]
        for day, todos in summary.items()
    }
    return Envelope(status="ok", data=data)


@router.get("/todos/dashboard", response_model=Envelope, tags=["todos"])
async def todo_dashboard(actor: Actor = Depends(get_actor)):
    board = get_runtime().todos.dashboard(actor)
    return Envelope(
        status="ok",
        data=DashboardResponse(
            overview=board["overview"],
            recent=[TodoResponse.from_todo(t) for t in board["recent"]],
        ),
    )


@router.get("/todos/analytics", response_model=Envelope, tags=["todos"])
async def todo_analytics(actor: Actor = Depends(get_actor)):
    return Envelope(status="ok", data=AnalyticsResponse(**get_runtime().todos.analytics(actor)))


@router.get("/todos/{todo_id}", response_model=Envelope, tags=["todos"])
async def get_todo(
    todo_id: str = Path(..., max_length=64), actor: Actor = Depends(get_actor)
):
    todo = get_runtime().todos.get(actor, todo_id)
    return Envelope(status="ok", data=TodoResponse.from_todo(todo))


@router.patch("/todos/{todo_id}", response_model=Envelope, tags=["todos"])
async def update_todo(
    body: TodoUpdateRequest,
    todo_id: str = Path(..., max_length=64),
    actor: Actor = Depends(get_actor),
):
    todo = await get_runtime().todos.update(actor, todo_id, body.model_dump(exclude_unset=True))
    return Envelope(status="ok", data=TodoResponse.from_todo(todo))


@router.patch("/todos/{todo_id}/status", response_model=Envelope, tags=["todos"])
async def update_todo_status(
    body: TodoStatusRequest,
    todo_id: str = Path(..., max_length=64),
    actor: Actor = Depends(get_actor),
):
    todo = await get_runtime().todos.update_status(actor, todo_id, body.status)
    return Envelope(status="ok", data=TodoResponse.from_todo(todo))


@router.delete("/todos/{todo_id}", response_model=Envelope, tags=["todos"])
async def delete_todo(
    todo_id: str = Path(..., max_length=64), actor: Actor = Depends(get_actor)
):
    get_runtime().todos.delete(actor, todo_id)
    return Envelope(status="ok", data={"id": todo_id, "deleted": True})


# admin
@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    actor: Actor = Depends(get_admin_actor),
):
    return Envelope(status="ok", data=_user_list(get_runtime().admin.list_users(actor, page, limit)))


@router.get("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_user_details(
    user_id: str = Path(..., max_length=64), actor: Actor = Depends(get_admin_actor)
):
    details = get_runtime().admin.user_details(actor, user_id)
    return Envelope(
        status="ok",
        data=AdminUserDetailsResponse(
            user=UserResponse.from_user(details.user),
            todo_count=details.todo_count,
            recent_activity=[ActivityResponse.from_entry(e) for e in details.recent_activity],
        ),
    )


@router.post("/admin/users/{user_id}/deactivate", response_model=Envelope, tags=["admin"])
async def admin_deactivate_user(
    user_id: str = Path(..., max_length=64), actor: Actor = Depends(get_admin_actor)
):
    user = get_runtime().admin.deactivate(actor, user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/admin/users/{user_id}/restore", response_model=Envelope, tags=["admin"])
async def admin_restore_user(
    user_id: str = Path(..., max_length=64), actor: Actor = Depends(get_admin_actor)
):
    user = get_runtime().admin.restore(actor, user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/admin/users/{user_id}/promote", response_model=Envelope, tags=["admin"])
async def admin_promote_user(
    user_id: str = Path(..., max_length=64), actor: Actor = Depends(get_admin_actor)
):
    user = await get_runtime().admin.promote(actor, user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/admin/users/{user_id}/demote", response_model=Envelope, tags=["admin"])
async def admin_demote_user(
    user_id: str = Path(..., max_length=64), actor: Actor = Depends(get_admin_actor)
):
    user = await get_runtime().admin.demote(actor, user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/admin/activity", response_model=Envelope, tags=["admin"])
async def admin_activity_log(
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    actor: Actor = Depends(get_admin_actor),
):
    result = get_runtime().admin.activity_log(actor, page, limit)
    return Envelope(status="ok", data=ActivityListResponse.from_page(result))
