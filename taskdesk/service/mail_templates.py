"""Plain-text notification bodies.

Every builder is a pure function returning a :class:`MailMessage`; sending and
failure handling live in :mod:`taskdesk.service.email`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from taskdesk.storage.models import Todo, User

# Fields compared when describing what changed on a todo
TRACKED_TODO_FIELDS = ("title", "description", "category", "priority", "status", "due_date")

_SIGNATURE = "Regards,\nTaskdesk"


@dataclass(frozen=True)
class MailMessage:
    subject: str
    body: str


def _format_due(due: Optional[datetime]) -> str:
    return due.strftime("%Y-%m-%d %H:%M UTC") if due else "Not set"


def _task_details(todo: Todo) -> str:
    return "\n".join(
        [
            f"- Title: {todo.title}",
            f"- Description: {todo.description or 'No description provided'}",
            f"- Category: {todo.category}",
            f"- Priority: {todo.priority}",
            f"- Status: {todo.status}",
            f"- Due: {_format_due(todo.due_date)}",
        ]
    )


def changed_fields(old: Todo, new: Todo, fields: Iterable[str] = TRACKED_TODO_FIELDS) -> list[str]:
    return [name for name in fields if getattr(old, name) != getattr(new, name)]


def task_assigned(assignee: User, assigned_by: User, todo: Todo) -> MailMessage:
    body = (
        f"Hello {assignee.name or 'there'},\n\n"
        "A new task has been assigned to you.\n\n"
        f"{_task_details(todo)}\n\n"
        f"Assigned by: {assigned_by.name} ({assigned_by.email})\n\n"
        f"{_SIGNATURE}\n"
    )
    return MailMessage(subject=f"New task assigned: {todo.title}", body=body)


def task_updated(assignee: User, updated_by: User, old: Todo, new: Todo) -> MailMessage:
    changes = changed_fields(old, new)
    if changes:
        change_lines = "\n".join(
            f'- {name}: "{getattr(old, name)}" -> "{getattr(new, name)}"' for name in changes
        )
    else:
        change_lines = "No major fields changed."
    body = (
        f"Hello {assignee.name or 'there'},\n\n"
        "A task assigned to you has been updated.\n\n"
        f"{_task_details(new)}\n\n"
        f"Changed fields:\n{change_lines}\n\n"
        f"Updated by: {updated_by.name} ({updated_by.email})\n\n"
        f"{_SIGNATURE}\n"
    )
    return MailMessage(subject=f"Task updated: {new.title}", body=body)


def promotion(user: User) -> MailMessage:
    body = (
        f"Hello {user.name},\n\n"
        "Your account has been granted administrator access. "
        "Please sign in again to pick up your new permissions.\n\n"
        f"{_SIGNATURE}\n"
    )
    return MailMessage(subject="You are now an administrator", body=body)


def demotion(user: User) -> MailMessage:
    body = (
        f"Hello {user.name},\n\n"
        "Your administrator access has been removed. "
        "Please sign in again to continue.\n\n"
        f"{_SIGNATURE}\n"
    )
    return MailMessage(subject="Administrator access removed", body=body)


def welcome(user: User) -> MailMessage:
    body = (
        f"Hello {user.name},\n\n"
        "Welcome to Taskdesk. You can now create todos and share them with your team.\n\n"
        f"{_SIGNATURE}\n"
    )
    return MailMessage(subject="Welcome to Taskdesk", body=body)


def password_reset(user: User, reset_url: str, ttl_minutes: int) -> MailMessage:
    hours = max(1, ttl_minutes // 60)
    body = (
        f"Hello {user.name},\n\n"
        "We received a request to reset your password. "
        "Visit the link below to choose a new one:\n\n"
        f"{reset_url}\n\n"
        f"This link expires in {hours} hour{'s' if hours != 1 else ''} and can be used once.\n"
        "If you didn't request this, you can ignore this email.\n\n"
        f"{_SIGNATURE}\n"
    )
    return MailMessage(subject="Reset your Taskdesk password", body=body)


def task_reminder(recipient: User, todo: Todo) -> MailMessage:
    body = (
        f"Hi {recipient.name or 'there'},\n\n"
        f'Your task "{todo.title}" is due at {_format_due(todo.due_date)}.\n\n'
        f"Category: {todo.category}\n"
        f"Priority: {todo.priority}\n\n"
        "Don't forget to complete it!\n\n"
        f"{_SIGNATURE}\n"
    )
    return MailMessage(subject=f"Reminder: {todo.title} is due soon", body=body)
