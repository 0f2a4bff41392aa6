from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

_request_id: ContextVar[Optional[str]] = ContextVar("taskdesk_request_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# keys matched by substring, so "refresh_token" and "to_email" are covered
_MASKED_KEYS = ("password", "secret", "authorization")
_TOKEN_KEYS = ("token", "jti")
_EMAIL_KEYS = ("email", "recipient", "to")


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request id for the current context, generating one if absent."""
    value = correlation_id or uuid.uuid4().hex
    _request_id.set(value)
    return value


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def _scrub(key: str, value: Any) -> Any:
    if not isinstance(value, str) or not value:
        return value
    lowered = key.lower()
    if lowered.endswith(("_type", "_hash")):
        return value
    if any(part in lowered for part in _MASKED_KEYS):
        return "***"
    if any(part in lowered for part in _TOKEN_KEYS):
        return value[:6] + "..." if len(value) > 6 else "***"
    if lowered in _EMAIL_KEYS or lowered.endswith("_email"):
        return _mask_email(value)
    return value


def _request_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    request_id = _request_id.get()
    if request_id and "request_id" not in event_dict:
        event_dict["request_id"] = request_id
    return event_dict


def _redact_pii(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credentials and shorten addresses before anything is rendered."""
    for key, value in list(event_dict.items()):
        event_dict[key] = _scrub(key, value)
    return event_dict


def configure_logging(level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _request_context,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    dev_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
