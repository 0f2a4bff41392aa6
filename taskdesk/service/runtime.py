from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlsplit

from taskdesk.config import Settings, get_settings, reset_settings_cache
from taskdesk.logging import get_logger
from taskdesk.service.activity import ActivityLogService
from taskdesk.service.admin import AdminService
from taskdesk.service.auth import AuthService
from taskdesk.service.email import EmailService
from taskdesk.service.policy import AuthorizationPolicy
from taskdesk.service.reminders import ReminderScheduler
from taskdesk.service.session import SessionGuard
from taskdesk.service.todos import TodoService
from taskdesk.service.tokens import TokenService
from taskdesk.storage.memory import MemoryStore
from taskdesk.storage.postgres import PostgresStore
from taskdesk.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

Store = Union[MemoryStore, PostgresStore]
Cache = Union[RedisCache, SyncRedisCache]


def _redis_location(url: Optional[str]) -> str:
    """Host and port of a Redis URL, without credentials."""
    if not url:
        return "unset"
    parts = urlsplit(url)
    return f"{parts.hostname or 'localhost'}:{parts.port or 6379}"


def _build_store(settings: Settings) -> Store:
    if settings.use_memory_store:
        return MemoryStore(fs_root=settings.shared_fs_root)
    return PostgresStore(settings.database_url, fs_root=settings.shared_fs_root)


def _build_cache(settings: Settings) -> Optional[Cache]:
    """Connect to Redis, or fall back to process-local state where allowed."""
    failure: Optional[Exception] = None
    if settings.redis_url:
        # blocking client under TEST_MODE; each test runs its own event loop
        cache_cls = SyncRedisCache if settings.test_mode else RedisCache
        try:
            cache = cache_cls(settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            failure = exc

    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "Redis is required for login throttling and OAuth state; start Redis or set "
            "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from failure
    logger.warning(
        "redis_disabled_fallback",
        redis=_redis_location(settings.redis_url),
        reason=str(failure) if failure else "redis_url_missing",
        mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
    )
    return None


class Runtime:
    """Wires the store, cache and services used by the HTTP layer."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info("runtime_init_started", store_type=store_type, test_mode=self.settings.test_mode)

        try:
            self.store: Store = _build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[Cache] = _build_cache(self.settings)

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.tokens = TokenService(self.store, self.settings)
        self.policy = AuthorizationPolicy()
        self.sessions = SessionGuard(self.tokens, self.store)
        self.activity = ActivityLogService(
            self.store,
            default_limit=self.settings.default_page_size,
            max_limit=self.settings.max_page_size,
        )
        self.auth = AuthService(
            self.store,
            self.tokens,
            self.activity,
            self.email,
            self.settings,
            cache=self.cache,
        )
        self.admin = AdminService(
            self.store, self.tokens, self.policy, self.activity, self.email, self.settings
        )
        self.todos = TodoService(
            self.store, self.policy, self.activity, self.email, self.settings
        )
        self.reminders = ReminderScheduler(
            self.store,
            self.email,
            interval_seconds=self.settings.reminder_interval_seconds,
            lookahead_minutes=self.settings.reminder_lookahead_minutes,
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            oauth_enabled=self.auth.oauth_enabled,
            reminders_enabled=self.settings.reminder_enabled,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit backed by Redis, or by process memory without it.

    Returns ``allowed`` or, with ``return_remaining``, ``(allowed, remaining,
    reset_seconds)``.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
            runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
