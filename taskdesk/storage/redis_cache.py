from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

# Atomic refill and consume for one bucket key
_TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

RateLimitResult = Union[bool, Tuple[bool, int, int]]


def _rate_key(key: str) -> str:
    """Hash the logical key so caller-supplied values cannot collide on delimiters."""
    return "rate:" + hashlib.sha256(key.encode()).hexdigest()


def _oauth_key(state: str) -> str:
    return f"auth:oauth:{state}"


def _ttl_seconds(expires_at: datetime) -> int:
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


def _oauth_payload(provider: str, expires_at: datetime) -> str:
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return json.dumps({"provider": provider, "expires_at": expires_at.isoformat()})


def _parse_oauth_payload(raw: Optional[str]) -> Optional[tuple[str, datetime]]:
    if raw is None:
        return None
    try:
        data = json.loads(raw)
        return data["provider"], datetime.fromisoformat(data["expires_at"])
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        # Corrupt entries are already deleted by the pop
        return None


def _bucket_result(raw: list, return_remaining: bool) -> RateLimitResult:
    allowed, tokens, reset_after = raw
    allowed_bool = bool(int(allowed))
    if return_remaining:
        return allowed_bool, max(0, int(float(tokens))), int(reset_after or 0)
    return allowed_bool


class RedisCache:
    """Async Redis wrapper for login throttling and OAuth state."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(_TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        raw = await self._token_bucket(
            keys=[_rate_key(key)],
            args=[time.time(), float(limit) / float(window_seconds), limit, max(1, cost)],
        )
        return _bucket_result(raw, return_remaining)

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        await self.client.set(
            _oauth_key(state), _oauth_payload(provider, expires_at), ex=_ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        """Atomically read and delete an OAuth state so it cannot be replayed."""
        return _parse_oauth_payload(await self.client.getdel(_oauth_key(state)))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Same surface as :class:`RedisCache` backed by a blocking client.

    Used in test mode so the client is not bound to a per-test event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(_TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        raw = self._token_bucket(
            keys=[_rate_key(key)],
            args=[time.time(), float(limit) / float(window_seconds), limit, max(1, cost)],
        )
        return _bucket_result(raw, return_remaining)

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        self.client.set(
            _oauth_key(state), _oauth_payload(provider, expires_at), ex=_ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        return _parse_oauth_payload(self.client.getdel(_oauth_key(state)))

    async def close(self) -> None:
        self.client.close()
