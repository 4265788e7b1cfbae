from __future__ import annotations

import asyncio
import hashlib
import time
from typing import Awaitable, Optional, TypeVar

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from portalauth.storage.errors import CacheUnavailable

T = TypeVar("T")


class RedisCache:
    """Thin Redis wrapper for session records, revocations and rate limits."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic refill + consume
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
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.operation_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, self.operation_timeout)
        except (RedisError, asyncio.TimeoutError, OSError) as exc:
            raise CacheUnavailable(f"redis operation failed: {type(exc).__name__}") from exc

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so user-supplied parts cannot collide on delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a temporary loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.operation_timeout,
            socket_connect_timeout=self.operation_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self._bounded(self.client.get(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._bounded(self.client.set(key, value, ex=max(1, int(ttl_seconds))))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """SET NX EX; True when this caller created the key."""
        created = await self._bounded(
            self.client.set(key, value, ex=max(1, int(ttl_seconds)), nx=True)
        )
        return bool(created)

    async def delete(self, key: str) -> None:
        await self._bounded(self.client.delete(key))

    async def exists(self, key: str) -> bool:
        return bool(await self._bounded(self.client.exists(key)))

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, _tokens, _reset_after = await self._bounded(
            self._token_bucket(keys=[safe_key], args=[time.time(), refill_rate, limit, 1])
        )
        return bool(int(allowed))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down."""
        await self.client.aclose()
