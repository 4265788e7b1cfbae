from __future__ import annotations

import asyncio
import time
from typing import Dict, Optional, Tuple

SWEEP_INTERVAL_SECONDS = 30.0


class MemoryCache:
    """In-process stand-in for RedisCache.

    Used under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV. State lives in one
    process, so multi-worker deployments must use Redis. Expired values and
    refilled rate-limit buckets are swept on writes.
    """

    def __init__(self) -> None:
        self._values: Dict[str, Tuple[str, float]] = {}
        # key -> (tokens, last refill, time at which the bucket is full again)
        self._rate_limits: Dict[str, Tuple[float, float, float]] = {}
        self._lock = asyncio.Lock()
        self._last_sweep: Optional[float] = None

    @staticmethod
    def _clock() -> float:
        return time.monotonic()

    def _live(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if not entry:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._values.pop(key, None)
            return None
        return value

    def _sweep(self, now: float) -> None:
        # caller holds the lock
        if self._last_sweep is not None and now - self._last_sweep < SWEEP_INTERVAL_SECONDS:
            return
        self._last_sweep = now
        for key in [k for k, (_, expires_at) in self._values.items() if expires_at <= now]:
            del self._values[key]
        for key in [k for k, (_, _, full_at) in self._rate_limits.items() if full_at <= now]:
            del self._rate_limits[key]

    def verify_connection(self) -> None:
        return None

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        now = self._clock()
        async with self._lock:
            self._sweep(now)
            self._values[key] = (value, now + max(1, int(ttl_seconds)))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        now = self._clock()
        async with self._lock:
            self._sweep(now)
            if self._live(key) is not None:
                return False
            self._values[key] = (value, now + max(1, int(ttl_seconds)))
            return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._values.pop(key, None)

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._live(key) is not None

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        now = self._clock()
        refill_rate = float(limit) / float(window_seconds)
        async with self._lock:
            self._sweep(now)
            tokens, last_ts, _ = self._rate_limits.get(key, (float(limit), now, now))
            elapsed = max(0.0, now - last_ts)
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= 1
            if allowed:
                tokens -= 1
            full_at = now + (float(limit) - tokens) / refill_rate
            self._rate_limits[key] = (tokens, now, full_at)
            return allowed

    async def close(self) -> None:
        async with self._lock:
            self._values.clear()
            self._rate_limits.clear()
