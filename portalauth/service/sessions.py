from __future__ import annotations

from typing import Optional, Protocol

from portalauth.logging import get_logger
from portalauth.storage.models import SessionRecord

logger = get_logger(__name__)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    async def delete(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


class SessionStore:
    """One live session record per principal, last writer wins."""

    def __init__(self, cache: KeyValueStore, *, ttl_seconds: int = 7 * 24 * 60 * 60) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key(user_id: str) -> str:
        return f"session:{user_id}"

    async def save(self, record: SessionRecord) -> None:
        await self.cache.set(self.key(record.user_id), record.to_json(), self.ttl_seconds)

    async def load(self, user_id: str) -> Optional[SessionRecord]:
        raw = await self.cache.get(self.key(user_id))
        if raw is None:
            return None
        try:
            return SessionRecord.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            # unreadable record cannot be trusted for rotation; drop it
            logger.warning("session_record_corrupt", user_id=user_id, error=str(exc))
            await self.cache.delete(self.key(user_id))
            return None

    async def delete(self, user_id: str) -> None:
        await self.cache.delete(self.key(user_id))


class RevocationLedger:
    """Hashes of refresh tokens that have been rotated out."""

    def __init__(self, cache: KeyValueStore) -> None:
        self.cache = cache

    @staticmethod
    def key(user_id: str, token_hash: str) -> str:
        return f"revoked:{user_id}:{token_hash}"

    async def is_revoked(self, user_id: str, token_hash: str) -> bool:
        return await self.cache.exists(self.key(user_id, token_hash))

    async def claim(self, user_id: str, token_hash: str, ttl_seconds: int) -> bool:
        """Retire a token hash; False means it was already retired."""
        return await self.cache.set_if_absent(
            self.key(user_id, token_hash), "1", max(1, int(ttl_seconds))
        )
