from __future__ import annotations

import asyncio
from typing import Optional

from argon2 import PasswordHasher as Argon2Hasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from portalauth.logging import get_logger

logger = get_logger(__name__)

# Compared against when no principal or no stored hash exists so that
# unknown-account sign-ins cost the same as a wrong password.
_DUMMY_PASSWORD = "placeholder-password-for-timing"


class PasswordHasher:
    """argon2id hashing with a fixed work factor.

    Hash and verify run in a worker thread so a slow compare never blocks
    other requests on the event loop.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_hash = self._hasher.hash(_DUMMY_PASSWORD)

    def hash_sync(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify_sync(self, stored_hash: Optional[str], password: str) -> bool:
        if not stored_hash:
            self._compare(self._dummy_hash, password)
            return False
        return self._compare(stored_hash, password)

    def _compare(self, stored_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    async def hash(self, password: str) -> str:
        return await asyncio.to_thread(self.hash_sync, password)

    async def verify(self, stored_hash: Optional[str], password: str) -> bool:
        return await asyncio.to_thread(self.verify_sync, stored_hash, password)

    async def dummy_verify(self, password: str) -> None:
        """Burn one full comparison against the placeholder hash."""
        await asyncio.to_thread(self._compare, self._dummy_hash, password)
