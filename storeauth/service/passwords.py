from __future__ import annotations

import asyncio

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from storeauth.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """Argon2id hashing run off the event loop with a bounded wait."""

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._hasher = Argon2Hasher(
            type=Type.ID, time_cost=time_cost, memory_cost=memory_cost
        )
        self.timeout_seconds = timeout_seconds

    def hash_sync(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify_sync(self, password_hash: str, password: str) -> bool:
        # argon2 compares digests in constant time
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    async def hash(self, password: str) -> str:
        return await asyncio.wait_for(
            asyncio.to_thread(self.hash_sync, password), self.timeout_seconds
        )

    async def verify(self, password_hash: str, password: str) -> bool:
        return await asyncio.wait_for(
            asyncio.to_thread(self.verify_sync, password_hash, password),
            self.timeout_seconds,
        )


__all__ = ["PasswordHasher"]
