from __future__ import annotations

import asyncio
import concurrent.futures
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from tokenwarden.config import MAX_HASH_WORKERS, Settings
from tokenwarden.logging import get_logger
from tokenwarden.storage.common import normalize_secret

__all__ = ["SecretHasher", "normalize_secret"]


class SecretHasher:
    """argon2id hashing of passwords and recovery keys.

    Hashing is deliberately slow, so the ``*_async`` variants push the work onto
    a bounded thread pool and the event loop keeps serving other requests.
    """

    DEFAULT_WORKERS = 4

    def __init__(
        self,
        *,
        workers: int = DEFAULT_WORKERS,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self.logger = get_logger(__name__)
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self.workers = min(max(1, workers), MAX_HASH_WORKERS)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="secret-hash"
        )
        self._executor_shutdown = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecretHasher":
        return cls(
            workers=settings.hash_workers,
            time_cost=settings.hash_time_cost,
            memory_cost=settings.hash_memory_cost,
            parallelism=settings.hash_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, stored_hash: Optional[str]) -> bool:
        """Constant-time check of ``plaintext`` against ``stored_hash``.

        Only a mismatch is False. A stored hash that argon2 cannot parse is
        corrupt data, not a wrong secret, and ``InvalidHash`` propagates.
        """
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, plaintext)
        except VerifyMismatchError:
            return False
        except InvalidHash:
            self.logger.error("secret_hash_malformed")
            raise

    async def hash_async(self, plaintext: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.hash, plaintext)

    async def verify_async(self, plaintext: str, stored_hash: Optional[str]) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, self.verify, plaintext, stored_hash
        )

    def shutdown(self, wait: bool = True) -> None:
        """Stop the hashing pool. Call during app shutdown.

        Args:
            wait: If True, wait for pending hashes to finish. If False, cancel them.
        """
        if self._executor_shutdown:
            return
        self._executor_shutdown = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        self.logger.info("secret_hash_executor_shutdown", wait=wait)
