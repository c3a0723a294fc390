import asyncio
from typing import Callable

from filedrop.config import Config
from filedrop.logger_config import setup_logger

logger = setup_logger()


class ConcurrencyLimiter:
    """Bounds the number of uploads running at once.

    The ceiling is ``concurrency_limit`` from the live configuration, read on
    every acquire so a reload applies to the next request. ``0`` is unbounded.
    """

    def __init__(self, settings: Callable[[], Config]):
        self._settings = settings
        self._active = 0
        self._condition = asyncio.Condition()

    @property
    def active(self) -> int:
        return self._active

    def _has_room(self) -> bool:
        limit = self._settings().concurrency_limit
        return limit <= 0 or self._active < limit

    async def acquire(self):
        async with self._condition:
            if not self._has_room():
                logger.debug(f"Upload waiting for a slot ({self._active} active)")
            await self._condition.wait_for(self._has_room)
            self._active += 1

    async def release(self):
        # Decrement before taking the lock so a cancelled release still frees the slot
        self._active -= 1
        async with self._condition:
            self._condition.notify_all()

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.release()
