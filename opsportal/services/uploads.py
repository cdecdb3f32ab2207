"""
Upload concurrency limiting.

A process-wide semaphore bounds how many uploads are buffered at once. A
request that cannot get a slot within the queue timeout fails with a
retryable UploadBusy (503 + Retry-After); it is never dropped silently.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from opsportal.core.errors import UploadBusy

logger = logging.getLogger(__name__)


class UploadLimiter:
    def __init__(self, max_concurrent: int = 5, queue_timeout: float = 5.0):
        if max_concurrent <= 0:
            raise ValueError("max_concurrent must be positive")
        self.max_concurrent = max_concurrent
        self.queue_timeout = queue_timeout
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._active = 0
        self.rejected = 0

    @property
    def active(self) -> int:
        return self._active

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold one upload slot for the duration of the block."""
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self.queue_timeout)
        except asyncio.TimeoutError:
            self.rejected += 1
            logger.warning(
                "Upload queue saturated (%d in flight); rejecting after %.1fs",
                self._active,
                self.queue_timeout,
            )
            raise UploadBusy("Too many uploads in progress, retry shortly")

        self._active += 1
        try:
            yield
        finally:
            self._active -= 1
            self._semaphore.release()
