"""
Single-flight work queue shared by every ingestor.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from loguru import logger

T = TypeVar("T")

Task = Callable[[], Awaitable[T]]


class SingleFlightQueue:
    """
    Process-wide FIFO queue that runs at most one task at a time.

    Architecture:
        Poll / Push / Webhook -> enqueue -> one reply at a time -> delivery

    Guarantees:
        - FIFO: asyncio.Lock wakes waiters in acquisition order
        - Mutual exclusion: task N+1 starts after task N finishes
        - Fault isolation: a failing task only fails its own caller

    An instance is owned by the runtime and passed to each ingestor;
    there is no module-level singleton.
    """

    def __init__(self) -> None:
        self._lock: Optional[asyncio.Lock] = None
        self._pending = 0
        self._active = False
        self._completed = 0

    # ---------------------------------------------------------------------
    # Enqueue
    # ---------------------------------------------------------------------

    async def enqueue(self, task: Task[T]) -> T:
        """
        Run ``task`` once every earlier-enqueued task has finished.

        Returns:
            The task's result. Exceptions propagate to this caller only.
        """
        if self._lock is None:
            self._lock = asyncio.Lock()

        self._pending += 1
        acquired = False
        try:
            async with self._lock:
                acquired = True
                self._pending -= 1
                self._active = True
                try:
                    return await task()
                finally:
                    self._active = False
                    self._completed += 1
        except asyncio.CancelledError:
            if not acquired:
                self._pending -= 1
            logger.debug("Queued task cancelled | started={}", acquired)
            raise

    # ---------------------------------------------------------------------
    # Metrics
    # ---------------------------------------------------------------------

    @property
    def pending(self) -> int:
        return self._pending

    @property
    def active(self) -> bool:
        return self._active

    @property
    def completed(self) -> int:
        return self._completed
