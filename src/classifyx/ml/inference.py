"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> classification pipeline

Requests beyond the semaphore limit wait up to ``queue_timeout`` seconds, then
fail with TimeoutError (served as 503).
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from classifyx.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferencePool:
    """Bounds the number of classifications running at once."""

    def __init__(self, settings: Settings) -> None:
        self._queue_timeout = settings.queue_timeout
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="classifyx-worker",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run a synchronous function on the worker pool once a slot is free.

        Raises:
            TimeoutError: If no slot frees up within the queue timeout.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._queue_timeout)
        except TimeoutError:
            logger.warning("No inference slot free after %.1fs", self._queue_timeout)
            raise
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    @property
    def active_count(self) -> int:
        """Number of classifications currently running."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a free slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the worker pool."""
        self._executor.shutdown(wait=True)
