"""Semaphore-gated async worker pool for chunk inference."""

from __future__ import annotations

import asyncio
import functools
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TypeVar

from spanextract.ai.types import Chunk
from spanextract.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class ChunkTask:
    chunk: Chunk
    pass_number: int = 1
    # Additional prompt context, including refinement guidance on later passes.
    context: Optional[str] = None

    @property
    def idx(self) -> int:
        return self.chunk.id


class AsyncWorkerPool:
    """
    Runs at most ``max_workers`` tasks at a time.

    Blocking calls go through :meth:`run_blocking`, which hands them to a
    thread pool of the same size so the event loop stays responsive.
    """

    def __init__(self, max_workers: int, thread_name_prefix: str = "spanextract-worker"):
        self.max_workers = max(1, int(max_workers))
        self.thread_name_prefix = thread_name_prefix
        self._executor: Optional[ThreadPoolExecutor] = None
        self._in_flight = 0
        self.peak_in_flight = 0

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix=self.thread_name_prefix
            )
            logger.debug("Started thread pool with %d workers", self.max_workers)
        return self._executor

    async def run_blocking(self, func: Callable[..., R], *args: Any, **kwargs: Any) -> R:
        loop = asyncio.get_running_loop()
        call = functools.partial(func, *args, **kwargs)
        return await loop.run_in_executor(self._ensure_executor(), call)

    async def map(
        self,
        items: Sequence[T],
        handler: Callable[[T], Awaitable[R]],
        on_result: Optional[Callable[[int, R], None]] = None,
    ) -> List[R]:
        """Apply ``handler`` to every item with bounded concurrency; results keep input order."""
        if not items:
            return []
        semaphore = asyncio.Semaphore(self.max_workers)
        completed = 0

        async def _guarded(item: T) -> R:
            nonlocal completed
            async with semaphore:
                self._in_flight += 1
                self.peak_in_flight = max(self.peak_in_flight, self._in_flight)
                try:
                    result = await handler(item)
                finally:
                    self._in_flight -= 1
            completed += 1
            if on_result is not None:
                on_result(completed, result)
            return result

        return list(await asyncio.gather(*(_guarded(item) for item in items)))

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> "AsyncWorkerPool":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()


__all__ = ["AsyncWorkerPool", "ChunkTask"]
