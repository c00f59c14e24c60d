"""
Serialized work queue (a worker pool of one).

Every on-chain call for one signing identity goes through a ``SerialQueue``
so at most one transaction is outstanding per wallet, with a minimum spacing
between consecutive calls to stay under upstream rate limits.

Usage:
    async with SerialQueue("fund-manager", spacing=3.0) as queue:
        receipt = await queue.submit(lambda: chain.log_redelegation(...))
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_Job = tuple[Callable[[], Awaitable[Any]], "asyncio.Future[Any]"]


class SerialQueue:
    """Runs submitted coroutine factories strictly one after another."""

    def __init__(self, name: str, spacing: float = 0.0) -> None:
        self.name = name
        self.spacing = spacing
        self._queue: asyncio.Queue[Optional[_Job]] = asyncio.Queue()
        self._worker: Optional[asyncio.Task[None]] = None
        self._last_finished: Optional[float] = None
        self.completed = 0
        self.failed = 0

    async def __aenter__(self) -> "SerialQueue":
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type],
        exc_val: Optional[BaseException],
        exc_tb: Optional[object],
    ) -> None:
        await self.close()

    def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._run(), name=f"serial:{self.name}")

    async def close(self) -> None:
        """Finish queued jobs, then stop the worker."""
        if self._worker is None:
            return
        await self._queue.put(None)
        await self._worker
        self._worker = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def submit(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Queue ``fn`` and wait for its result (or exception)."""
        self.start()
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        await self._queue.put((fn, future))
        return await future

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            job = await self._queue.get()
            if job is None:
                self._queue.task_done()
                return
            fn, future = job
            if self._last_finished is not None and self.spacing > 0:
                wait = self.spacing - (loop.time() - self._last_finished)
                if wait > 0:
                    await asyncio.sleep(wait)
            try:
                result = await fn()
            except Exception as e:
                self.failed += 1
                if not future.cancelled():
                    future.set_exception(e)
            else:
                self.completed += 1
                if not future.cancelled():
                    future.set_result(result)
            finally:
                self._last_finished = loop.time()
                self._queue.task_done()
