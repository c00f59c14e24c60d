"""
Dual-path discovery of pending delegation records.

Two producers feed one queue: the store's push subscription (primary) and a
timer-driven poll (fallback for missed pushes). The channel keeps the keys
of everything queued or in flight, so a record delivered by both paths is
handed to the consumer once. Consumers ``release`` a key after a failed
attempt so the next poll can deliver it again, and ``complete`` it once the
record is terminal. Completed keys are remembered up to ``completed_limit``,
oldest evicted first; an evicted key can only come back through a poll, and
polls return records the store still reports as pending.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_POLL_INTERVAL = 30.0
DEFAULT_COMPLETED_LIMIT = 10_000


class DiscoveryChannel(Generic[T]):
    """Idempotent queue fed by push and poll producers."""

    def __init__(
        self,
        name: str,
        key: Callable[[T], str],
        poll: Callable[[], Awaitable[list[T]]],
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        completed_limit: int = DEFAULT_COMPLETED_LIMIT,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {poll_interval}")
        if completed_limit < 1:
            raise ValueError(f"completed_limit must be at least 1, got {completed_limit}")
        self.name = name
        self._key = key
        self._poll = poll
        self.poll_interval = poll_interval
        self.completed_limit = completed_limit
        self._queue: asyncio.Queue[T] = asyncio.Queue()
        self._in_flight: set[str] = set()
        self._completed: OrderedDict[str, None] = OrderedDict()
        self._stop = asyncio.Event()
        self.pushed = 0
        self.polled = 0
        self.duplicates = 0

    # ── Producers ────────────────────────────────────────────────────────

    def push(self, item: T) -> bool:
        """Offer ``item``; returns False if it is already queued, in flight or done."""
        key = self._key(item)
        if key in self._in_flight or key in self._completed:
            self.duplicates += 1
            return False
        self._in_flight.add(key)
        self._queue.put_nowait(item)
        return True

    def on_push(self, item: T) -> None:
        """Subscription callback for the push path."""
        if self.push(item):
            self.pushed += 1
            logger.debug("%s: pushed %s", self.name, self._key(item))

    async def poll_once(self) -> int:
        """Run the fallback poll once; returns how many new items were queued."""
        added = 0
        for item in await self._poll():
            if self.push(item):
                added += 1
        self.polled += added
        if added:
            logger.info("%s: poll found %d record(s) missed by push", self.name, added)
        return added

    async def run_poller(self) -> None:
        """Poll every ``poll_interval`` seconds until ``stop()``."""
        while not self._stop.is_set():
            try:
                await self.poll_once()
            except Exception:
                logger.exception("%s: poll failed", self.name)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stop.set()

    # ── Consumer ─────────────────────────────────────────────────────────

    def drain(self) -> list[T]:
        """Everything queued right now, in arrival order, minus items completed since."""
        items: list[T] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return items
            if self._key(item) not in self._completed:
                items.append(item)

    async def get(self) -> T:
        return await self._queue.get()

    def release(self, item: T) -> None:
        """Forget a failed item so a later push or poll re-delivers it."""
        self._in_flight.discard(self._key(item))

    def complete(self, item: T) -> None:
        key = self._key(item)
        self._in_flight.discard(key)
        self._completed[key] = None
        self._completed.move_to_end(key)
        while len(self._completed) > self.completed_limit:
            self._completed.popitem(last=False)

    @property
    def pending(self) -> int:
        return self._queue.qsize()
