"""Cooperative service loop shared by the ledger consumer, dispatcher, engine and oracle sync."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from echelon.errors import AuthorizationError, ConfigError
from echelon.logging_config import service_var

logger = logging.getLogger(__name__)

FATAL_ERRORS: tuple[type[BaseException], ...] = (AuthorizationError, ConfigError)


class ServiceLoop:
    """
    Single-task loop: ``startup()`` once, then ``run_cycle()`` every ``interval``.

    Cancellation is cooperative: ``stop()`` sets a flag checked between
    iterations and wakes any ``sleep()``; an awaited call in flight is left to
    finish. A failing cycle is logged and retried next interval; only startup
    misconfiguration (``FATAL_ERRORS``) ends the loop with an exception.
    """

    name = "service"

    def __init__(self, interval: float) -> None:
        self.interval = interval
        self._stop = asyncio.Event()
        self.cycles = 0
        self.cycle_errors = 0
        self.started_at: float | None = None
        self.last_cycle_at: float | None = None
        self.last_error: str | None = None

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        if not self._stop.is_set():
            logger.info("%s: stop requested", self.name)
        self._stop.set()

    async def sleep(self, seconds: float) -> None:
        """Sleep up to ``seconds``; returns early once stopped."""
        if seconds <= 0 or self.stopped:
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def startup(self) -> None:
        """Hook run once before the first cycle."""

    async def run_cycle(self) -> None:
        raise NotImplementedError

    async def run(self, max_cycles: int | None = None) -> None:
        token = service_var.set(self.name)
        try:
            self.started_at = time.time()
            await self.startup()
            logger.info("%s: started (interval %.1fs)", self.name, self.interval)
            while not self.stopped:
                try:
                    await self.run_cycle()
                except FATAL_ERRORS:
                    raise
                except Exception as e:
                    self.cycle_errors += 1
                    self.last_error = str(e)
                    logger.exception("%s: cycle failed, retrying next interval", self.name)
                self.cycles += 1
                self.last_cycle_at = time.time()
                if max_cycles is not None and self.cycles >= max_cycles:
                    break
                await self.sleep(self.interval)
            logger.info("%s: stopped after %d cycles", self.name, self.cycles)
        finally:
            service_var.reset(token)

    def health(self) -> dict[str, Any]:
        return {
            "service": self.name,
            "running": self.started_at is not None and not self.stopped,
            "cycles": self.cycles,
            "cycle_errors": self.cycle_errors,
            "last_cycle_at": self.last_cycle_at,
            "last_error": self.last_error,
        }
