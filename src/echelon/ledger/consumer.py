"""Ledger consumer: pull ordered chain events into the ReputationLedger."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from echelon.errors import ValidationError
from echelon.ledger.ledger import ReputationLedger
from echelon.retry import with_retry
from echelon.service import ServiceLoop

if TYPE_CHECKING:
    from echelon.chain.base import ChainClient

logger = logging.getLogger(__name__)


class LedgerConsumer(ServiceLoop):
    """
    Resumes from the ledger's persisted cursor and applies each new event.

    A malformed event is logged and stepped over so one bad log never
    blocks the stream.
    """

    name = "ledger"

    def __init__(
        self,
        chain: ChainClient,
        ledger: ReputationLedger,
        interval: float = 10.0,
        batch_size: int = 500,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
    ) -> None:
        super().__init__(interval)
        self.chain = chain
        self.ledger = ledger
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.applied = 0
        self.skipped = 0
        self.invalid = 0

    async def run_cycle(self) -> None:
        while not self.stopped:
            if await self.poll_once() < self.batch_size:
                return

    async def poll_once(self) -> int:
        """Fetch and apply one page of events; returns how many were fetched."""
        position = await self.ledger.cursor()
        events = await with_retry(
            lambda: self.chain.events_since(position, self.batch_size),
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            label="events_since",
        )
        for event in events:
            try:
                if await self.ledger.apply(event):
                    self.applied += 1
                else:
                    self.skipped += 1
            except ValidationError as e:
                self.invalid += 1
                logger.warning("Skipping invalid %s at %s: %s", event.event_type, event.position, e)
                await self.ledger.advance_cursor(event)
        return len(events)

    async def catch_up(self) -> int:
        """Apply everything currently available; returns events applied."""
        before = self.applied
        await self.run_cycle()
        return self.applied - before
