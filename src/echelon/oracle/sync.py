"""
Oracle Sync - push ledger reputation scores to the on-chain oracle.

    ReputationLedger ──► OracleSync ──► ReputationOracle (on-chain)

Each cycle reads every active agent's score from the ledger, compares it
with the oracle, and writes only the changed ones in batches. Progress is
kept in a small JSON state file so counters survive restarts.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from echelon.chain.base import Identity, ReputationOracle
from echelon.errors import AuthorizationError
from echelon.ledger.ledger import ReputationLedger
from echelon.ledger.models import normalize_address
from echelon.retry import with_retry
from echelon.service import ServiceLoop

logger = logging.getLogger(__name__)

BATCH_RETRIES = 2
BATCH_RETRY_DELAY = 3.0
BATCH_SPACING = 1.0


@dataclass
class SyncState:
    """Persisted progress of the sync service."""

    last_sync_time: int = 0
    last_sync_block: int = 0
    agents_synced: int = 0
    errors: int = 0

    @classmethod
    def load(cls, path: Path) -> "SyncState":
        if not path.exists():
            return cls()
        try:
            with open(path) as f:
                data = json.load(f)
            return cls(**{k: int(v) for k, v in data.items() if k in cls.__dataclass_fields__})
        except (OSError, ValueError, TypeError) as e:
            logger.warning("Could not read sync state %s, starting fresh: %s", path, e)
            return cls()

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)


def chunk(items: list[Any], size: int) -> list[list[Any]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class OracleSync(ServiceLoop):
    """Mirrors ledger scores onto a ``ReputationOracle``."""

    name = "oracle-sync"

    def __init__(
        self,
        ledger: ReputationLedger,
        oracle: ReputationOracle,
        updater: Identity,
        state_path: Path,
        interval: float = 300.0,
        batch_size: int = 50,
        page_size: int = 100,
        max_agents: int = 10_000,
    ) -> None:
        super().__init__(interval)
        self.ledger = ledger
        self.oracle = oracle
        self.updater = updater
        self.state_path = state_path
        self.batch_size = batch_size
        self.page_size = page_size
        self.max_agents = max_agents
        self.state = SyncState.load(state_path)

    async def verify_authorization(self) -> None:
        """Raise ``AuthorizationError`` unless our identity is the oracle's updater."""
        try:
            updater = await self.oracle.updater()
        except Exception as e:
            raise AuthorizationError(f"could not read oracle updater: {e}") from e
        if normalize_address(updater) != normalize_address(self.updater.address):
            raise AuthorizationError(
                f"{self.updater.address} is not authorized as oracle updater (current: {updater})"
            )

    async def startup(self) -> None:
        await self.verify_authorization()

    async def fetch_scores(self) -> dict[str, int]:
        """Every active agent's ledger score, paging until exhausted or ``max_agents``."""
        scores: dict[str, int] = {}
        offset = 0
        while True:
            page = await self.ledger.reputation_scores(limit=self.page_size, offset=offset)
            if not page:
                break
            scores.update({addr: max(0, min(100, score)) for addr, score in page.items()})
            offset += self.page_size
            if len(scores) > self.max_agents:
                logger.warning("Agent limit %d reached, stopping pagination", self.max_agents)
                break
        return scores

    async def filter_changed(self, scores: dict[str, int]) -> dict[str, int]:
        """Scores differing from the oracle; an unreadable on-chain score counts as changed."""
        changed: dict[str, int] = {}
        for agent, score in scores.items():
            try:
                on_chain = await self.oracle.get_score(agent)
            except Exception as e:
                logger.debug("Could not read oracle score for %s: %s", agent, e)
                changed[agent] = score
                continue
            if on_chain != score:
                changed[agent] = score
        return changed

    async def sync_once(self) -> int:
        """Run one sync pass; returns how many agents were written."""
        scores = await self.fetch_scores()
        if not scores:
            logger.info("No agents to sync")
            return 0

        changed = await self.filter_changed(scores)
        logger.info("%d of %d agents have changed scores", len(changed), len(scores))

        synced = 0
        batches = chunk(list(changed.items()), self.batch_size)
        for i, batch in enumerate(batches):
            agents = [agent for agent, _ in batch]
            values = [score for _, score in batch]
            try:
                await with_retry(
                    lambda: self.oracle.batch_update(self.updater, agents, values),
                    max_retries=BATCH_RETRIES,
                    base_delay=BATCH_RETRY_DELAY,
                    retry_on=(Exception,),
                    label=f"oracle batch {i + 1}/{len(batches)}",
                )
            except Exception as e:
                self.state.errors += 1
                logger.error("Oracle batch %d/%d failed: %s", i + 1, len(batches), e)
            else:
                synced += len(batch)
            if i < len(batches) - 1:
                await self.sleep(BATCH_SPACING)

        self.state.last_sync_time = int(time.time())
        self.state.last_sync_block = await self.oracle.block_number()
        self.state.agents_synced += synced
        self.state.save(self.state_path)
        logger.info("Sync complete: %d agents written at block %d", synced, self.state.last_sync_block)
        return synced

    async def run_cycle(self) -> None:
        try:
            await self.sync_once()
        except Exception:
            self.state.errors += 1
            self.state.save(self.state_path)
            raise

    def status(self) -> dict[str, Any]:
        return {
            "running": self.started_at is not None and not self.stopped,
            "last_sync_time": self.state.last_sync_time,
            "last_sync_block": self.state.last_sync_block,
            "total_agents_synced": self.state.agents_synced,
            "total_errors": self.state.errors,
        }
