"""
End-to-end run of every service against the in-process chain.

Registers the fund manager and roster, grants one permission per user,
then lets the dispatcher fan out, the specialist engines redeem, trade and
settle, the ledger consume every event and the oracle sync mirror the
resulting scores. Used by ``echelon simulate`` and the integration tests.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from echelon.chain.base import Identity
from echelon.chain.simulated import SimulatedChain, SimulatedOracle
from echelon.config import ONE_USDC, Settings
from echelon.delegation.store import Allocation, DelegationStore
from echelon.engine.dispatcher import RedelegationDispatcher
from echelon.engine.executor import ExecutionEngine
from echelon.ledger.consumer import LedgerConsumer
from echelon.ledger.ledger import ReputationLedger
from echelon.ledger.models import Agent, GlobalStats
from echelon.oracle.sync import OracleSync

logger = logging.getLogger(__name__)

ORACLE_UPDATER = "0x00000000000000000000000000000000000c1e01"
PERMISSION_DURATION = 30 * 24 * 60 * 60


@dataclass
class SimulationReport:
    allocations: dict[str, list[Allocation]] = field(default_factory=dict)
    agents: list[Agent] = field(default_factory=list)
    stats: GlobalStats = field(default_factory=GlobalStats)
    engine_stats: dict[str, dict[str, int]] = field(default_factory=dict)
    oracle_synced: int = 0
    events: int = 0


def fast_settings(settings: Settings) -> Settings:
    """Drop every pacing delay; for local runs against the simulated chain."""
    return settings.model_copy(
        update={"inter_call_delay": 0.0, "rate_limit_cooldown": 0.0, "execution_delay": 0.0}
    )


async def run_simulation(
    settings: Settings,
    users: int = 3,
    amount: int = 100 * ONE_USDC,
    rounds: int = 1,
    seed: Optional[int] = None,
    db_path: Optional[Path | str] = None,
) -> SimulationReport:
    """
    Run ``rounds`` of ``users`` permissions of ``amount`` each through the pipeline.

    Each round uses fresh user addresses, so every permission is fanned out.
    """
    chain = SimulatedChain()
    token = settings.token_address
    fund_manager = Identity(settings.fund_manager_address, settings.fund_manager_id, "FundManager")
    treasury = Identity(settings.treasury_address, name="treasury")

    chain.register_agent(fund_manager.agent_id or 1, fund_manager.address, "FundManager", "manager", 5)
    for spec in settings.roster:
        chain.register_agent(spec.agent_id, spec.address, spec.name, "specialist", 5)
    chain.mint(token, treasury.address, 10 * users * rounds * amount)

    db = str(db_path or settings.db_path)
    report = SimulationReport()
    async with (
        ReputationLedger(db, settings.min_executions_for_score) as ledger,
        DelegationStore(db, clock=chain.timestamp) as store,
    ):
        consumer = LedgerConsumer(
            chain,
            ledger,
            max_retries=settings.max_retries,
            retry_base_delay=settings.retry_base_delay,
        )
        engines = {
            spec.agent_id: ExecutionEngine(
                Identity(spec.address, spec.agent_id, spec.name),
                chain,
                store,
                ledger,
                settings,
                profile=spec,
                treasury=treasury,
                rng=random.Random(None if seed is None else seed + spec.agent_id),
            )
            for spec in settings.roster
        }
        dispatcher = RedelegationDispatcher(chain, ledger, store, settings, engines)
        unsubscribe = chain.subscribe(dispatcher.on_event)
        unsubscribe_engines = [store.subscribe(e.on_record) for e in engines.values()]
        try:
            await consumer.catch_up()
            for round_number in range(rounds):
                for i in range(users):
                    user = f"0x{round_number + 1:04x}{i + 1:036x}"
                    chain.mint(token, fund_manager.address, amount)
                    chain.grant_permission(
                        f"perm-{round_number + 1}-{i + 1}",
                        user,
                        settings.fund_manager_id,
                        token,
                        amount,
                        PERMISSION_DURATION,
                    )
                await consumer.catch_up()
                for request in dispatcher.channel.drain():
                    report.allocations[request.permission_id] = await dispatcher.handle_permission(
                        request
                    )
                for engine in engines.values():
                    await engine.run_cycle()
                await consumer.catch_up()

            oracle = SimulatedOracle(chain, ORACLE_UPDATER)
            sync = OracleSync(
                ledger,
                oracle,
                Identity(ORACLE_UPDATER, name="oracle-updater"),
                settings.oracle_state_path,
                batch_size=settings.oracle_batch_size,
                page_size=settings.oracle_page_size,
            )
            await sync.verify_authorization()
            report.oracle_synced = await sync.sync_once()
        finally:
            unsubscribe()
            for unsub in unsubscribe_engines:
                unsub()
            await dispatcher.queue.close()
            for engine in engines.values():
                await engine.queue.close()

        report.agents = await ledger.list_agents(active_only=False)
        report.stats = await ledger.global_stats()
        report.engine_stats = {e.identity.name: dict(e.stats) for e in engines.values()}
        report.events = len(chain.events)
    return report
