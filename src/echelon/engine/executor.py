"""
Execution Engine - per-agent trade loop with on-chain execution logging.

Each cycle an engine consumes, in order:

  1. A2A delegations delivered by its discovery channel (push + poll)
  2. pending user-signed grants in the delegation store
  3. active permissions granted to the agent directly (ledger)

and runs every trade through the logged protocol:

    log_execution_start ──► trade ──► log_execution_complete

A trade that raises is still completed on-chain as FAILURE with amount
out 0, so the ledger never keeps an orphaned PENDING execution for it.

Usage:
    engine = ExecutionEngine(identity, chain, store, ledger, settings, profile=spec)
    await engine.run_cycle()
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Optional

from echelon.chain.base import ChainClient, Identity, SwapVenue
from echelon.config import Settings, Specialist
from echelon.delegation.discovery import DiscoveryChannel
from echelon.delegation.models import A2ADelegation, DelegationRecord, RecordKind
from echelon.delegation.store import DelegationStore
from echelon.engine.serial import SerialQueue
from echelon.engine.settlement import Settlement, SettlementResult
from echelon.errors import ConfigError, RedemptionError, SettlementError, ValidationError
from echelon.ledger.events import RESULT_FAILURE, RESULT_SUCCESS
from echelon.ledger.ledger import ReputationLedger
from echelon.ledger.models import ExecutionResult, normalize_address
from echelon.retry import with_retry
from echelon.service import ServiceLoop

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# TRADE SIZING AND EVALUATION
# ═══════════════════════════════════════════════════════════════════════════


def clamp_trade_size(available: int, min_amount: int, max_amount: int) -> Optional[int]:
    """Trade size for ``available`` funds, or None below the floor."""
    if available < min_amount:
        return None
    return min(available, max_amount)


def min_amount_out(expected_out: int, slippage: float) -> int:
    """Slippage-protected minimum: ``expected * floor((1 - slippage) * 10000) // 10000``."""
    # 1e-9 absorbs float error in (1 - slippage) * 10000
    bps = math.floor((1 - slippage) * 10_000 + 1e-9)
    return expected_out * bps // 10_000


@dataclass(frozen=True)
class TradeOutcome:
    """What a trade returned; ``profit_percent`` is in percent (12.5 == +12.5%)."""

    success: bool
    amount_out: int
    profit_percent: float
    tx_hash: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class Opportunity:
    """A round trip token_in -> token_out -> token_in worth taking."""

    token_in: str
    token_out: str
    amount_in: int
    expected_mid: int
    expected_out: int
    expected_profit_percent: float


class OpportunityEvaluator:
    """Sizes, quotes and filters trades against a swap venue."""

    def __init__(
        self,
        venue: SwapVenue,
        min_trade_amount: int,
        max_trade_amount: int,
        min_profit_percent: float = 0.5,
        slippage: float = 0.005,
    ) -> None:
        self.venue = venue
        self.min_trade_amount = min_trade_amount
        self.max_trade_amount = max_trade_amount
        self.min_profit_percent = min_profit_percent
        self.slippage = slippage

    async def evaluate(self, token_in: str, token_out: str, available: int) -> Optional[Opportunity]:
        size = clamp_trade_size(available, self.min_trade_amount, self.max_trade_amount)
        if size is None:
            return None
        mid = await self.venue.quote(token_in, token_out, size)
        back = await self.venue.quote(token_out, token_in, mid)
        profit_percent = (back - size) / size * 100
        if profit_percent < self.min_profit_percent:
            logger.debug(
                "Round trip %d -> %d is %.3f%%, below %.2f%%",
                size,
                back,
                profit_percent,
                self.min_profit_percent,
            )
            return None
        return Opportunity(token_in, token_out, size, mid, back, profit_percent)

    async def execute(self, sender: Identity, opportunity: Opportunity) -> TradeOutcome:
        """Swap both legs with slippage protection; reverts propagate."""
        mid, _ = await self.venue.swap(
            sender,
            opportunity.token_in,
            opportunity.token_out,
            opportunity.amount_in,
            min_amount_out(opportunity.expected_mid, self.slippage),
        )
        back, receipt = await self.venue.swap(
            sender,
            opportunity.token_out,
            opportunity.token_in,
            mid,
            min_amount_out(opportunity.expected_out, self.slippage),
        )
        profit_percent = (back - opportunity.amount_in) / opportunity.amount_in * 100
        return TradeOutcome(
            success=back >= opportunity.amount_in,
            amount_out=back,
            profit_percent=profit_percent,
            tx_hash=receipt.tx_hash,
        )


class TradeSimulator:
    """
    Draws trade outcomes from a specialist's profile.

    A win draws a return in ``[0, max_profit]``; a loss draws
    ``min_profit + r * |min_profit|``, i.e. in ``[min_profit, 0]``.
    """

    def __init__(
        self,
        win_rate: float,
        min_profit: float,
        max_profit: float,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.win_rate = win_rate
        self.min_profit = min_profit
        self.max_profit = max_profit
        self.rng = rng or random.Random()

    @classmethod
    def from_specialist(
        cls, specialist: Specialist, rng: Optional[random.Random] = None
    ) -> "TradeSimulator":
        return cls(specialist.win_rate, specialist.min_profit, specialist.max_profit, rng)

    def draw(self) -> tuple[bool, float]:
        success = self.rng.random() < self.win_rate
        if success:
            return True, self.rng.random() * self.max_profit
        return False, self.min_profit + self.rng.random() * abs(self.min_profit)

    def simulate(self, amount_in: int) -> TradeOutcome:
        success, fraction = self.draw()
        return TradeOutcome(
            success=success,
            amount_out=math.floor(amount_in * (1 + fraction)),
            profit_percent=fraction * 100,
        )


# ═══════════════════════════════════════════════════════════════════════════
# ENGINE
# ═══════════════════════════════════════════════════════════════════════════


@dataclass
class ExecutionRecord:
    """One logged execution and, when funds were redeemed, its settlement."""

    execution_id: int
    agent_id: Optional[int]
    user: str
    amount_in: int
    amount_out: int
    result: ExecutionResult
    profit_percent: float
    error: Optional[str] = None
    settlement: Optional[SettlementResult] = None


class ExecutionEngine(ServiceLoop):
    """Trades for one agent identity; see module docstring for the cycle."""

    def __init__(
        self,
        identity: Identity,
        chain: ChainClient,
        store: DelegationStore,
        ledger: ReputationLedger,
        settings: Settings,
        profile: Optional[Specialist] = None,
        venue: Optional[SwapVenue] = None,
        treasury: Optional[Identity] = None,
        queue: Optional[SerialQueue] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        super().__init__(settings.engine_interval)
        if profile is None and venue is None:
            raise ConfigError(f"engine for {identity} needs a specialist profile or a swap venue")
        self.name = f"engine:{identity}"
        self.identity = identity
        self.chain = chain
        self.store = store
        self.ledger = ledger
        self.settings = settings
        self.queue = queue or SerialQueue(f"wallet:{identity}")
        self.simulator = TradeSimulator.from_specialist(profile, rng) if profile else None
        self.evaluator = (
            OpportunityEvaluator(
                venue,
                settings.min_trade_amount,
                settings.max_trade_amount,
                settings.min_profit_percent,
                settings.slippage,
            )
            if venue
            else None
        )
        self.settlement = (
            Settlement(chain, identity, treasury, settings.token_address, self.queue)
            if treasury
            else None
        )
        self.channel: DiscoveryChannel[A2ADelegation] = DiscoveryChannel(
            f"{self.name}:a2a",
            key=lambda record: record.delegation_hash,
            poll=self._poll_delegations,
            poll_interval=settings.delegation_poll_interval,
        )
        self._lock = asyncio.Lock()
        self._poller: Optional[asyncio.Task[None]] = None
        self._permission_periods: dict[str, int] = {}
        self.stats: dict[str, int] = {
            "executions": 0,
            "successes": 0,
            "failures": 0,
            "redemptions": 0,
            "redemption_failures": 0,
            "lost_races": 0,
            "skipped": 0,
            "settlement_errors": 0,
            "errors": 0,
        }

    @property
    def address(self) -> str:
        return normalize_address(self.identity.address)

    # ── Discovery ────────────────────────────────────────────────────────

    def on_record(self, record: DelegationRecord) -> None:
        if isinstance(record, A2ADelegation) and record.to_agent_address == self.address:
            self.channel.on_push(record)

    async def _poll_delegations(self) -> list[A2ADelegation]:
        return await self.store.pending_delegations(self.address, self.chain.timestamp())

    async def run(self, max_cycles: Optional[int] = None) -> None:
        unsubscribe = self.store.subscribe(self.on_record)
        self._poller = asyncio.create_task(self.channel.run_poller())
        try:
            await super().run(max_cycles)
        finally:
            unsubscribe()
            self.channel.stop()
            await self._poller
            self._poller = None
            await self.queue.close()

    async def run_cycle(self) -> None:
        if self._poller is None:
            await self.channel.poll_once()

        for record in self.channel.drain():
            if self.stopped:
                self.channel.release(record)
                continue
            await self._process_isolated(record)

        for grant in await self.store.pending_grants(self.address, self.chain.timestamp()):
            if self.stopped:
                return
            await self._process_isolated(grant)

        if not self.stopped:
            await self.process_permissions()

    # ── Redemption ───────────────────────────────────────────────────────

    async def _process_isolated(self, record: DelegationRecord) -> None:
        try:
            await self.process_delegation(record)
        except Exception:
            self.stats["errors"] += 1
            logger.exception("Processing %s %s failed", record.kind, record.key)
            self._finish(record, done=False)

    def _finish(self, record: DelegationRecord, done: bool) -> None:
        if record.kind != RecordKind.A2A:
            return
        assert isinstance(record, A2ADelegation)
        if done:
            self.channel.complete(record)
        else:
            self.channel.release(record)

    async def execute_allocation(self, record: A2ADelegation) -> Optional[ExecutionRecord]:
        """Entry point for the dispatcher's hand-off of a funded allocation."""
        return await self.process_delegation(record)

    async def process_delegation(self, record: DelegationRecord) -> Optional[ExecutionRecord]:
        """
        Redeem ``record`` for this agent, mark it after confirmation, then trade and settle.

        Returns None when the record was not redeemable, redemption failed
        (the record stays pending and is retried later), another worker
        recorded the redemption first, or the execution failed after
        redemption (the principal is sent back to the user).
        """
        async with self._lock:
            # queued copies go stale once another path has processed the record
            current = await self.store.get(record.kind, record.key)
            if current is None:
                logger.warning("%s %s is not in the store; skipping", record.kind, record.key)
                self._finish(record, done=True)
                return None
            record = current
            now = self.chain.timestamp()
            try:
                self.store.check_redeemable(record, self.identity.address, now)
            except RedemptionError as e:
                logger.info("Skipping %s %s: %s", record.kind, record.key, e.reason)
                self._finish(record, done=True)
                return None
            except ValidationError as e:
                logger.warning("Malformed %s %s: %s", record.kind, record.key, e)
                await self.store.record_failure(record.kind, record.key, str(e))
                self._finish(record, done=True)
                return None

            try:
                receipt = await with_retry(
                    lambda: self.queue.submit(
                        lambda: self.chain.redeem_delegation(
                            self.identity, record.signed_payload, record.token, record.amount
                        )
                    ),
                    max_retries=self.settings.max_retries,
                    base_delay=self.settings.retry_base_delay,
                    max_delay=self.settings.retry_max_delay,
                    label=f"redeem {record.key[:18]}",
                )
            except Exception as e:
                attempts = await self.store.record_failure(record.kind, record.key, str(e))
                self.stats["redemption_failures"] += 1
                logger.warning(
                    "Redemption of %s %s failed (attempt %d): %s", record.kind, record.key, attempts, e
                )
                self._finish(record, done=False)
                return None

            if not await self.store.mark_succeeded(record, receipt.tx_hash, now):
                # Funds moved on-chain but another worker recorded the redemption first.
                self.stats["lost_races"] += 1
                logger.warning(
                    "%s %s redeemed on-chain in %s but already recorded by another worker",
                    record.kind,
                    record.key,
                    receipt.tx_hash,
                )
                self._finish(record, done=True)
                return None

            self.stats["redemptions"] += 1
            self._finish(record, done=True)
            try:
                return await self.execute(record.user_address, record.amount, settle=True)
            except Exception as e:
                self.stats["errors"] += 1
                logger.error(
                    "Execution for redeemed %s %s failed, returning principal: %s",
                    record.kind,
                    record.key,
                    e,
                )
                await self._return_unused(record.user_address, record.amount, settle=True)
                return None

    # ── Direct permissions ───────────────────────────────────────────────

    async def process_permissions(self) -> list[ExecutionRecord]:
        """Trade once per period on each active permission granted straight to this agent."""
        if self.identity.agent_id is None:
            return []
        now = self.chain.timestamp()
        records: list[ExecutionRecord] = []
        for permission in await self.ledger.active_permissions(self.identity.agent_id, now):
            if await self.store.get_grant(permission.permission_id) is not None:
                continue
            period = now // max(permission.period_duration, 1)
            if self._permission_periods.get(permission.permission_id) == period:
                continue
            available = min(permission.amount_remaining, permission.amount_per_period)
            if clamp_trade_size(
                available, self.settings.min_trade_amount, self.settings.max_trade_amount
            ) is None:
                continue
            self._permission_periods[permission.permission_id] = period
            record = await self.execute(permission.user_address, available)
            if record is not None:
                records.append(record)
        return records

    # ── Execution protocol ───────────────────────────────────────────────

    async def execute(
        self, user: str, amount: int, settle: bool = False
    ) -> Optional[ExecutionRecord]:
        """Size, trade and log ``amount`` on behalf of ``user``; optionally settle redeemed funds."""
        token_in = self.settings.token_address
        token_out = self.settings.trade_token_address
        size = clamp_trade_size(amount, self.settings.min_trade_amount, self.settings.max_trade_amount)
        if size is None:
            self.stats["skipped"] += 1
            await self._return_unused(user, amount, settle)
            return None

        trade: Callable[[], Awaitable[TradeOutcome]]
        if self.evaluator is not None:
            evaluator = self.evaluator
            opportunity = await evaluator.evaluate(token_in, token_out, size)
            if opportunity is None:
                self.stats["skipped"] += 1
                await self._return_unused(user, amount, settle)
                return None
            found = opportunity

            def trade() -> Awaitable[TradeOutcome]:
                return self.queue.submit(lambda: evaluator.execute(self.identity, found))

        else:
            simulator = self.simulator
            assert simulator is not None

            async def trade() -> TradeOutcome:
                return simulator.simulate(size)

        record = await self.execute_with_logging(user, size, token_in, token_out, trade)

        if settle and self.settlement is not None:
            try:
                record.settlement = await self.settlement.settle(user, size, record.profit_percent)
                if amount > size:
                    await self.settlement.settle(user, amount - size, 0.0)
            except SettlementError as e:
                self.stats["settlement_errors"] += 1
                logger.error(
                    "Settlement for execution %d incomplete (%d leg(s) sent): %s",
                    record.execution_id,
                    len(e.completed_legs),
                    e,
                )
        return record

    async def _return_unused(self, user: str, amount: int, settle: bool) -> None:
        if settle and self.settlement is not None:
            try:
                await self.settlement.settle(user, amount, 0.0)
            except SettlementError as e:
                self.stats["settlement_errors"] += 1
                logger.error("Returning %d unused to %s failed: %s", amount, user, e)

    async def _submit(self, label: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        return await with_retry(
            lambda: self.queue.submit(fn),
            max_retries=self.settings.max_retries,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
            label=label,
        )

    async def execute_with_logging(
        self,
        user: str,
        amount_in: int,
        token_in: str,
        token_out: str,
        trade: Callable[[], Awaitable[TradeOutcome]],
    ) -> ExecutionRecord:
        """
        Log start, run ``trade``, log completion.

        If ``trade`` raises, the execution is completed as FAILURE with
        amount out 0 and profit 0% (the principal is still with the agent).
        Failures of the logging calls themselves propagate after retries.
        """
        execution_id, _ = await self._submit(
            "log_execution_start",
            lambda: self.chain.log_execution_start(
                self.identity, user, amount_in, token_in, token_out
            ),
        )
        logger.info(
            "Execution %d started for %s: %d %s -> %s", execution_id, user, amount_in, token_in, token_out
        )

        try:
            outcome = await trade()
        except Exception as e:
            logger.warning("Trade for execution %d failed: %s", execution_id, e)
            outcome = TradeOutcome(success=False, amount_out=0, profit_percent=0.0, error=str(e))

        result_code = RESULT_SUCCESS if outcome.success else RESULT_FAILURE
        await self._submit(
            "log_execution_complete",
            lambda: self.chain.log_execution_complete(
                self.identity, execution_id, user, amount_in, outcome.amount_out, result_code
            ),
        )

        self.stats["executions"] += 1
        self.stats["successes" if outcome.success else "failures"] += 1
        result = ExecutionResult.SUCCESS if outcome.success else ExecutionResult.FAILURE
        logger.info(
            "Execution %d %s: %d -> %d (%+.2f%%)",
            execution_id,
            result,
            amount_in,
            outcome.amount_out,
            outcome.profit_percent,
        )
        return ExecutionRecord(
            execution_id=execution_id,
            agent_id=self.identity.agent_id,
            user=normalize_address(user),
            amount_in=amount_in,
            amount_out=outcome.amount_out,
            result=result,
            profit_percent=outcome.profit_percent,
            error=outcome.error,
        )

    def health(self) -> dict[str, Any]:
        return {**super().health(), **self.stats, "queued": self.channel.pending}
