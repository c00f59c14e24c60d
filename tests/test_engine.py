"""
Tests for the execution engine.

Covers: trade sizing, slippage floors, the simulated and venue-backed
trade paths, the logged execution protocol, redemption of delegations and
the redemption race between two workers for the same agent.
"""

import asyncio
import random
from collections.abc import AsyncGenerator

import pytest

from echelon.chain.base import Identity
from echelon.chain.simulated import SimulatedVenue
from echelon.config import ONE_USDC, Specialist
from echelon.delegation.models import DelegationStatus
from echelon.engine.executor import (
    ExecutionEngine,
    OpportunityEvaluator,
    TradeOutcome,
    TradeSimulator,
    clamp_trade_size,
    min_amount_out,
)
from echelon.errors import ConfigError, TransactionReverted, TransientError
from echelon.ledger.models import ExecutionResult

pytestmark = pytest.mark.anyio

USER = "0x00000000000000000000000000000000000000aa"
RESERVE = "0x000000000000000000000000000000000000dead"


def _engine(registered_chain, store, ledger, settings, treasury, agent_id=2, seed=1, **kwargs):
    spec = settings.specialist(agent_id)
    return ExecutionEngine(
        Identity(spec.address, spec.agent_id, spec.name),
        registered_chain,
        store,
        ledger,
        settings,
        profile=spec,
        treasury=treasury,
        rng=random.Random(seed),
        **kwargs,
    )


@pytest.fixture
async def engine(registered_chain, store, ledger, settings, treasury) -> AsyncGenerator[ExecutionEngine, None]:
    engine = _engine(registered_chain, store, ledger, settings, treasury)
    yield engine
    await engine.queue.close()


@pytest.fixture
def funded(registered_chain, settings):
    """Fund manager holds delegated funds; the treasury can pay out profits."""
    registered_chain.mint(settings.token_address, settings.fund_manager_address, 1_000 * ONE_USDC)
    registered_chain.mint(settings.token_address, settings.treasury_address, 1_000 * ONE_USDC)
    return registered_chain


def _balance(chain, settings, owner):
    return chain.balances[(settings.token_address, owner.lower())]


# ═══════════════════════════════════════════════════════════════════════════
# SIZING AND SLIPPAGE
# ═══════════════════════════════════════════════════════════════════════════


class TestSizing:
    def test_below_floor(self):
        assert clamp_trade_size(500_000, ONE_USDC, 100 * ONE_USDC) is None

    def test_within_bounds(self):
        assert clamp_trade_size(5 * ONE_USDC, ONE_USDC, 100 * ONE_USDC) == 5 * ONE_USDC

    def test_capped_at_max(self):
        assert clamp_trade_size(200 * ONE_USDC, ONE_USDC, 100 * ONE_USDC) == 100 * ONE_USDC

    def test_min_amount_out(self):
        assert min_amount_out(10_000, 0.005) == 9_950
        assert min_amount_out(1_000_000, 0.003) == 997_000
        assert min_amount_out(1_000, 0.0) == 1_000


# ═══════════════════════════════════════════════════════════════════════════
# TRADE PATHS
# ═══════════════════════════════════════════════════════════════════════════


class TestTradeSimulator:
    def test_outcome_ranges(self):
        simulator = TradeSimulator(0.7, -0.25, 0.35, random.Random(42))
        for _ in range(500):
            success, fraction = simulator.draw()
            if success:
                assert 0.0 <= fraction <= 0.35
            else:
                assert -0.25 <= fraction <= 0.0

    def test_win_rate_extremes(self):
        always = TradeSimulator(1.0, -0.1, 0.1, random.Random(1))
        never = TradeSimulator(0.0, -0.1, 0.1, random.Random(1))
        assert all(always.draw()[0] for _ in range(100))
        assert not any(never.draw()[0] for _ in range(100))

    def test_simulate_amounts(self):
        simulator = TradeSimulator(0.5, -0.2, 0.2, random.Random(7))
        outcome = simulator.simulate(1_000_000)
        fraction = outcome.profit_percent / 100
        assert outcome.amount_out == int(1_000_000 * (1 + fraction))

    def test_from_specialist(self):
        spec = Specialist(9, "Test", "0x09", 10, 0.6, -0.1, 0.2)
        simulator = TradeSimulator.from_specialist(spec)
        assert (simulator.win_rate, simulator.min_profit, simulator.max_profit) == (0.6, -0.1, 0.2)


class TestOpportunityEvaluator:
    @pytest.fixture
    def venue(self, chain, settings):
        venue = SimulatedVenue(chain, RESERVE)
        venue.set_rate(settings.token_address, settings.trade_token_address, 0.0005)
        venue.set_rate(settings.trade_token_address, settings.token_address, 2020.0)
        chain.mint(settings.token_address, RESERVE, 10_000 * ONE_USDC)
        chain.mint(settings.trade_token_address, RESERVE, 10_000 * ONE_USDC)
        return venue

    async def test_profitable_round_trip(self, venue, settings):
        evaluator = OpportunityEvaluator(venue, ONE_USDC, 100 * ONE_USDC, 0.5, 0.005)
        opportunity = await evaluator.evaluate(
            settings.token_address, settings.trade_token_address, 100 * ONE_USDC
        )
        assert opportunity is not None
        assert opportunity.expected_mid == 50_000
        assert opportunity.expected_out == 101 * ONE_USDC
        assert opportunity.expected_profit_percent == pytest.approx(1.0)

    async def test_below_min_profit(self, venue, settings):
        evaluator = OpportunityEvaluator(venue, ONE_USDC, 100 * ONE_USDC, 2.0, 0.005)
        assert await evaluator.evaluate(
            settings.token_address, settings.trade_token_address, 100 * ONE_USDC
        ) is None

    async def test_below_trade_floor(self, venue, settings):
        evaluator = OpportunityEvaluator(venue, ONE_USDC, 100 * ONE_USDC)
        assert await evaluator.evaluate(
            settings.token_address, settings.trade_token_address, ONE_USDC // 2
        ) is None

    async def test_execute_both_legs(self, chain, venue, settings):
        agent = Identity("0x00000000000000000000000000000000000a1f01", 2)
        chain.mint(settings.token_address, agent.address, 100 * ONE_USDC)
        evaluator = OpportunityEvaluator(venue, ONE_USDC, 100 * ONE_USDC)
        opportunity = await evaluator.evaluate(
            settings.token_address, settings.trade_token_address, 100 * ONE_USDC
        )

        outcome = await evaluator.execute(agent, opportunity)
        assert outcome.success
        assert outcome.amount_out == 101 * ONE_USDC
        assert _balance(chain, settings, agent.address) == 101 * ONE_USDC

    async def test_slippage_protection_reverts(self, chain, venue, settings):
        agent = Identity("0x00000000000000000000000000000000000a1f01", 2)
        chain.mint(settings.token_address, agent.address, 100 * ONE_USDC)
        evaluator = OpportunityEvaluator(venue, ONE_USDC, 100 * ONE_USDC)
        opportunity = await evaluator.evaluate(
            settings.token_address, settings.trade_token_address, 100 * ONE_USDC
        )
        venue.set_rate(settings.token_address, settings.trade_token_address, 0.0004)

        with pytest.raises(TransactionReverted, match="Too little received"):
            await evaluator.execute(agent, opportunity)
        assert _balance(chain, settings, agent.address) == 100 * ONE_USDC


# ═══════════════════════════════════════════════════════════════════════════
# EXECUTION PROTOCOL
# ═══════════════════════════════════════════════════════════════════════════


class TestExecutionProtocol:
    def test_needs_profile_or_venue(self, chain, settings):
        with pytest.raises(ConfigError):
            ExecutionEngine(Identity("0x01", 2), chain, None, None, settings)

    async def test_failed_trade_is_completed_as_failure(self, engine, consumer, ledger):
        async def broken_trade() -> TradeOutcome:
            raise TransactionReverted("pool paused")

        record = await engine.execute_with_logging(
            USER, 10 * ONE_USDC, "0x01", "0x02", broken_trade
        )
        assert record.result == ExecutionResult.FAILURE
        assert record.amount_out == 0
        assert record.profit_percent == 0.0
        assert "pool paused" in record.error

        await consumer.catch_up()
        execution = await ledger.get_execution(record.execution_id)
        assert execution.result == ExecutionResult.FAILURE
        assert execution.amount_out == 0
        agent = await ledger.get_agent(2)
        assert agent.pending_executions == 0
        assert agent.failed_executions == 1

    async def test_logging_calls_are_retried(self, engine, registered_chain, consumer, ledger):
        registered_chain.fail_next("log_execution_start", TransientError("timeout"))
        registered_chain.fail_next("log_execution_complete", TransientError("timeout"))

        async def trade() -> TradeOutcome:
            return TradeOutcome(True, 11 * ONE_USDC, 10.0)

        record = await engine.execute_with_logging(USER, 10 * ONE_USDC, "0x01", "0x02", trade)
        assert record.result == ExecutionResult.SUCCESS
        await consumer.catch_up()
        assert (await ledger.get_execution(record.execution_id)).result == ExecutionResult.SUCCESS

    async def test_execute_without_settlement(self, engine, consumer, ledger):
        record = await engine.execute(USER, 10 * ONE_USDC)
        assert record is not None
        assert record.settlement is None
        assert engine.stats["executions"] == 1

    async def test_execute_below_floor_is_skipped(self, engine):
        assert await engine.execute(USER, 1) is None
        assert engine.stats["skipped"] == 1
        assert engine.stats["executions"] == 0


# ═══════════════════════════════════════════════════════════════════════════
# REDEMPTION
# ═══════════════════════════════════════════════════════════════════════════


class TestRedemption:
    async def test_redeem_trade_and_settle(self, engine, funded, store, settings, make_delegation):
        record = make_delegation(amount=10 * ONE_USDC)
        await store.add_delegation(record)

        result = await engine.process_delegation(record)
        assert result is not None
        assert result.settlement is not None

        stored = await store.get_delegation(record.key)
        assert stored.status == DelegationStatus.REDEEMED
        assert stored.redeemed_tx_hash == funded.redemptions[0][2].tx_hash
        assert _balance(funded, settings, USER) == result.settlement.returned_to_user
        assert engine.stats["redemptions"] == 1

    async def test_wrong_engine_does_not_redeem(self, engine, funded, store, make_delegation):
        record = make_delegation(to_agent_id=3)
        await store.add_delegation(record)

        assert await engine.process_delegation(record) is None
        assert funded.redemptions == []
        assert (await store.get_delegation(record.key)).is_pending

    async def test_expired_is_skipped(self, engine, funded, store, clock, make_delegation):
        record = make_delegation(expires_in=60)
        await store.add_delegation(record)
        clock.advance(60)

        assert await engine.process_delegation(record) is None
        assert funded.redemptions == []

    async def test_reverted_redemption_stays_pending(self, engine, funded, store, make_delegation):
        record = make_delegation()
        await store.add_delegation(record)
        funded.fail_next("redeem_delegation", TransactionReverted("caveat violated"))

        assert await engine.process_delegation(record) is None
        stored = await store.get_delegation(record.key)
        assert stored.is_pending
        assert stored.attempts == 1
        assert "caveat violated" in stored.last_error
        assert engine.stats["redemption_failures"] == 1

    async def test_transient_redemption_failure_is_retried(
        self, engine, funded, store, make_delegation
    ):
        record = make_delegation()
        await store.add_delegation(record)
        funded.fail_next("redeem_delegation", TransientError("nonce too low"))

        assert await engine.process_delegation(record) is not None
        assert len(funded.redemptions) == 1

    async def test_stale_copy_is_not_redeemed_twice(self, engine, funded, store, make_delegation):
        record = make_delegation()
        await store.add_delegation(record)

        await engine.process_delegation(record)
        assert await engine.process_delegation(record) is None
        assert len(funded.redemptions) == 1

    async def test_below_floor_returns_principal(self, engine, funded, store, settings, make_delegation):
        record = make_delegation(amount=ONE_USDC // 2)
        await store.add_delegation(record)

        assert await engine.process_delegation(record) is None
        assert engine.stats["skipped"] == 1
        assert _balance(funded, settings, USER) == ONE_USDC // 2

    async def test_amount_above_max_returns_remainder(
        self, engine, funded, store, settings, make_delegation
    ):
        record = make_delegation(amount=150 * ONE_USDC)
        await store.add_delegation(record)

        result = await engine.process_delegation(record)
        assert result.amount_in == settings.max_trade_amount
        assert _balance(funded, settings, USER) == (
            result.settlement.returned_to_user + 50 * ONE_USDC
        )

    async def test_settlement_failure_is_counted(self, engine, funded, store, make_delegation):
        record = make_delegation()
        await store.add_delegation(record)
        funded.fail_next("transfer", TransactionReverted("paused"))

        result = await engine.process_delegation(record)
        assert result is not None
        assert result.settlement is None
        assert engine.stats["settlement_errors"] == 1

    async def test_failed_execution_after_redemption_returns_principal(
        self, engine, funded, store, settings, make_delegation
    ):
        record = make_delegation(amount=10 * ONE_USDC)
        await store.add_delegation(record)
        funded.fail_next("log_execution_start", TransactionReverted("out of gas"))

        assert await engine.process_delegation(record) is None
        assert (await store.get_delegation(record.key)).status == DelegationStatus.REDEEMED
        assert _balance(funded, settings, USER) == 10 * ONE_USDC
        assert engine.stats["errors"] == 1
        assert engine.stats["executions"] == 0


class TestRedemptionRace:
    """
    Two workers for the same agent pick up the same pending delegation.

    The store's compare-and-swap records exactly one redemption. Both
    workers still submit on-chain before either records, so the chain sees
    two redemptions; the loser counts a lost race and does not trade.
    """

    async def test_one_worker_records_the_redemption(
        self, registered_chain, funded, store, ledger, settings, treasury, make_delegation
    ):
        first = _engine(registered_chain, store, ledger, settings, treasury, seed=1)
        second = _engine(registered_chain, store, ledger, settings, treasury, seed=2)
        record = make_delegation(amount=10 * ONE_USDC)
        await store.add_delegation(record)

        try:
            results = await asyncio.gather(
                first.process_delegation(record), second.process_delegation(record)
            )
        finally:
            await first.queue.close()
            await second.queue.close()

        assert len(funded.redemptions) == 2
        assert sum(r is not None for r in results) == 1
        assert first.stats["lost_races"] + second.stats["lost_races"] == 1
        assert first.stats["redemptions"] + second.stats["redemptions"] == 1

        stored = await store.get_delegation(record.key)
        assert stored.status == DelegationStatus.REDEEMED
        assert stored.redeemed_tx_hash in {r[2].tx_hash for r in funded.redemptions}


# ═══════════════════════════════════════════════════════════════════════════
# CYCLE
# ═══════════════════════════════════════════════════════════════════════════


class TestCycle:
    async def test_push_only_accepts_own_delegations(self, engine, make_delegation):
        engine.on_record(make_delegation(to_agent_id=3))
        assert engine.channel.pending == 0
        engine.on_record(make_delegation(to_agent_id=2))
        assert engine.channel.pending == 1

    async def test_cycle_discovers_by_poll(self, engine, funded, store, make_delegation):
        record = make_delegation()
        await store.add_delegation(record)

        await engine.run_cycle()
        assert (await store.get_delegation(record.key)).status == DelegationStatus.REDEEMED

    async def test_one_failing_record_does_not_abort_cycle(
        self, engine, funded, store, make_delegation, monkeypatch
    ):
        first, second = make_delegation(), make_delegation()
        for record in (first, second):
            await store.add_delegation(record)
            engine.on_record(record)

        original = store.get
        failures = iter([TransientError("database is locked")])

        async def flaky(kind, key):
            for error in failures:
                raise error
            return await original(kind, key)

        monkeypatch.setattr(store, "get", flaky)

        await engine.run_cycle()
        assert engine.stats["errors"] == 1
        assert (await store.get_delegation(first.key)).is_pending
        assert (await store.get_delegation(second.key)).status == DelegationStatus.REDEEMED

        await engine.run_cycle()
        assert (await store.get_delegation(first.key)).status == DelegationStatus.REDEEMED
        assert len(funded.redemptions) == 2

    async def test_direct_permission_traded_once_per_period(
        self, engine, registered_chain, consumer, clock, settings
    ):
        registered_chain.grant_permission(
            "direct-1",
            USER,
            2,
            settings.token_address,
            100 * ONE_USDC,
            30 * 86_400,
            amount_per_period=10 * ONE_USDC,
        )
        await consumer.catch_up()

        assert len(await engine.process_permissions()) == 1
        assert await engine.process_permissions() == []
        clock.advance(86_400)
        assert len(await engine.process_permissions()) == 1

    async def test_health(self, engine):
        health = engine.health()
        assert health["service"] == "engine:AlphaYield"
        assert health["executions"] == 0
        assert health["queued"] == 0
