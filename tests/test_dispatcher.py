"""
Tests for the redelegation dispatcher.

Covers: roster splits, once-only fan-out per permission (in process and
across restarts), rate-limit cooldown, partial funding and the skip rule
for users who already have live redelegations.
"""

from collections.abc import AsyncGenerator

import pytest

from echelon.config import ONE_USDC, Specialist
from echelon.delegation.models import DelegationStatus
from echelon.engine.dispatcher import FanoutRequest, RedelegationDispatcher, split_amount
from echelon.errors import RateLimitError, TransactionReverted, TransientError, ValidationError

pytestmark = pytest.mark.anyio

USER = "0x00000000000000000000000000000000000000aa"


@pytest.fixture
async def dispatcher(
    registered_chain, ledger, store, settings
) -> AsyncGenerator[RedelegationDispatcher, None]:
    dispatcher = RedelegationDispatcher(registered_chain, ledger, store, settings)
    unsubscribe = registered_chain.subscribe(dispatcher.on_event)
    yield dispatcher
    unsubscribe()
    await dispatcher.queue.close()


def _grant(chain, settings, permission_id="perm-1", user=USER, amount=100 * ONE_USDC, agent_id=None):
    chain.grant_permission(
        permission_id,
        user,
        settings.fund_manager_id if agent_id is None else agent_id,
        settings.token_address,
        amount,
        30 * 86_400,
    )


def _redelegation_calls(chain):
    return [c for name, c in chain.calls if name == "log_redelegation"]


# ═══════════════════════════════════════════════════════════════════════════
# SPLIT
# ═══════════════════════════════════════════════════════════════════════════


class TestSplit:
    def test_default_roster(self, settings):
        assert split_amount(1000, settings.roster) == [350, 250, 250, 150]

    def test_remainder_goes_to_first(self, settings):
        shares = split_amount(101, settings.roster)
        assert shares == [36, 25, 25, 15]
        assert sum(shares) == 101

    def test_tiny_amount(self, settings):
        assert split_amount(1, settings.roster) == [1, 0, 0, 0]

    def test_rejects_non_positive(self, settings):
        with pytest.raises(ValidationError):
            split_amount(0, settings.roster)

    def test_rejects_empty_roster(self):
        with pytest.raises(ValidationError):
            split_amount(100, ())

    def test_custom_roster(self):
        roster = (
            Specialist(7, "A", "0x07", 50, 0.5, -0.1, 0.1),
            Specialist(8, "B", "0x08", 50, 0.5, -0.1, 0.1),
        )
        assert split_amount(11, roster) == [6, 5]


# ═══════════════════════════════════════════════════════════════════════════
# FAN-OUT
# ═══════════════════════════════════════════════════════════════════════════


class TestFanout:
    async def test_push_fans_out_to_roster(self, dispatcher, registered_chain, store, settings):
        _grant(registered_chain, settings)
        requests = dispatcher.channel.drain()
        assert len(requests) == 1

        allocations = await dispatcher.handle_permission(requests[0])
        assert [a.amount for a in allocations] == [
            35 * ONE_USDC,
            25 * ONE_USDC,
            25 * ONE_USDC,
            15 * ONE_USDC,
        ]
        assert all(a.funded for a in allocations)
        assert await store.fanout_status("perm-1") == "completed"
        assert dispatcher.stats["redelegations_created"] == 4

        records = await store.delegation_chain("perm-1")
        assert [r.to_agent_address for r in records] == [s.address for s in settings.roster]
        for record in records:
            payload = record.payload()
            assert record.status == DelegationStatus.PENDING
            assert payload.delegator == settings.fund_manager_address
            assert payload.delegate == record.to_agent_address
            assert payload.amount == record.amount
            assert record.user_address == USER

    async def test_replay_is_ignored(self, dispatcher, registered_chain, settings):
        _grant(registered_chain, settings)
        request = dispatcher.channel.drain()[0]

        await dispatcher.handle_permission(request)
        assert await dispatcher.handle_permission(request) == []
        assert len(_redelegation_calls(registered_chain)) == 4
        assert dispatcher.stats["permissions_processed"] == 1

    async def test_poll_after_push_finds_nothing_new(
        self, dispatcher, registered_chain, consumer, settings
    ):
        _grant(registered_chain, settings)
        await consumer.catch_up()
        assert await dispatcher.channel.poll_once() == 0
        assert len(dispatcher.channel.drain()) == 1

    async def test_restart_does_not_fan_out_again(
        self, dispatcher, registered_chain, ledger, store, consumer, settings
    ):
        _grant(registered_chain, settings)
        await dispatcher.handle_permission(dispatcher.channel.drain()[0])
        await consumer.catch_up()

        restarted = RedelegationDispatcher(registered_chain, ledger, store, settings)
        await restarted.run_cycle()
        await restarted.queue.close()
        assert len(_redelegation_calls(registered_chain)) == 4
        assert restarted.stats["permissions_processed"] == 0

    async def test_cycle_discovers_by_poll(self, registered_chain, ledger, store, consumer, settings):
        dispatcher = RedelegationDispatcher(registered_chain, ledger, store, settings)
        _grant(registered_chain, settings)
        await consumer.catch_up()

        await dispatcher.run_cycle()
        await dispatcher.queue.close()
        assert len(await store.allocations("perm-1")) == 4

    async def test_other_agents_permissions_ignored(self, dispatcher, registered_chain, settings):
        _grant(registered_chain, settings, agent_id=2)
        assert dispatcher.channel.drain() == []

        request = FanoutRequest("perm-x", USER, 2, settings.token_address, 100, 0)
        assert await dispatcher.handle_permission(request) == []

    async def test_share_rounding_to_zero_is_not_funded(self, dispatcher, registered_chain, settings):
        _grant(registered_chain, settings, amount=1)
        allocations = await dispatcher.handle_permission(dispatcher.channel.drain()[0])
        assert [a.status for a in allocations] == ["funded", "not_funded", "not_funded", "not_funded"]
        assert allocations[1].error == "share rounds to zero"
        assert len(_redelegation_calls(registered_chain)) == 1


class TestSkipLiveRedelegations:
    async def test_second_permission_for_same_user_is_skipped(
        self, dispatcher, registered_chain, store, consumer, settings
    ):
        _grant(registered_chain, settings, "perm-1")
        await dispatcher.handle_permission(dispatcher.channel.drain()[0])
        await consumer.catch_up()

        _grant(registered_chain, settings, "perm-2")
        assert await dispatcher.handle_permission(dispatcher.channel.drain()[0]) == []
        assert await store.fanout_status("perm-2") == "skipped"
        assert dispatcher.stats["skipped"] == 1
        assert len(_redelegation_calls(registered_chain)) == 4

    async def test_other_user_is_not_skipped(self, dispatcher, registered_chain, consumer, settings):
        _grant(registered_chain, settings, "perm-1")
        await dispatcher.handle_permission(dispatcher.channel.drain()[0])
        await consumer.catch_up()

        _grant(registered_chain, settings, "perm-2", user="0x00000000000000000000000000000000000000bb")
        allocations = await dispatcher.handle_permission(dispatcher.channel.drain()[0])
        assert len(allocations) == 4


class TestPartialFunding:
    async def test_rate_limit_is_retried_once(self, dispatcher, registered_chain, settings):
        registered_chain.fail_next("log_redelegation", RateLimitError("429 Too Many Requests"))
        _grant(registered_chain, settings)

        allocations = await dispatcher.handle_permission(dispatcher.channel.drain()[0])
        assert all(a.funded for a in allocations)
        assert len(_redelegation_calls(registered_chain)) == 5

    async def test_second_rate_limit_leaves_specialist_unfunded(
        self, dispatcher, registered_chain, store, settings
    ):
        registered_chain.fail_next(
            "log_redelegation", RateLimitError("429 Too Many Requests"), times=2
        )
        _grant(registered_chain, settings)

        allocations = await dispatcher.handle_permission(dispatcher.channel.drain()[0])
        assert [a.funded for a in allocations] == [False, True, True, True]
        assert "429" in allocations[0].error
        assert dispatcher.stats["errors"] == 1

        records = await store.delegation_chain("perm-1")
        assert len(records) == 3
        assert await store.fanout_status("perm-1") == "completed"

    async def test_revert_is_not_retried(self, dispatcher, registered_chain, settings):
        registered_chain.fail_next("log_redelegation", TransactionReverted("unknown child"))
        _grant(registered_chain, settings)

        allocations = await dispatcher.handle_permission(dispatcher.channel.drain()[0])
        assert [a.funded for a in allocations] == [False, True, True, True]
        assert len(_redelegation_calls(registered_chain)) == 4


class TestClaimRecovery:
    async def test_error_before_chain_call_releases_claim(
        self, dispatcher, registered_chain, ledger, store, settings, monkeypatch
    ):
        original = ledger.count_active_redelegations
        failures = iter([TransientError("database is locked")])

        async def flaky(*args, **kwargs):
            for error in failures:
                raise error
            return await original(*args, **kwargs)

        monkeypatch.setattr(ledger, "count_active_redelegations", flaky)
        _grant(registered_chain, settings)

        await dispatcher.run_cycle()
        assert dispatcher.stats["errors"] == 1
        assert await store.fanout_status("perm-1") is None
        assert _redelegation_calls(registered_chain) == []

        dispatcher.channel.on_push(FanoutRequest.from_event(registered_chain.events[-1]))
        await dispatcher.run_cycle()
        assert len(_redelegation_calls(registered_chain)) == 4
        assert await store.fanout_status("perm-1") == "completed"

    async def test_error_after_chain_call_keeps_claim(
        self, dispatcher, registered_chain, store, settings, monkeypatch
    ):
        async def broken(allocation, now=None):
            raise TransientError("disk I/O error")

        monkeypatch.setattr(store, "record_allocation", broken)
        _grant(registered_chain, settings)
        request = dispatcher.channel.drain()[0]

        with pytest.raises(TransientError):
            await dispatcher.handle_permission(request)
        assert len(_redelegation_calls(registered_chain)) == 1
        assert await store.fanout_status("perm-1") == "in_progress"

        monkeypatch.undo()
        assert await dispatcher.handle_permission(request) == []
        assert len(_redelegation_calls(registered_chain)) == 1
