"""Shared fixtures: a controllable clock, the in-process chain and in-memory stores."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from pathlib import Path

import pytest

from echelon.chain.base import Identity
from echelon.chain.simulated import SimulatedChain
from echelon.config import ONE_USDC, Settings
from echelon.delegation.models import A2ADelegation, SignedDelegation
from echelon.delegation.store import DelegationStore
from echelon.ledger.consumer import LedgerConsumer
from echelon.ledger.ledger import ReputationLedger

START_TIME = 1_700_000_000


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: int = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        home=tmp_path / "echelon",
        inter_call_delay=0.0,
        rate_limit_cooldown=0.0,
        execution_delay=0.0,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
    )


@pytest.fixture
def chain(clock: FakeClock) -> SimulatedChain:
    return SimulatedChain(clock=clock)


@pytest.fixture
def registered_chain(chain: SimulatedChain, settings: Settings) -> SimulatedChain:
    """Chain with the fund manager and every roster specialist registered."""
    chain.register_agent(
        settings.fund_manager_id, settings.fund_manager_address, "FundManager", "manager", 5
    )
    for spec in settings.roster:
        chain.register_agent(spec.agent_id, spec.address, spec.name, "specialist", 5)
    return chain


@pytest.fixture
async def ledger() -> AsyncGenerator[ReputationLedger, None]:
    async with ReputationLedger(":memory:") as ledger:
        yield ledger


@pytest.fixture
async def store(clock: FakeClock) -> AsyncGenerator[DelegationStore, None]:
    async with DelegationStore(":memory:", clock=clock) as store:
        yield store


@pytest.fixture
def consumer(chain: SimulatedChain, ledger: ReputationLedger) -> LedgerConsumer:
    return LedgerConsumer(chain, ledger, max_retries=2, retry_base_delay=0.0)


@pytest.fixture
def fund_manager(settings: Settings) -> Identity:
    return Identity(settings.fund_manager_address, settings.fund_manager_id, "fund-manager")


@pytest.fixture
def treasury(settings: Settings) -> Identity:
    return Identity(settings.treasury_address, name="treasury")


@pytest.fixture
def make_delegation(
    clock: FakeClock, settings: Settings
) -> Callable[..., A2ADelegation]:
    """Factory for signed fund-manager -> specialist delegations."""
    counter = iter(range(1, 1_000_000))

    def factory(
        to_agent_id: int = 2,
        amount: int = 10 * ONE_USDC,
        user: str = "0x00000000000000000000000000000000000000aa",
        expires_in: int = 3600,
        parent_permission_id: str | None = "perm-1",
    ) -> A2ADelegation:
        spec = settings.specialist(to_agent_id)
        assert spec is not None
        payload = SignedDelegation(
            delegator=settings.fund_manager_address,
            delegate=spec.address,
            token=settings.token_address,
            amount=amount,
            expires_at=clock.now + expires_in,
            salt=f"test-{next(counter)}",
        ).signed()
        return A2ADelegation(
            delegation_hash=payload.hash,
            parent_permission_id=parent_permission_id,
            from_agent_id=settings.fund_manager_id,
            from_agent_address=settings.fund_manager_address,
            to_agent_id=to_agent_id,
            to_agent_address=spec.address,
            user_address=user,
            token=settings.token_address,
            amount=amount,
            expires_at=payload.expires_at,
            signed_payload=payload.to_payload(),
            strategy_type=spec.name,
        )

    return factory
