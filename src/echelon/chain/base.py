"""Interfaces to the contracts, token and swap venue the services talk to."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from echelon.ledger.events import ChainEvent


@dataclass(frozen=True)
class Identity:
    """A signing wallet, optionally bound to a registered agent id."""

    address: str
    agent_id: int | None = None
    name: str = ""

    def __str__(self) -> str:
        return self.name or self.address


@dataclass(frozen=True)
class TxReceipt:
    """Confirmed transaction."""

    tx_hash: str
    block_number: int
    success: bool = True


EventCallback = Callable[[ChainEvent], None]


@runtime_checkable
class ChainClient(Protocol):
    """Execution-logging contract, token transfers and delegation redemption."""

    async def log_execution_start(
        self,
        sender: Identity,
        user: str,
        amount_in: int,
        token_in: str,
        token_out: str,
    ) -> tuple[int, TxReceipt]:
        """Returns the chain-assigned execution id and the confirmed receipt."""
        ...

    async def log_execution_complete(
        self,
        sender: Identity,
        execution_id: int,
        user: str,
        amount_in: int,
        amount_out: int,
        result: int,
    ) -> TxReceipt: ...

    async def log_redelegation(
        self,
        sender: Identity,
        child_agent_id: int,
        user: str,
        amount: int,
        duration: int,
    ) -> TxReceipt: ...

    async def transfer(self, sender: Identity, token: str, to: str, amount: int) -> TxReceipt: ...

    async def approve(
        self, sender: Identity, token: str, spender: str, amount: int
    ) -> TxReceipt: ...

    async def balance_of(self, token: str, owner: str) -> int: ...

    async def redeem_delegation(
        self, redeemer: Identity, signed_payload: str, token: str, amount: int
    ) -> TxReceipt:
        """Pull ``amount`` of ``token`` from the delegator to the redeemer."""
        ...

    async def events_since(
        self, position: tuple[int, int] | None, limit: int = 500
    ) -> list[ChainEvent]:
        """Events strictly after ``position`` in (block, log index) order."""
        ...

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Push new events to ``callback``; returns an unsubscribe function."""
        ...

    def timestamp(self) -> int:
        """Current chain time in seconds."""
        ...


@runtime_checkable
class SwapVenue(Protocol):
    """Opaque exact-input swap capability."""

    async def quote(self, token_in: str, token_out: str, amount_in: int) -> int: ...

    async def swap(
        self,
        sender: Identity,
        token_in: str,
        token_out: str,
        amount_in: int,
        min_amount_out: int,
    ) -> tuple[int, TxReceipt]:
        """Returns the realized amount out; reverts below ``min_amount_out``."""
        ...


@runtime_checkable
class ReputationOracle(Protocol):
    """On-chain mirror of ledger reputation scores."""

    async def updater(self) -> str: ...

    async def get_score(self, agent: str) -> int: ...

    async def batch_update(
        self, sender: Identity, agents: list[str], scores: list[int]
    ) -> TxReceipt: ...

    async def block_number(self) -> int: ...
