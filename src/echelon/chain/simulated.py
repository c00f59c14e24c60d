"""
In-process chain, swap venue and oracle.

Deterministic stand-ins for the deployed contracts: balances, execution
logging and delegation redemption all emit the same events a node would, so
the ledger, dispatcher and engine run end to end in tests and in
``echelon simulate``. ``fail_next`` injects RPC errors or reverts.
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections import defaultdict, deque
from collections.abc import Callable
from typing import Any

from echelon.chain.base import EventCallback, Identity, TxReceipt
from echelon.delegation.models import SignedDelegation
from echelon.errors import TransactionReverted, ValidationError
from echelon.ledger.events import (
    RESULT_FAILURE,
    RESULT_SUCCESS,
    AgentDeactivated,
    AgentRegistered,
    ChainEvent,
    ExecutionCompleted,
    ExecutionStarted,
    PermissionGranted,
    PermissionRevoked,
    PermissionUsed,
    RedelegationCreated,
)
from echelon.ledger.models import normalize_address

logger = logging.getLogger(__name__)


class SimulatedChain:
    """A single-node chain: one block per transaction."""

    def __init__(self, clock: Callable[[], float] = time.time, start_block: int = 1) -> None:
        self._clock = clock
        self.block_number = start_block - 1
        self.events: list[ChainEvent] = []
        self.balances: dict[tuple[str, str], int] = defaultdict(int)
        self.allowances: dict[tuple[str, str, str], int] = defaultdict(int)
        self.redemptions: list[tuple[str, str, TxReceipt]] = []
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._agents: dict[int, str] = {}
        self._executions: dict[int, ExecutionStarted] = {}
        self._next_execution_id = 1
        self._subscribers: list[EventCallback] = []
        self._failures: dict[str, deque[BaseException]] = defaultdict(deque)
        self._tx_counter = 0

    # ── Test and demo controls ───────────────────────────────────────────

    def fail_next(self, method: str, error: BaseException, times: int = 1) -> None:
        """Make the next ``times`` calls to ``method`` raise ``error``."""
        for _ in range(times):
            self._failures[method].append(error)

    def mint(self, token: str, owner: str, amount: int) -> None:
        self.balances[(normalize_address(token), normalize_address(owner))] += amount

    def timestamp(self) -> int:
        return int(self._clock())

    def _maybe_fail(self, method: str, **kwargs: Any) -> None:
        self.calls.append((method, kwargs))
        queue = self._failures.get(method)
        if queue:
            raise queue.popleft()

    def _receipt(self) -> TxReceipt:
        self._tx_counter += 1
        self.block_number += 1
        digest = hashlib.sha256(f"tx:{self._tx_counter}".encode()).hexdigest()
        return TxReceipt(tx_hash="0x" + digest, block_number=self.block_number)

    def _emit(self, receipt: TxReceipt, event_cls: type[ChainEvent], **fields: Any) -> ChainEvent:
        log_index = sum(1 for e in self.events if e.block_number == receipt.block_number)
        event = event_cls(
            block_number=receipt.block_number,
            log_index=log_index,
            timestamp=self.timestamp(),
            tx_hash=receipt.tx_hash,
            **fields,
        )
        self.events.append(event)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("event subscriber failed on %s", event.event_type)
        return event

    # ── Registry and permission contracts ────────────────────────────────

    def register_agent(
        self,
        agent_id: int,
        address: str,
        name: str = "",
        strategy: str = "",
        risk_level: int = 5,
    ) -> TxReceipt:
        receipt = self._receipt()
        self._agents[agent_id] = normalize_address(address)
        self._emit(
            receipt,
            AgentRegistered,
            agent_id=agent_id,
            address=normalize_address(address),
            agent_name=name,
            strategy=strategy,
            risk_level=risk_level,
        )
        return receipt

    def deactivate_agent(self, agent_id: int) -> TxReceipt:
        receipt = self._receipt()
        self._emit(receipt, AgentDeactivated, agent_id=agent_id)
        return receipt

    def grant_permission(
        self,
        permission_id: str,
        user: str,
        agent_id: int,
        token: str,
        total_amount: int,
        duration: int,
        amount_per_period: int | None = None,
        period_duration: int = 24 * 60 * 60,
    ) -> TxReceipt:
        receipt = self._receipt()
        self._emit(
            receipt,
            PermissionGranted,
            permission_id=permission_id,
            user=normalize_address(user),
            agent_id=agent_id,
            token=normalize_address(token),
            amount_per_period=total_amount if amount_per_period is None else amount_per_period,
            period_duration=period_duration,
            total_amount=total_amount,
            expires_at=self.timestamp() + duration,
        )
        return receipt

    def revoke_permission(self, permission_id: str) -> TxReceipt:
        receipt = self._receipt()
        self._emit(receipt, PermissionRevoked, permission_id=permission_id)
        return receipt

    # ── ChainClient ──────────────────────────────────────────────────────

    def _require_agent(self, sender: Identity) -> int:
        if sender.agent_id is None or sender.agent_id not in self._agents:
            raise TransactionReverted(f"{sender}: caller is not a registered agent")
        return sender.agent_id

    async def log_execution_start(
        self,
        sender: Identity,
        user: str,
        amount_in: int,
        token_in: str,
        token_out: str,
    ) -> tuple[int, TxReceipt]:
        self._maybe_fail("log_execution_start", user=user, amount_in=amount_in)
        agent_id = self._require_agent(sender)
        execution_id = self._next_execution_id
        self._next_execution_id += 1
        receipt = self._receipt()
        event = self._emit(
            receipt,
            ExecutionStarted,
            execution_id=execution_id,
            agent_id=agent_id,
            user=normalize_address(user),
            amount_in=amount_in,
            token_in=normalize_address(token_in),
            token_out=normalize_address(token_out),
        )
        assert isinstance(event, ExecutionStarted)
        self._executions[execution_id] = event
        return execution_id, receipt

    async def log_execution_complete(
        self,
        sender: Identity,
        execution_id: int,
        user: str,
        amount_in: int,
        amount_out: int,
        result: int,
    ) -> TxReceipt:
        self._maybe_fail(
            "log_execution_complete", execution_id=execution_id, amount_out=amount_out
        )
        agent_id = self._require_agent(sender)
        if execution_id not in self._executions:
            raise TransactionReverted(f"unknown execution {execution_id}")
        if result not in (RESULT_SUCCESS, RESULT_FAILURE):
            raise TransactionReverted(f"invalid result code {result}")
        receipt = self._receipt()
        self._emit(
            receipt,
            ExecutionCompleted,
            execution_id=execution_id,
            agent_id=agent_id,
            user=normalize_address(user),
            amount_in=amount_in,
            amount_out=amount_out,
            profit_loss=amount_out - amount_in,
            result=result,
        )
        return receipt

    async def log_redelegation(
        self,
        sender: Identity,
        child_agent_id: int,
        user: str,
        amount: int,
        duration: int,
    ) -> TxReceipt:
        self._maybe_fail("log_redelegation", child_agent_id=child_agent_id, amount=amount)
        parent_id = self._require_agent(sender)
        if child_agent_id not in self._agents:
            raise TransactionReverted(f"unknown child agent {child_agent_id}")
        receipt = self._receipt()
        self._emit(
            receipt,
            RedelegationCreated,
            parent_agent_id=parent_id,
            child_agent_id=child_agent_id,
            user=normalize_address(user),
            amount=amount,
            duration=duration,
        )
        return receipt

    def _move(self, token: str, source: str, target: str, amount: int) -> None:
        token, source, target = (normalize_address(v) for v in (token, source, target))
        if amount < 0:
            raise TransactionReverted("negative amount")
        if self.balances[(token, source)] < amount:
            raise TransactionReverted(
                f"ERC20: transfer amount exceeds balance ({source} has "
                f"{self.balances[(token, source)]}, needs {amount})"
            )
        self.balances[(token, source)] -= amount
        self.balances[(token, target)] += amount

    async def transfer(self, sender: Identity, token: str, to: str, amount: int) -> TxReceipt:
        self._maybe_fail("transfer", sender=sender.address, to=to, amount=amount)
        self._move(token, sender.address, to, amount)
        return self._receipt()

    async def approve(self, sender: Identity, token: str, spender: str, amount: int) -> TxReceipt:
        self._maybe_fail("approve", spender=spender, amount=amount)
        key = (normalize_address(token), normalize_address(sender.address), normalize_address(spender))
        self.allowances[key] = amount
        return self._receipt()

    async def balance_of(self, token: str, owner: str) -> int:
        self._maybe_fail("balance_of", token=token, owner=owner)
        return self.balances[(normalize_address(token), normalize_address(owner))]

    async def redeem_delegation(
        self, redeemer: Identity, signed_payload: str, token: str, amount: int
    ) -> TxReceipt:
        """
        Verify the payload and pull funds from the delegator.

        Repeated redemption of one payload is not blocked here: caveat
        enforcers only bound the amount, so two redemptions within the
        remaining allowance both succeed.
        """
        self._maybe_fail("redeem_delegation", redeemer=redeemer.address, amount=amount)
        try:
            delegation = SignedDelegation.from_payload(signed_payload)
        except ValidationError as e:
            raise TransactionReverted(str(e)) from e
        if delegation.signature != delegation.expected_signature():
            raise TransactionReverted("invalid delegation signature")
        if delegation.delegate != normalize_address(redeemer.address):
            raise TransactionReverted("caller is not the delegate")
        if delegation.expires_at <= self.timestamp():
            raise TransactionReverted("delegation expired")
        if amount > delegation.amount:
            raise TransactionReverted("amount exceeds delegation")
        self._move(token, delegation.delegator, redeemer.address, amount)
        receipt = self._receipt()
        self.redemptions.append((delegation.hash, redeemer.address, receipt))
        if delegation.permission_id:
            self._emit(
                receipt, PermissionUsed, permission_id=delegation.permission_id, amount=amount
            )
        return receipt

    async def events_since(
        self, position: tuple[int, int] | None, limit: int = 500
    ) -> list[ChainEvent]:
        self._maybe_fail("events_since", position=position)
        if position is None:
            return self.events[:limit]
        return [e for e in self.events if e.position > position][:limit]

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe


class SimulatedVenue:
    """Constant-rate exact-input swaps settled on a ``SimulatedChain``."""

    def __init__(self, chain: SimulatedChain, reserve: str) -> None:
        self.chain = chain
        self.reserve = normalize_address(reserve)
        self.rates: dict[tuple[str, str], float] = {}

    def set_rate(self, token_in: str, token_out: str, rate: float) -> None:
        self.rates[(normalize_address(token_in), normalize_address(token_out))] = rate

    async def quote(self, token_in: str, token_out: str, amount_in: int) -> int:
        self.chain._maybe_fail("quote", amount_in=amount_in)
        rate = self.rates.get((normalize_address(token_in), normalize_address(token_out)))
        if rate is None:
            raise TransactionReverted(f"no pool for {token_in}/{token_out}")
        return int(amount_in * rate)

    async def swap(
        self,
        sender: Identity,
        token_in: str,
        token_out: str,
        amount_in: int,
        min_amount_out: int,
    ) -> tuple[int, TxReceipt]:
        self.chain._maybe_fail("swap", amount_in=amount_in, min_amount_out=min_amount_out)
        amount_out = await self.quote(token_in, token_out, amount_in)
        if amount_out < min_amount_out:
            raise TransactionReverted("Too little received")
        self.chain._move(token_in, sender.address, self.reserve, amount_in)
        self.chain._move(token_out, self.reserve, sender.address, amount_out)
        return amount_out, self.chain._receipt()


class SimulatedOracle:
    """Score registry writable only by its updater."""

    def __init__(self, chain: SimulatedChain, updater: str) -> None:
        self.chain = chain
        self._updater = normalize_address(updater)
        self.scores: dict[str, int] = {}
        self.updates: list[tuple[list[str], list[int]]] = []
        self.unreadable: set[str] = set()

    async def updater(self) -> str:
        self.chain._maybe_fail("oracle_updater")
        return self._updater

    async def get_score(self, agent: str) -> int:
        self.chain._maybe_fail("oracle_get_score", agent=agent)
        if normalize_address(agent) in self.unreadable:
            raise TransactionReverted(f"score read failed for {agent}")
        return self.scores.get(normalize_address(agent), 0)

    async def batch_update(
        self, sender: Identity, agents: list[str], scores: list[int]
    ) -> TxReceipt:
        self.chain._maybe_fail("oracle_batch_update", agents=list(agents))
        if normalize_address(sender.address) != self._updater:
            raise TransactionReverted("caller is not the updater")
        if len(agents) != len(scores):
            raise TransactionReverted("length mismatch")
        for agent, score in zip(agents, scores):
            self.scores[normalize_address(agent)] = score
        self.updates.append((list(agents), list(scores)))
        return self.chain._receipt()

    async def block_number(self) -> int:
        return self.chain.block_number
