"""
Settlement: move principal and profit/loss between agent, user and treasury.

    PROFIT   agent ──principal──► user, then treasury ──profit──► user
    LOSS     agent ──principal-loss──► user, then agent ──loss──► treasury
    NEUTRAL  agent ──principal──► user

Legs run strictly in order and each waits for its receipt. A failed leg
stops the sequence and raises ``SettlementError`` carrying the legs already
on-chain; nothing is rolled back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Optional

from echelon.chain.base import ChainClient, Identity, TxReceipt
from echelon.engine.serial import SerialQueue
from echelon.errors import SettlementError, TransactionReverted
from echelon.ledger.reputation import round_half_up

logger = logging.getLogger(__name__)


class Outcome(StrEnum):
    PROFIT = "profit"
    LOSS = "loss"
    NEUTRAL = "neutral"


@dataclass(frozen=True)
class SettlementLeg:
    label: str
    sender: str
    recipient: str
    amount: int
    receipt: Optional[TxReceipt] = None


@dataclass(frozen=True)
class SettlementResult:
    outcome: Outcome
    principal: int
    adjustment: int  # profit paid or loss forwarded
    returned_to_user: int
    legs: list[SettlementLeg] = field(default_factory=list)


def settlement_amount(principal: int, profit_percent: float) -> int:
    """Profit or loss in base units: ``principal * bps // 10000``, capped at principal for losses."""
    bps = round_half_up(abs(profit_percent) * 100)
    amount = principal * bps // 10_000
    if profit_percent < 0:
        amount = min(amount, principal)
    return amount


def classify(principal: int, profit_percent: float) -> tuple[Outcome, int]:
    amount = settlement_amount(principal, profit_percent)
    if amount == 0:
        return Outcome.NEUTRAL, 0
    return (Outcome.PROFIT if profit_percent > 0 else Outcome.LOSS), amount


class Settlement:
    """Settles one execution for one user."""

    def __init__(
        self,
        chain: ChainClient,
        agent: Identity,
        treasury: Identity,
        token: str,
        queue: Optional[SerialQueue] = None,
    ) -> None:
        self.chain = chain
        self.agent = agent
        self.treasury = treasury
        self.token = token
        self.queue = queue

    def plan(self, user: str, principal: int, profit_percent: float) -> tuple[Outcome, int, list[SettlementLeg]]:
        outcome, amount = classify(principal, profit_percent)
        agent, treasury = self.agent.address, self.treasury.address
        if outcome == Outcome.PROFIT:
            legs = [
                SettlementLeg("return principal", agent, user, principal),
                SettlementLeg("pay profit", treasury, user, amount),
            ]
        elif outcome == Outcome.LOSS:
            legs = [
                SettlementLeg("return remainder", agent, user, principal - amount),
                SettlementLeg("forward loss", agent, treasury, amount),
            ]
        else:
            legs = [SettlementLeg("return principal", agent, user, principal)]
        return outcome, amount, [leg for leg in legs if leg.amount > 0]

    async def settle(self, user: str, principal: int, profit_percent: float) -> SettlementResult:
        """
        Run every leg for ``principal`` at ``profit_percent`` (e.g. -10.0 for a 10% loss).

        Raises:
            SettlementError: a leg failed; ``completed_legs`` lists what was sent.
        """
        outcome, amount, planned = self.plan(user, principal, profit_percent)
        logger.info(
            "Settling %s for %s: principal %d, %s %d", outcome, user, principal, outcome, amount
        )
        completed: list[SettlementLeg] = []
        for leg in planned:
            sender = self.treasury if leg.sender == self.treasury.address else self.agent
            try:
                receipt = await self._send(sender, leg)
            except Exception as e:
                logger.error(
                    "Settlement leg '%s' failed after %d completed leg(s): %s",
                    leg.label,
                    len(completed),
                    e,
                )
                raise SettlementError(
                    f"settlement leg '{leg.label}' failed: {e}", completed
                ) from e
            completed.append(
                SettlementLeg(leg.label, leg.sender, leg.recipient, leg.amount, receipt)
            )

        returned = sum(leg.amount for leg in completed if leg.recipient == user)
        return SettlementResult(outcome, principal, amount, returned, completed)

    async def _send(self, sender: Identity, leg: SettlementLeg) -> TxReceipt:
        async def transfer() -> TxReceipt:
            return await self.chain.transfer(sender, self.token, leg.recipient, leg.amount)

        receipt = await (self.queue.submit(transfer) if self.queue else transfer())
        if not receipt.success:
            raise TransactionReverted(f"transfer {receipt.tx_hash} reverted")
        return receipt
