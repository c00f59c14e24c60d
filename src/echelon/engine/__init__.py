"""
Echelon engine - redelegation fan-out, trade execution and settlement.

Components:
- SerialQueue: one-at-a-time transaction submission per wallet
- RedelegationDispatcher: fund-manager permission -> specialist redelegations
- ExecutionEngine: per-agent redeem -> trade -> log -> settle loop
- Settlement: principal and profit/loss transfers after an execution
"""

from echelon.engine.dispatcher import FanoutRequest, RedelegationDispatcher, split_amount
from echelon.engine.executor import (
    ExecutionEngine,
    ExecutionRecord,
    Opportunity,
    OpportunityEvaluator,
    TradeOutcome,
    TradeSimulator,
    clamp_trade_size,
    min_amount_out,
)
from echelon.engine.serial import SerialQueue
from echelon.engine.settlement import (
    Outcome,
    Settlement,
    SettlementLeg,
    SettlementResult,
    settlement_amount,
)

__all__ = [
    # Dispatcher
    "FanoutRequest",
    "RedelegationDispatcher",
    "split_amount",
    # Execution
    "ExecutionEngine",
    "ExecutionRecord",
    "Opportunity",
    "OpportunityEvaluator",
    "TradeOutcome",
    "TradeSimulator",
    "clamp_trade_size",
    "min_amount_out",
    # Plumbing
    "SerialQueue",
    # Settlement
    "Outcome",
    "Settlement",
    "SettlementLeg",
    "SettlementResult",
    "settlement_amount",
]
