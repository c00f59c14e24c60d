"""Aggregate entities maintained by the reputation ledger."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class ExecutionResult(StrEnum):
    """Execution lifecycle: PENDING transitions once to SUCCESS or FAILURE."""

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


@dataclass
class Agent:
    agent_id: int
    address: str
    name: str
    strategy: str
    risk_level: int
    is_active: bool
    total_executions: int
    successful_executions: int
    failed_executions: int
    pending_executions: int
    total_volume_in: int
    total_volume_out: int
    total_profit_loss: int
    win_rate: float
    avg_profit_per_trade: float
    max_drawdown: float
    sharpe_ratio: float
    reputation_score: int
    metadata_uri: str
    registered_at: int
    last_execution_at: int | None
    updated_at: int


@dataclass
class Execution:
    execution_id: int
    agent_id: int
    user_address: str
    amount_in: int
    amount_out: int
    token_in: str
    token_out: str
    profit_loss: int
    profit_loss_percent: float
    result: ExecutionResult
    started_at: int
    completed_at: int | None
    duration: int | None
    start_tx_hash: str
    complete_tx_hash: str | None

    @property
    def is_pending(self) -> bool:
        return self.result == ExecutionResult.PENDING


@dataclass
class User:
    address: str
    first_seen_at: int
    total_executions: int
    total_profit_from_agents: int


@dataclass
class Permission:
    """User->agent spending grant as enforced on-chain."""

    permission_id: str
    user_address: str
    agent_id: int
    token: str
    amount_per_period: int
    period_duration: int
    total_amount: int
    amount_used: int
    granted_at: int
    expires_at: int
    revoked_at: int | None
    is_active: bool
    tx_hash: str

    @property
    def amount_remaining(self) -> int:
        return max(0, self.total_amount - self.amount_used)


@dataclass
class Redelegation:
    """Agent->agent re-grant of part of a user's permission."""

    redelegation_id: str
    parent_agent_id: int
    child_agent_id: int
    user_address: str
    amount: int
    duration: int
    created_at: int
    expires_at: int
    is_active: bool
    tx_hash: str


@dataclass
class AgentDailyStat:
    id: str
    agent_id: int
    day_id: int
    date: str
    executions: int
    successes: int
    failures: int
    volume: int
    profit: int
    win_rate: float


@dataclass
class GlobalStats:
    total_agents: int = 0
    active_agents: int = 0
    total_users: int = 0
    total_executions: int = 0
    total_permissions: int = 0
    active_permissions: int = 0
    total_redelegations: int = 0
    total_volume: int = 0
    total_profit: int = 0
    last_updated: int = 0


def normalize_address(address: str) -> str:
    """Addresses are compared and stored lowercase."""
    return address.strip().lower()
