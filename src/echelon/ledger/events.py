"""Decoded on-chain events consumed by the reputation ledger."""

from __future__ import annotations

from dataclasses import dataclass

RESULT_SUCCESS = 1
RESULT_FAILURE = 2


@dataclass(frozen=True, kw_only=True)
class ChainEvent:
    """Position and provenance shared by every event."""

    block_number: int
    log_index: int
    timestamp: int
    tx_hash: str

    @property
    def position(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)

    @property
    def event_type(self) -> str:
        return type(self).__name__


@dataclass(frozen=True, kw_only=True)
class AgentRegistered(ChainEvent):
    agent_id: int
    address: str
    agent_name: str = ""
    strategy: str = ""
    risk_level: int = 5


@dataclass(frozen=True, kw_only=True)
class AgentUpdated(ChainEvent):
    agent_id: int
    metadata_uri: str


@dataclass(frozen=True, kw_only=True)
class AgentDeactivated(ChainEvent):
    agent_id: int


@dataclass(frozen=True, kw_only=True)
class AgentReactivated(ChainEvent):
    agent_id: int


@dataclass(frozen=True, kw_only=True)
class ExecutionStarted(ChainEvent):
    execution_id: int
    agent_id: int
    user: str
    amount_in: int
    token_in: str
    token_out: str


@dataclass(frozen=True, kw_only=True)
class ExecutionCompleted(ChainEvent):
    execution_id: int
    agent_id: int
    user: str
    amount_in: int
    amount_out: int
    profit_loss: int
    result: int  # 1 = success, anything else = failure


@dataclass(frozen=True, kw_only=True)
class RedelegationCreated(ChainEvent):
    parent_agent_id: int
    child_agent_id: int
    user: str
    amount: int
    duration: int


@dataclass(frozen=True, kw_only=True)
class PermissionGranted(ChainEvent):
    permission_id: str
    user: str
    agent_id: int
    token: str
    amount_per_period: int
    period_duration: int
    total_amount: int
    expires_at: int


@dataclass(frozen=True, kw_only=True)
class PermissionUsed(ChainEvent):
    permission_id: str
    amount: int


@dataclass(frozen=True, kw_only=True)
class PermissionRevoked(ChainEvent):
    permission_id: str
