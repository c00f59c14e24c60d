"""
Reputation Ledger: chain events in, agent aggregates and scores out.

Components:
- events: decoded chain event dataclasses
- models: Agent, Execution, User, Permission, Redelegation, GlobalStats
- reputation: canonical 5-factor score plus display/analytics helpers
- ledger: aiosqlite-backed ReputationLedger applying events atomically
- consumer: cooperative loop pulling events from the chain into the ledger
"""

from .events import (
    AgentDeactivated,
    AgentReactivated,
    AgentRegistered,
    AgentUpdated,
    ChainEvent,
    ExecutionCompleted,
    ExecutionStarted,
    PermissionGranted,
    PermissionRevoked,
    PermissionUsed,
    RedelegationCreated,
)
from .models import (
    Agent,
    AgentDailyStat,
    Execution,
    ExecutionResult,
    GlobalStats,
    Permission,
    Redelegation,
    User,
    normalize_address,
)
from .reputation import (
    ReputationInput,
    ScoreComponents,
    calculate_reputation_score,
    display_breakdown,
    get_score_tier,
    score_components,
)
from .ledger import ReputationLedger
from .consumer import LedgerConsumer

__all__ = [
    # Events
    "AgentDeactivated",
    "AgentReactivated",
    "AgentRegistered",
    "AgentUpdated",
    "ChainEvent",
    "ExecutionCompleted",
    "ExecutionStarted",
    "PermissionGranted",
    "PermissionRevoked",
    "PermissionUsed",
    "RedelegationCreated",
    # Models
    "Agent",
    "AgentDailyStat",
    "Execution",
    "ExecutionResult",
    "GlobalStats",
    "Permission",
    "Redelegation",
    "User",
    "normalize_address",
    # Reputation
    "ReputationInput",
    "ScoreComponents",
    "calculate_reputation_score",
    "display_breakdown",
    "get_score_tier",
    "score_components",
    # Ledger
    "ReputationLedger",
    "LedgerConsumer",
]
