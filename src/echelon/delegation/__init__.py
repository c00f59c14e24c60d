"""
Delegation Store & Discovery

Persisted user->agent grants and agent->agent redelegations with a one-way
status machine, plus the push/poll channel that hands pending records to
agents.

Components:
- models: SignedDelegation payloads, PermissionGrant, A2ADelegation, statuses
- store: aiosqlite DelegationStore with compare-and-swap transitions
- discovery: DiscoveryChannel merging push and poll producers
"""

from .models import (
    A2ADelegation,
    DelegationRecord,
    DelegationStatus,
    GrantStatus,
    PermissionGrant,
    RecordKind,
    SignedDelegation,
)
from .store import Allocation, DelegationStore
from .discovery import DiscoveryChannel

__all__ = [
    # Models
    "A2ADelegation",
    "DelegationRecord",
    "DelegationStatus",
    "GrantStatus",
    "PermissionGrant",
    "RecordKind",
    "SignedDelegation",
    # Store
    "Allocation",
    "DelegationStore",
    # Discovery
    "DiscoveryChannel",
]
