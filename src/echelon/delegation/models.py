"""
Delegation records and signed payloads.

Two record kinds share one state shape: a user->agent ``PermissionGrant``
(pending -> claimed) and an agent->agent ``A2ADelegation``
(pending -> redeemed). Either may instead end expired or revoked. Terminal
records never change again.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import Any, Optional

from echelon.errors import ValidationError
from echelon.ledger.models import normalize_address


class GrantStatus(StrEnum):
    PENDING = "pending"
    CLAIMED = "claimed"
    EXPIRED = "expired"
    REVOKED = "revoked"


class DelegationStatus(StrEnum):
    PENDING = "pending"
    REDEEMED = "redeemed"
    EXPIRED = "expired"
    REVOKED = "revoked"


class RecordKind(StrEnum):
    GRANT = "grant"
    A2A = "a2a"


@dataclass(frozen=True)
class SignedDelegation:
    """
    Portable delegation payload.

    ``delegate`` is the designated signer: the only identity allowed to
    redeem. ``signature`` is opaque here and checked by the chain.
    """

    delegator: str
    delegate: str
    token: str
    amount: int
    expires_at: int
    salt: str
    permission_id: Optional[str] = None
    signature: str = ""

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise ValidationError(f"delegation amount must be positive, got {self.amount}")
        if not self.delegator or not self.delegate:
            raise ValidationError("delegation requires delegator and delegate")

    def body(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("signature")
        data["amount"] = str(self.amount)
        return data

    @property
    def hash(self) -> str:
        canonical = json.dumps(self.body(), sort_keys=True, separators=(",", ":"))
        return "0x" + hashlib.sha256(canonical.encode()).hexdigest()

    def expected_signature(self) -> str:
        return "0x" + hashlib.sha256(f"{self.delegator}:{self.hash}".encode()).hexdigest()

    def signed(self) -> "SignedDelegation":
        """Copy carrying the delegator's signature over the body hash."""
        return SignedDelegation(**{**asdict(self), "signature": self.expected_signature()})

    def to_payload(self) -> str:
        return json.dumps({**self.body(), "signature": self.signature}, sort_keys=True)

    @classmethod
    def from_payload(cls, payload: str) -> "SignedDelegation":
        try:
            data = json.loads(payload)
            return cls(
                delegator=normalize_address(data["delegator"]),
                delegate=normalize_address(data["delegate"]),
                token=normalize_address(data["token"]),
                amount=int(data["amount"]),
                expires_at=int(data["expires_at"]),
                salt=str(data["salt"]),
                permission_id=data.get("permission_id"),
                signature=str(data.get("signature", "")),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"malformed delegation payload: {e}") from e


@dataclass
class PermissionGrant:
    """Off-chain mirror of a user->agent permission plus its signed payload."""

    permission_id: str
    user_address: str
    agent_address: str
    token: str
    amount: int
    expires_at: int
    signed_payload: str
    status: GrantStatus = GrantStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: int = 0
    claimed_at: Optional[int] = None
    claimed_tx_hash: Optional[str] = None

    kind = RecordKind.GRANT

    @property
    def key(self) -> str:
        return self.permission_id

    @property
    def is_pending(self) -> bool:
        return self.status == GrantStatus.PENDING

    def payload(self) -> SignedDelegation:
        return SignedDelegation.from_payload(self.signed_payload)


@dataclass
class A2ADelegation:
    """Off-chain mirror of an agent->agent redelegation."""

    delegation_hash: str
    parent_permission_id: Optional[str]
    from_agent_id: int
    from_agent_address: str
    to_agent_id: int
    to_agent_address: str
    user_address: str
    token: str
    amount: int
    expires_at: int
    signed_payload: str
    strategy_type: str = ""
    status: DelegationStatus = DelegationStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: int = 0
    redeemed_at: Optional[int] = None
    redeemed_tx_hash: Optional[str] = None

    kind = RecordKind.A2A

    @property
    def key(self) -> str:
        return self.delegation_hash

    @property
    def is_pending(self) -> bool:
        return self.status == DelegationStatus.PENDING

    def payload(self) -> SignedDelegation:
        return SignedDelegation.from_payload(self.signed_payload)


DelegationRecord = PermissionGrant | A2ADelegation
