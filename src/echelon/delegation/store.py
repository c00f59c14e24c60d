"""
Delegation Store: persisted grants and redelegations with a one-way status machine.

    pending ──► claimed | redeemed   (after on-chain confirmation)
       ├──────► expired
       └──────► revoked

Every transition out of ``pending`` is a compare-and-swap
(``UPDATE ... WHERE status = 'pending'``), so concurrent writers can never
record two terminal states or two redemption hashes for one record. The
store also keeps the dispatcher's fan-out claims, keyed by permission id, so
that idempotency survives restarts.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from echelon.delegation.models import (
    A2ADelegation,
    DelegationRecord,
    DelegationStatus,
    GrantStatus,
    PermissionGrant,
    RecordKind,
)
from echelon.errors import RedemptionError
from echelon.ledger.models import normalize_address
from echelon.storage.database import SCHEMA

logger = logging.getLogger(__name__)

RecordCallback = Callable[[DelegationRecord], None]


@dataclass(frozen=True)
class _Table:
    name: str
    key: str
    success_status: str
    terminal_at: str
    terminal_tx: str


_TABLES = {
    RecordKind.GRANT: _Table(
        name="permission_grants",
        key="permission_id",
        success_status="claimed",
        terminal_at="claimed_at",
        terminal_tx="claimed_tx_hash",
    ),
    RecordKind.A2A: _Table(
        name="a2a_delegations",
        key="delegation_hash",
        success_status="redeemed",
        terminal_at="redeemed_at",
        terminal_tx="redeemed_tx_hash",
    ),
}


@dataclass(frozen=True)
class Allocation:
    """One specialist's share of a fan-out and whether it was funded."""

    permission_id: str
    specialist_id: int
    amount: int
    status: str
    tx_hash: Optional[str] = None
    error: Optional[str] = None

    @property
    def funded(self) -> bool:
        return self.status == "funded"


class DelegationStore:
    """
    aiosqlite-backed store for both delegation kinds.

    Usage:
        async with DelegationStore(":memory:") as store:
            await store.add_delegation(record)
            ok = await store.mark_redeemed(record.delegation_hash, tx_hash)
    """

    DB_PATH = Path.home() / ".echelon" / "data" / "echelon.db"

    def __init__(
        self,
        db_path: Optional[str | Path] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db_path = Path(db_path) if db_path else self.DB_PATH
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._db: Optional[aiosqlite.Connection] = None
        self._subscribers: list[RecordCallback] = []

    async def __aenter__(self) -> "DelegationStore":
        await self._init_db()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type],
        exc_val: Optional[BaseException],
        exc_tb: Optional[object],
    ) -> None:
        await self.close()

    async def _init_db(self) -> None:
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA busy_timeout = 5000")
        await self._db.executescript(SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        assert self._db is not None, "store used outside of its async context"
        return self._db

    def _now(self, now: Optional[int]) -> int:
        return int(self._clock()) if now is None else now

    # ── Push channel ─────────────────────────────────────────────────────

    def subscribe(self, callback: RecordCallback) -> Callable[[], None]:
        """Call ``callback`` with every newly inserted record."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, record: DelegationRecord) -> None:
        for callback in list(self._subscribers):
            try:
                callback(record)
            except Exception:
                logger.exception("delegation subscriber failed for %s", record.key)

    # ── Inserts ──────────────────────────────────────────────────────────

    async def add_grant(self, grant: PermissionGrant, now: Optional[int] = None) -> bool:
        """Insert a pending grant; returns False if the permission id is already stored."""
        grant.payload()  # malformed payloads are rejected before storage
        grant.created_at = grant.created_at or self._now(now)
        cursor = await self.db.execute(
            """INSERT OR IGNORE INTO permission_grants
               (permission_id, user_address, agent_address, token, amount,
                expires_at, signed_payload, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?)""",
            (
                grant.permission_id,
                normalize_address(grant.user_address),
                normalize_address(grant.agent_address),
                normalize_address(grant.token),
                str(grant.amount),
                grant.expires_at,
                grant.signed_payload,
                grant.created_at,
            ),
        )
        await self.db.commit()
        if cursor.rowcount == 0:
            return False
        stored = await self.get_grant(grant.permission_id)
        assert stored is not None
        self._notify(stored)
        return True

    async def add_delegation(self, delegation: A2ADelegation, now: Optional[int] = None) -> bool:
        """Insert a pending A2A delegation; returns False on a duplicate hash."""
        delegation.payload()
        delegation.created_at = delegation.created_at or self._now(now)
        cursor = await self.db.execute(
            """INSERT OR IGNORE INTO a2a_delegations
               (delegation_hash, parent_permission_id, from_agent_id, from_agent_address,
                to_agent_id, to_agent_address, user_address, token, amount, expires_at,
                signed_payload, strategy_type, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?)""",
            (
                delegation.delegation_hash,
                delegation.parent_permission_id,
                delegation.from_agent_id,
                normalize_address(delegation.from_agent_address),
                delegation.to_agent_id,
                normalize_address(delegation.to_agent_address),
                normalize_address(delegation.user_address),
                normalize_address(delegation.token),
                str(delegation.amount),
                delegation.expires_at,
                delegation.signed_payload,
                delegation.strategy_type,
                delegation.created_at,
            ),
        )
        await self.db.commit()
        if cursor.rowcount == 0:
            return False
        stored = await self.get_delegation(delegation.delegation_hash)
        assert stored is not None
        self._notify(stored)
        return True

    # ── Reads ────────────────────────────────────────────────────────────

    async def get_grant(self, permission_id: str) -> Optional[PermissionGrant]:
        cursor = await self.db.execute(
            "SELECT * FROM permission_grants WHERE permission_id = ?", (permission_id,)
        )
        row = await cursor.fetchone()
        return _row_to_grant(row) if row else None

    async def get_delegation(self, delegation_hash: str) -> Optional[A2ADelegation]:
        cursor = await self.db.execute(
            "SELECT * FROM a2a_delegations WHERE delegation_hash = ?", (delegation_hash,)
        )
        row = await cursor.fetchone()
        return _row_to_delegation(row) if row else None

    async def get(self, kind: RecordKind, key: str) -> Optional[DelegationRecord]:
        if kind == RecordKind.GRANT:
            return await self.get_grant(key)
        return await self.get_delegation(key)

    async def pending_grants(
        self, agent_address: str, now: Optional[int] = None
    ) -> list[PermissionGrant]:
        """Unexpired pending grants addressed to ``agent_address``, oldest first."""
        cursor = await self.db.execute(
            """SELECT * FROM permission_grants
               WHERE agent_address = ? AND status = 'pending' AND expires_at > ?
               ORDER BY created_at, permission_id""",
            (normalize_address(agent_address), self._now(now)),
        )
        return [_row_to_grant(r) for r in await cursor.fetchall()]

    async def pending_delegations(
        self, agent_address: str, now: Optional[int] = None
    ) -> list[A2ADelegation]:
        """Unexpired pending A2A delegations to ``agent_address``, oldest first."""
        cursor = await self.db.execute(
            """SELECT * FROM a2a_delegations
               WHERE to_agent_address = ? AND status = 'pending' AND expires_at > ?
               ORDER BY created_at, delegation_hash""",
            (normalize_address(agent_address), self._now(now)),
        )
        return [_row_to_delegation(r) for r in await cursor.fetchall()]

    async def grants_for_agent(self, agent_address: str, limit: int = 100) -> list[PermissionGrant]:
        cursor = await self.db.execute(
            """SELECT * FROM permission_grants WHERE agent_address = ?
               ORDER BY created_at DESC LIMIT ?""",
            (normalize_address(agent_address), limit),
        )
        return [_row_to_grant(r) for r in await cursor.fetchall()]

    async def delegations_to(self, agent_address: str, limit: int = 100) -> list[A2ADelegation]:
        cursor = await self.db.execute(
            """SELECT * FROM a2a_delegations WHERE to_agent_address = ?
               ORDER BY created_at DESC LIMIT ?""",
            (normalize_address(agent_address), limit),
        )
        return [_row_to_delegation(r) for r in await cursor.fetchall()]

    async def delegations_from(self, agent_address: str) -> list[A2ADelegation]:
        cursor = await self.db.execute(
            """SELECT * FROM a2a_delegations WHERE from_agent_address = ?
               ORDER BY created_at DESC""",
            (normalize_address(agent_address),),
        )
        return [_row_to_delegation(r) for r in await cursor.fetchall()]

    async def delegation_chain(self, parent_permission_id: str) -> list[A2ADelegation]:
        """All redelegations derived from one user permission."""
        cursor = await self.db.execute(
            """SELECT * FROM a2a_delegations WHERE parent_permission_id = ?
               ORDER BY created_at, to_agent_id""",
            (parent_permission_id,),
        )
        return [_row_to_delegation(r) for r in await cursor.fetchall()]

    # ── Status machine ───────────────────────────────────────────────────

    def check_redeemable(
        self, record: DelegationRecord, caller: str, now: Optional[int] = None
    ) -> None:
        """
        Raise ``RedemptionError`` unless ``caller`` may redeem ``record`` now.

        Requires status pending, ``now < expires_at`` and ``caller`` equal to
        the payload's designated signer. Raises ``ValidationError`` if the
        payload itself is malformed.
        """
        if not record.is_pending:
            raise RedemptionError(record.key, f"already {record.status}")
        if self._now(now) >= record.expires_at:
            raise RedemptionError(record.key, "expired")
        signer = record.payload().delegate
        if signer != normalize_address(caller):
            raise RedemptionError(record.key, f"caller {caller} is not designated signer {signer}")

    async def _transition(
        self,
        kind: RecordKind,
        key: str,
        status: str,
        tx_hash: Optional[str] = None,
        now: Optional[int] = None,
    ) -> bool:
        table = _TABLES[kind]
        if status == table.success_status:
            sql = (
                f"UPDATE {table.name} SET status = ?, {table.terminal_at} = ?, "
                f"{table.terminal_tx} = ? WHERE {table.key} = ? AND status = 'pending'"
            )
            params: tuple[Any, ...] = (status, self._now(now), tx_hash, key)
        else:
            sql = f"UPDATE {table.name} SET status = ? WHERE {table.key} = ? AND status = 'pending'"
            params = (status, key)
        cursor = await self.db.execute(sql, params)
        await self.db.commit()
        if cursor.rowcount == 1:
            logger.info("%s %s -> %s", kind, key, status)
            return True
        current = await self.get(kind, key)
        if current is None:
            logger.warning("%s %s not found; cannot mark %s", kind, key, status)
        else:
            logger.warning(
                "%s %s is already %s; refusing transition to %s", kind, key, current.status, status
            )
        return False

    async def mark_claimed(
        self, permission_id: str, tx_hash: str, now: Optional[int] = None
    ) -> bool:
        """Record a confirmed claim of a grant. False if it was no longer pending."""
        return await self._transition(
            RecordKind.GRANT, permission_id, GrantStatus.CLAIMED, tx_hash, now
        )

    async def mark_redeemed(
        self, delegation_hash: str, tx_hash: str, now: Optional[int] = None
    ) -> bool:
        """Record a confirmed redemption. False if it was no longer pending."""
        return await self._transition(
            RecordKind.A2A, delegation_hash, DelegationStatus.REDEEMED, tx_hash, now
        )

    async def mark_succeeded(
        self, record: DelegationRecord, tx_hash: str, now: Optional[int] = None
    ) -> bool:
        if record.kind == RecordKind.GRANT:
            return await self.mark_claimed(record.key, tx_hash, now)
        return await self.mark_redeemed(record.key, tx_hash, now)

    async def revoke(self, kind: RecordKind, key: str) -> bool:
        return await self._transition(kind, key, "revoked")

    async def expire(self, kind: RecordKind, key: str) -> bool:
        return await self._transition(kind, key, "expired")

    async def expire_stale(self, now: Optional[int] = None) -> dict[str, int]:
        """Move every pending record past its expiry to ``expired``."""
        ts = self._now(now)
        counts: dict[str, int] = {}
        for kind, table in _TABLES.items():
            cursor = await self.db.execute(
                f"UPDATE {table.name} SET status = 'expired' "
                "WHERE status = 'pending' AND expires_at <= ?",
                (ts,),
            )
            counts[kind.value] = cursor.rowcount
        await self.db.commit()
        if any(counts.values()):
            logger.info("Expired stale delegations: %s", counts)
        return counts

    async def record_failure(self, kind: RecordKind, key: str, error: str) -> int:
        """Count a failed processing attempt; the record stays pending for retry."""
        table = _TABLES[kind]
        await self.db.execute(
            f"UPDATE {table.name} SET attempts = attempts + 1, last_error = ? "
            f"WHERE {table.key} = ? AND status = 'pending'",
            (error[:500], key),
        )
        await self.db.commit()
        cursor = await self.db.execute(
            f"SELECT attempts FROM {table.name} WHERE {table.key} = ?", (key,)
        )
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def stats(self) -> dict[str, dict[str, int]]:
        """Record counts by status for each table."""
        result: dict[str, dict[str, int]] = {}
        for kind, table in _TABLES.items():
            cursor = await self.db.execute(
                f"SELECT status, COUNT(*) FROM {table.name} GROUP BY status"
            )
            result[kind.value] = {row[0]: row[1] for row in await cursor.fetchall()}
        return result

    # ── Fan-out claims (dispatcher idempotency) ──────────────────────────

    async def claim_fanout(
        self, permission_id: str, user: str, amount: int, now: Optional[int] = None
    ) -> bool:
        """Atomically claim a permission for fan-out; False if already claimed."""
        cursor = await self.db.execute(
            """INSERT OR IGNORE INTO fanout_claims
               (permission_id, user_address, amount, status, claimed_at)
               VALUES (?, ?, ?, 'in_progress', ?)""",
            (permission_id, normalize_address(user), str(amount), self._now(now)),
        )
        await self.db.commit()
        return cursor.rowcount == 1

    async def finish_fanout(
        self, permission_id: str, status: str, now: Optional[int] = None
    ) -> None:
        await self.db.execute(
            "UPDATE fanout_claims SET status = ?, completed_at = ? WHERE permission_id = ?",
            (status, self._now(now), permission_id),
        )
        await self.db.commit()

    async def release_fanout(self, permission_id: str) -> bool:
        """Drop an ``in_progress`` claim so the permission can be claimed again."""
        cursor = await self.db.execute(
            "DELETE FROM fanout_claims WHERE permission_id = ? AND status = 'in_progress'",
            (permission_id,),
        )
        await self.db.commit()
        return cursor.rowcount == 1

    async def fanout_status(self, permission_id: str) -> Optional[str]:
        cursor = await self.db.execute(
            "SELECT status FROM fanout_claims WHERE permission_id = ?", (permission_id,)
        )
        row = await cursor.fetchone()
        return row[0] if row else None

    async def stale_fanouts(
        self, older_than: int = 3600, now: Optional[int] = None
    ) -> list[tuple[str, str, int]]:
        """Claims stuck ``in_progress`` longer than ``older_than`` seconds: (permission, user, claimed_at)."""
        cursor = await self.db.execute(
            """SELECT permission_id, user_address, claimed_at FROM fanout_claims
               WHERE status = 'in_progress' AND claimed_at < ?
               ORDER BY claimed_at""",
            (self._now(now) - older_than,),
        )
        return [(r[0], r[1], r[2]) for r in await cursor.fetchall()]

    async def record_allocation(self, allocation: Allocation, now: Optional[int] = None) -> None:
        await self.db.execute(
            """INSERT INTO fanout_allocations
               (permission_id, specialist_id, amount, status, tx_hash, error, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(permission_id, specialist_id) DO UPDATE SET
                   status = excluded.status,
                   tx_hash = excluded.tx_hash,
                   error = excluded.error""",
            (
                allocation.permission_id,
                allocation.specialist_id,
                str(allocation.amount),
                allocation.status,
                allocation.tx_hash,
                allocation.error,
                self._now(now),
            ),
        )
        await self.db.commit()

    async def allocations(self, permission_id: str) -> list[Allocation]:
        cursor = await self.db.execute(
            """SELECT * FROM fanout_allocations WHERE permission_id = ?
               ORDER BY specialist_id""",
            (permission_id,),
        )
        return [
            Allocation(
                permission_id=r["permission_id"],
                specialist_id=r["specialist_id"],
                amount=int(r["amount"]),
                status=r["status"],
                tx_hash=r["tx_hash"],
                error=r["error"],
            )
            for r in await cursor.fetchall()
        ]


def _row_to_grant(row: aiosqlite.Row) -> PermissionGrant:
    return PermissionGrant(
        permission_id=row["permission_id"],
        user_address=row["user_address"],
        agent_address=row["agent_address"],
        token=row["token"],
        amount=int(row["amount"]),
        expires_at=row["expires_at"],
        signed_payload=row["signed_payload"],
        status=GrantStatus(row["status"]),
        attempts=row["attempts"],
        last_error=row["last_error"],
        created_at=row["created_at"],
        claimed_at=row["claimed_at"],
        claimed_tx_hash=row["claimed_tx_hash"],
    )


def _row_to_delegation(row: aiosqlite.Row) -> A2ADelegation:
    return A2ADelegation(
        delegation_hash=row["delegation_hash"],
        parent_permission_id=row["parent_permission_id"],
        from_agent_id=row["from_agent_id"],
        from_agent_address=row["from_agent_address"],
        to_agent_id=row["to_agent_id"],
        to_agent_address=row["to_agent_address"],
        user_address=row["user_address"],
        token=row["token"],
        amount=int(row["amount"]),
        expires_at=row["expires_at"],
        signed_payload=row["signed_payload"],
        strategy_type=row["strategy_type"],
        status=DelegationStatus(row["status"]),
        attempts=row["attempts"],
        last_error=row["last_error"],
        created_at=row["created_at"],
        redeemed_at=row["redeemed_at"],
        redeemed_tx_hash=row["redeemed_tx_hash"],
    )
