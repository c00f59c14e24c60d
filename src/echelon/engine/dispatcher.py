"""
Redelegation Dispatcher - fans a user's permission to the fund manager out to specialists.

    PermissionGranted(agent = fund manager)
        │  push: chain subscription      poll: ledger active permissions
        └──────────────┬──────────────────────────────┘
                       ▼
              DiscoveryChannel (dedup by permission id)
                       ▼
    claim_fanout (persisted, once per permission id)
        ├─ user already has a live redelegation ──► skipped
        └─ split 35/25/25/15 ──► log_redelegation per specialist (serialized)
                                   ├─ funded ──► signed A2A delegation stored
                                   └─ failed ──► specialist not funded
                       ▼
    funded allocations handed to each specialist's ExecutionEngine
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Optional

from echelon.chain.base import ChainClient, Identity
from echelon.config import Settings, Specialist
from echelon.delegation.discovery import DiscoveryChannel
from echelon.delegation.models import A2ADelegation, SignedDelegation
from echelon.delegation.store import Allocation, DelegationStore
from echelon.engine.executor import ExecutionEngine
from echelon.engine.serial import SerialQueue
from echelon.errors import ValidationError
from echelon.ledger.events import ChainEvent, PermissionGranted
from echelon.ledger.ledger import ReputationLedger
from echelon.ledger.models import Permission, normalize_address
from echelon.retry import with_rate_limit_cooldown
from echelon.service import ServiceLoop

logger = logging.getLogger(__name__)


def split_amount(amount: int, roster: Sequence[Specialist]) -> list[int]:
    """
    Integer shares of ``amount`` by roster percentage.

    Each share is floored; the remainder goes to the first specialist so the
    shares always sum to ``amount``.
    """
    if amount <= 0:
        raise ValidationError(f"amount to split must be positive, got {amount}")
    if not roster:
        raise ValidationError("cannot split over an empty roster")
    shares = [amount * specialist.percentage // 100 for specialist in roster]
    shares[0] += amount - sum(shares)
    return shares


@dataclass(frozen=True)
class FanoutRequest:
    """A permission to the fund manager, from either discovery path."""

    permission_id: str
    user: str
    agent_id: int
    token: str
    amount: int
    expires_at: int

    @classmethod
    def from_event(cls, event: PermissionGranted) -> "FanoutRequest":
        return cls(
            permission_id=event.permission_id,
            user=normalize_address(event.user),
            agent_id=event.agent_id,
            token=normalize_address(event.token),
            amount=event.total_amount,
            expires_at=event.expires_at,
        )

    @classmethod
    def from_permission(cls, permission: Permission) -> "FanoutRequest":
        return cls(
            permission_id=permission.permission_id,
            user=permission.user_address,
            agent_id=permission.agent_id,
            token=permission.token,
            amount=permission.amount_remaining,
            expires_at=permission.expires_at,
        )


class RedelegationDispatcher(ServiceLoop):
    """Turns fund-manager permissions into specialist redelegations."""

    name = "dispatcher"

    def __init__(
        self,
        chain: ChainClient,
        ledger: ReputationLedger,
        store: DelegationStore,
        settings: Settings,
        engines: Optional[Mapping[int, ExecutionEngine]] = None,
    ) -> None:
        super().__init__(settings.poll_interval)
        self.chain = chain
        self.ledger = ledger
        self.store = store
        self.settings = settings
        self.engines: dict[int, ExecutionEngine] = dict(engines or {})
        self.identity = Identity(
            address=normalize_address(settings.fund_manager_address),
            agent_id=settings.fund_manager_id,
            name="fund-manager",
        )
        self.queue = SerialQueue("fund-manager", spacing=settings.inter_call_delay)
        self.channel: DiscoveryChannel[FanoutRequest] = DiscoveryChannel(
            "permissions",
            key=lambda request: request.permission_id,
            poll=self._poll_permissions,
            poll_interval=settings.poll_interval,
        )
        self._poller: Optional[asyncio.Task[None]] = None
        self.stats: dict[str, int] = {
            "permissions_processed": 0,
            "redelegations_created": 0,
            "skipped": 0,
            "errors": 0,
        }

    # ── Discovery ────────────────────────────────────────────────────────

    def on_event(self, event: ChainEvent) -> None:
        """Chain subscription callback: queue permissions granted to the fund manager."""
        if isinstance(event, PermissionGranted) and event.agent_id == self.settings.fund_manager_id:
            self.channel.on_push(FanoutRequest.from_event(event))

    async def _poll_permissions(self) -> list[FanoutRequest]:
        permissions = await self.ledger.active_permissions(
            self.settings.fund_manager_id, self.chain.timestamp()
        )
        return [FanoutRequest.from_permission(p) for p in permissions if p.amount_remaining > 0]

    async def run(self, max_cycles: Optional[int] = None) -> None:
        unsubscribe = self.chain.subscribe(self.on_event)
        self._poller = asyncio.create_task(self.channel.run_poller())
        try:
            await super().run(max_cycles)
        finally:
            unsubscribe()
            self.channel.stop()
            await self._poller
            self._poller = None
            await self.queue.close()

    async def run_cycle(self) -> None:
        if self._poller is None:
            await self.channel.poll_once()
        for request in self.channel.drain():
            if self.stopped:
                self.channel.release(request)
                continue
            try:
                await self.handle_permission(request)
            except Exception:
                self.stats["errors"] += 1
                logger.exception("Fan-out of permission %s failed", request.permission_id)
                self.channel.release(request)

    # ── Fan-out ──────────────────────────────────────────────────────────

    async def handle_permission(self, request: FanoutRequest) -> list[Allocation]:
        """
        Fan ``request`` out to the roster once.

        Returns the allocations made in this call; empty when the permission
        is not for the fund manager, was already claimed (by this process or
        an earlier run), or the user already has live redelegations.
        """
        if request.agent_id != self.settings.fund_manager_id:
            return []

        now = self.chain.timestamp()
        if not await self.store.claim_fanout(request.permission_id, request.user, request.amount, now):
            logger.debug("Permission %s already fanned out", request.permission_id)
            self.channel.complete(request)
            return []

        # Until the first chain call the claim is released on error so a retry can claim it.
        try:
            live = await self.ledger.count_active_redelegations(
                self.settings.fund_manager_id, request.user, now
            )
            if live > 0:
                logger.info(
                    "User %s already has %d active redelegation(s); skipping permission %s",
                    request.user,
                    live,
                    request.permission_id,
                )
                self.stats["permissions_processed"] += 1
                self.stats["skipped"] += 1
                await self.store.finish_fanout(request.permission_id, "skipped")
                self.channel.complete(request)
                return []

            roster = self.settings.roster
            shares = split_amount(request.amount, roster)
        except Exception:
            await self.store.release_fanout(request.permission_id)
            raise

        self.stats["permissions_processed"] += 1
        logger.info(
            "Fanning out permission %s (%d) for %s: %s",
            request.permission_id,
            request.amount,
            request.user,
            ", ".join(f"{s.name}={a}" for s, a in zip(roster, shares)),
        )

        allocations: list[Allocation] = []
        records: dict[int, A2ADelegation] = {}
        for specialist, share in zip(roster, shares):
            allocation, record = await self._redelegate(request, specialist, share)
            await self.store.record_allocation(allocation)
            allocations.append(allocation)
            if record is not None:
                records[specialist.agent_id] = record

        await self.store.finish_fanout(request.permission_id, "completed")
        self.channel.complete(request)
        await self._hand_off(records)
        return allocations

    async def _redelegate(
        self, request: FanoutRequest, specialist: Specialist, amount: int
    ) -> tuple[Allocation, Optional[A2ADelegation]]:
        if amount <= 0:
            return (
                Allocation(
                    request.permission_id,
                    specialist.agent_id,
                    amount,
                    "not_funded",
                    error="share rounds to zero",
                ),
                None,
            )

        duration = self.settings.redelegation_duration

        async def log_redelegation() -> Any:
            return await self.queue.submit(
                lambda: self.chain.log_redelegation(
                    self.identity, specialist.agent_id, request.user, amount, duration
                )
            )

        try:
            receipt = await with_rate_limit_cooldown(
                log_redelegation,
                cooldown=self.settings.rate_limit_cooldown,
                label=f"redelegation to {specialist.name}",
            )
        except Exception as e:
            self.stats["errors"] += 1
            logger.error("Specialist %s not funded: %s", specialist.name, e)
            return (
                Allocation(
                    request.permission_id, specialist.agent_id, amount, "not_funded", error=str(e)
                ),
                None,
            )

        self.stats["redelegations_created"] += 1
        record = self._build_delegation(request, specialist, amount, receipt.tx_hash)
        await self.store.add_delegation(record)
        logger.info("Redelegated %d to %s in %s", amount, specialist.name, receipt.tx_hash)
        return (
            Allocation(
                request.permission_id,
                specialist.agent_id,
                amount,
                "funded",
                tx_hash=receipt.tx_hash,
            ),
            record,
        )

    def _build_delegation(
        self, request: FanoutRequest, specialist: Specialist, amount: int, tx_hash: str
    ) -> A2ADelegation:
        now = self.chain.timestamp()
        payload = SignedDelegation(
            delegator=self.identity.address,
            delegate=normalize_address(specialist.address),
            token=request.token,
            amount=amount,
            expires_at=now + self.settings.redelegation_duration,
            salt=f"{request.permission_id}:{specialist.agent_id}:{tx_hash}",
        ).signed()
        return A2ADelegation(
            delegation_hash=payload.hash,
            parent_permission_id=request.permission_id,
            from_agent_id=self.settings.fund_manager_id,
            from_agent_address=self.identity.address,
            to_agent_id=specialist.agent_id,
            to_agent_address=normalize_address(specialist.address),
            user_address=request.user,
            token=request.token,
            amount=amount,
            expires_at=payload.expires_at,
            signed_payload=payload.to_payload(),
            strategy_type=specialist.name,
            created_at=now,
        )

    async def _hand_off(self, records: Mapping[int, A2ADelegation]) -> None:
        first = True
        for agent_id, record in records.items():
            engine = self.engines.get(agent_id)
            if engine is None:
                logger.warning("No engine for specialist %d; delegation left for discovery", agent_id)
                continue
            if not first:
                await self.sleep(self.settings.execution_delay)
            first = False
            try:
                await engine.execute_allocation(record)
            except Exception:
                self.stats["errors"] += 1
                logger.exception("Engine %s failed on %s", engine.name, record.delegation_hash)

    def health(self) -> dict[str, Any]:
        return {**super().health(), **self.stats, "queued": self.channel.pending}
