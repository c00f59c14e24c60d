"""
Reputation Ledger: event-sourced aggregates and agent reputation scores.

Applies decoded chain events in order and keeps Agent, Execution, User,
Permission, Redelegation, daily rollup and GlobalStats rows current.

Handlers overwrite entity rows keyed by id, but aggregate counters
accumulate deltas from the previous value, so the event source must deliver
each event at most once. The last applied (block, log index) is persisted as
a cursor for resuming after restart.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from echelon.errors import ValidationError
from echelon.ledger.events import (
    RESULT_SUCCESS,
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
from echelon.ledger.models import (
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
from echelon.ledger.reputation import (
    MIN_EXECUTIONS_FOR_SCORE,
    NEUTRAL_SCORE,
    ReputationInput,
    calculate_reputation_score,
    calculate_win_rate,
    day_date,
    day_id,
    running_max_drawdown,
    simplified_sharpe,
)
from echelon.storage.database import SCHEMA

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[bool]]


class ReputationLedger:
    """
    Persistent, event-driven ledger of agent performance.

    Usage:
        async with ReputationLedger(":memory:") as ledger:
            await ledger.apply(event)
            agent = await ledger.get_agent(2)
    """

    DB_PATH = Path.home() / ".echelon" / "data" / "echelon.db"
    STALE_EXECUTION_SECONDS = 60 * 60

    def __init__(
        self,
        db_path: Optional[str | Path] = None,
        min_executions: int = MIN_EXECUTIONS_FOR_SCORE,
    ) -> None:
        self.db_path = Path(db_path) if db_path else self.DB_PATH
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.min_executions = min_executions
        self._db: Optional[aiosqlite.Connection] = None
        self._handlers: dict[type[ChainEvent], Handler] = {
            AgentRegistered: self._on_agent_registered,
            AgentUpdated: self._on_agent_updated,
            AgentDeactivated: self._on_agent_deactivated,
            AgentReactivated: self._on_agent_reactivated,
            ExecutionStarted: self._on_execution_started,
            ExecutionCompleted: self._on_execution_completed,
            RedelegationCreated: self._on_redelegation_created,
            PermissionGranted: self._on_permission_granted,
            PermissionUsed: self._on_permission_used,
            PermissionRevoked: self._on_permission_revoked,
        }

    async def __aenter__(self) -> "ReputationLedger":
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
        assert self._db is not None, "ledger used outside of its async context"
        return self._db

    # ── Event application ────────────────────────────────────────────────

    async def apply(self, event: ChainEvent) -> bool:
        """
        Apply one event atomically.

        Returns:
            True if the event changed state, False if it was skipped as an
            integrity fault (logged as a warning).

        Raises:
            ValidationError: the event is malformed or of an unknown type.
        """
        handler = self._handlers.get(type(event))
        if handler is None:
            raise ValidationError(f"unsupported event type {event.event_type}")
        try:
            applied = await handler(event)
            await self._set_cursor(event)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return applied

    async def apply_all(self, events: list[ChainEvent]) -> int:
        """Apply events in order; returns how many changed state."""
        applied = 0
        for event in events:
            if await self.apply(event):
                applied += 1
        return applied

    async def cursor(self) -> tuple[int, int] | None:
        """Last applied (block number, log index), if any."""
        cursor = await self.db.execute(
            "SELECT block_number, log_index FROM ledger_cursor WHERE id = 1"
        )
        row = await cursor.fetchone()
        return (row[0], row[1]) if row else None

    async def advance_cursor(self, event: ChainEvent) -> None:
        """Record ``event`` as consumed without applying it."""
        await self._set_cursor(event)
        await self.db.commit()

    async def _set_cursor(self, event: ChainEvent) -> None:
        await self.db.execute(
            """INSERT INTO ledger_cursor (id, block_number, log_index)
               VALUES (1, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   block_number = excluded.block_number,
                   log_index = excluded.log_index,
                   updated_at = datetime('now')""",
            (event.block_number, event.log_index),
        )

    # ── Agent handlers ───────────────────────────────────────────────────

    async def _on_agent_registered(self, event: AgentRegistered) -> bool:
        if not 1 <= event.risk_level <= 10:
            raise ValidationError(
                f"agent {event.agent_id}: risk_level must be in [1, 10], got {event.risk_level}"
            )
        existing = await self.get_agent(event.agent_id)
        await self.db.execute(
            """INSERT INTO agents
               (agent_id, address, name, strategy, risk_level, is_active,
                reputation_score, registered_at, updated_at)
               VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?)
               ON CONFLICT(agent_id) DO UPDATE SET
                   address = excluded.address,
                   name = excluded.name,
                   strategy = excluded.strategy,
                   risk_level = excluded.risk_level,
                   updated_at = excluded.updated_at""",
            (
                event.agent_id,
                normalize_address(event.address),
                event.agent_name,
                event.strategy,
                event.risk_level,
                NEUTRAL_SCORE,
                event.timestamp,
                event.timestamp,
            ),
        )
        if existing is None:
            await self._bump_global(event.timestamp, total_agents=1, active_agents=1)
        logger.info("Agent %d registered (%s)", event.agent_id, event.agent_name or event.address)
        return True

    async def _on_agent_updated(self, event: AgentUpdated) -> bool:
        cursor = await self.db.execute(
            "UPDATE agents SET metadata_uri = ?, updated_at = ? WHERE agent_id = ?",
            (event.metadata_uri, event.timestamp, event.agent_id),
        )
        if cursor.rowcount == 0:
            logger.warning("AgentUpdated for unknown agent %d; skipping", event.agent_id)
            return False
        return True

    async def _on_agent_deactivated(self, event: AgentDeactivated) -> bool:
        return await self._set_active(event.agent_id, False, event.timestamp)

    async def _on_agent_reactivated(self, event: AgentReactivated) -> bool:
        return await self._set_active(event.agent_id, True, event.timestamp)

    async def _set_active(self, agent_id: int, active: bool, timestamp: int) -> bool:
        agent = await self.get_agent(agent_id)
        if agent is None:
            logger.warning("Activation change for unknown agent %d; skipping", agent_id)
            return False
        if agent.is_active == active:
            return False
        await self.db.execute(
            "UPDATE agents SET is_active = ?, updated_at = ? WHERE agent_id = ?",
            (int(active), timestamp, agent_id),
        )
        await self._bump_global(timestamp, active_agents=1 if active else -1)
        return True

    # ── Execution handlers ───────────────────────────────────────────────

    async def _on_execution_started(self, event: ExecutionStarted) -> bool:
        user = normalize_address(event.user)
        await self._get_or_create_user(user, event.timestamp)
        await self.db.execute(
            "UPDATE users SET total_executions = total_executions + 1 WHERE address = ?",
            (user,),
        )
        await self.db.execute(
            """INSERT INTO executions
               (execution_id, agent_id, user_address, amount_in, token_in, token_out,
                result, started_at, start_tx_hash)
               VALUES (?, ?, ?, ?, ?, ?, 'PENDING', ?, ?)
               ON CONFLICT(execution_id) DO UPDATE SET
                   agent_id = excluded.agent_id,
                   user_address = excluded.user_address,
                   amount_in = excluded.amount_in,
                   token_in = excluded.token_in,
                   token_out = excluded.token_out,
                   started_at = excluded.started_at,
                   start_tx_hash = excluded.start_tx_hash
               WHERE executions.result = 'PENDING'""",
            (
                event.execution_id,
                event.agent_id,
                user,
                str(event.amount_in),
                normalize_address(event.token_in),
                normalize_address(event.token_out),
                event.timestamp,
                event.tx_hash,
            ),
        )
        cursor = await self.db.execute(
            """UPDATE agents SET
                   pending_executions = pending_executions + 1,
                   last_execution_at = ?,
                   updated_at = ?
               WHERE agent_id = ?""",
            (event.timestamp, event.timestamp, event.agent_id),
        )
        if cursor.rowcount == 0:
            logger.warning(
                "Execution %d started by unknown agent %d", event.execution_id, event.agent_id
            )
        await self._bump_global(event.timestamp, total_executions=1)
        return True

    async def _on_execution_completed(self, event: ExecutionCompleted) -> bool:
        execution = await self.get_execution(event.execution_id)
        if execution is None:
            logger.warning(
                "ExecutionCompleted for unknown execution %d; skipping", event.execution_id
            )
            return False
        if not execution.is_pending:
            logger.warning(
                "Execution %d already %s; ignoring second completion",
                event.execution_id,
                execution.result,
            )
            return False

        success = event.result == RESULT_SUCCESS
        result = ExecutionResult.SUCCESS if success else ExecutionResult.FAILURE
        amount_in = execution.amount_in
        profit_loss = event.profit_loss
        percent = profit_loss / amount_in * 100 if amount_in else 0.0

        cursor = await self.db.execute(
            """UPDATE executions SET
                   amount_out = ?, profit_loss = ?, profit_loss_percent = ?,
                   result = ?, completed_at = ?, duration = ?, complete_tx_hash = ?
               WHERE execution_id = ? AND result = 'PENDING'""",
            (
                str(event.amount_out),
                str(profit_loss),
                percent,
                result.value,
                event.timestamp,
                max(0, event.timestamp - execution.started_at),
                event.tx_hash,
                event.execution_id,
            ),
        )
        if cursor.rowcount == 0:
            return False

        await self._update_agent_performance(execution, event, success)
        await self._update_daily_stat(execution.agent_id, event, amount_in, success)

        user = execution.user_address
        await self._get_or_create_user(user, event.timestamp)
        await self._add_amount("users", "total_profit_from_agents", "address", user, profit_loss)
        await self._add_global_amounts(event.timestamp, volume=amount_in, profit=profit_loss)
        logger.info(
            "Execution %d %s (agent %d, pnl %d)",
            event.execution_id,
            result,
            execution.agent_id,
            profit_loss,
        )
        return True

    async def _update_agent_performance(
        self, execution: Execution, event: ExecutionCompleted, success: bool
    ) -> None:
        agent = await self.get_agent(execution.agent_id)
        if agent is None:
            logger.warning(
                "Execution %d completed for unknown agent %d",
                execution.execution_id,
                execution.agent_id,
            )
            return

        total = agent.total_executions + 1
        successes = agent.successful_executions + (1 if success else 0)
        failures = agent.failed_executions + (0 if success else 1)
        volume_in = agent.total_volume_in + execution.amount_in
        volume_out = agent.total_volume_out + event.amount_out
        pnl = agent.total_profit_loss + event.profit_loss
        win_rate = calculate_win_rate(successes, total)
        avg_profit = pnl / total
        drawdown = running_max_drawdown(
            agent.max_drawdown,
            float(agent.total_profit_loss),
            float(event.profit_loss),
            float(agent.total_volume_in),
        )
        sharpe = simplified_sharpe(avg_profit, float(volume_in), total, win_rate)
        score = calculate_reputation_score(
            ReputationInput(
                win_rate=win_rate,
                total_volume=float(volume_in),
                profit_loss=float(pnl),
                execution_count=total,
                avg_profit_per_trade=avg_profit,
            ),
            self.min_executions,
        )
        await self.db.execute(
            """UPDATE agents SET
                   total_executions = ?, successful_executions = ?, failed_executions = ?,
                   pending_executions = MAX(0, pending_executions - 1),
                   total_volume_in = ?, total_volume_out = ?, total_profit_loss = ?,
                   win_rate = ?, avg_profit_per_trade = ?, max_drawdown = ?,
                   sharpe_ratio = ?, reputation_score = ?, updated_at = ?
               WHERE agent_id = ?""",
            (
                total,
                successes,
                failures,
                str(volume_in),
                str(volume_out),
                str(pnl),
                win_rate,
                avg_profit,
                drawdown,
                sharpe,
                score,
                event.timestamp,
                agent.agent_id,
            ),
        )

    async def _update_daily_stat(
        self, agent_id: int, event: ExecutionCompleted, amount_in: int, success: bool
    ) -> None:
        day = day_id(event.timestamp)
        stat_id = f"{agent_id}-{day}"
        current = await self._fetch_one(
            "SELECT * FROM agent_daily_stats WHERE id = ?", (stat_id,)
        )
        executions = (current["executions"] if current else 0) + 1
        successes = (current["successes"] if current else 0) + (1 if success else 0)
        failures = (current["failures"] if current else 0) + (0 if success else 1)
        volume = (int(current["volume"]) if current else 0) + amount_in
        profit = (int(current["profit"]) if current else 0) + event.profit_loss
        await self.db.execute(
            """INSERT INTO agent_daily_stats
               (id, agent_id, day_id, date, executions, successes, failures,
                volume, profit, win_rate)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   executions = excluded.executions,
                   successes = excluded.successes,
                   failures = excluded.failures,
                   volume = excluded.volume,
                   profit = excluded.profit,
                   win_rate = excluded.win_rate""",
            (
                stat_id,
                agent_id,
                day,
                day_date(event.timestamp),
                executions,
                successes,
                failures,
                str(volume),
                str(profit),
                calculate_win_rate(successes, executions),
            ),
        )

    # ── Redelegation and permission handlers ─────────────────────────────

    async def _on_redelegation_created(self, event: RedelegationCreated) -> bool:
        redelegation_id = f"{event.parent_agent_id}-{event.child_agent_id}-{event.timestamp}"
        existing = await self.get_redelegation(redelegation_id)
        if existing is not None and existing.tx_hash != event.tx_hash:
            # same parent, child and second: a different redelegation, keyed by log position
            redelegation_id = f"{redelegation_id}-{event.block_number}-{event.log_index}"
            existing = await self.get_redelegation(redelegation_id)
        if existing is not None:
            logger.debug("Redelegation %s already recorded", redelegation_id)
            return True
        await self.db.execute(
            """INSERT INTO redelegations
               (redelegation_id, parent_agent_id, child_agent_id, user_address,
                amount, duration, created_at, expires_at, is_active, tx_hash)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?)""",
            (
                redelegation_id,
                event.parent_agent_id,
                event.child_agent_id,
                normalize_address(event.user),
                str(event.amount),
                event.duration,
                event.timestamp,
                event.timestamp + event.duration,
                event.tx_hash,
            ),
        )
        await self._bump_global(event.timestamp, total_redelegations=1)
        return True

    async def _on_permission_granted(self, event: PermissionGranted) -> bool:
        if event.total_amount < 0 or event.amount_per_period < 0:
            raise ValidationError(f"permission {event.permission_id}: negative amount")
        existing = await self.get_permission(event.permission_id)
        if existing is not None and event.total_amount < existing.amount_used:
            logger.warning(
                "Re-grant of permission %s lowers total to %d below %d already used; skipping",
                event.permission_id,
                event.total_amount,
                existing.amount_used,
            )
            return False
        await self.db.execute(
            """INSERT INTO permissions
               (permission_id, user_address, agent_id, token, amount_per_period,
                period_duration, total_amount, granted_at, expires_at, is_active, tx_hash)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
               ON CONFLICT(permission_id) DO UPDATE SET
                   amount_per_period = excluded.amount_per_period,
                   period_duration = excluded.period_duration,
                   total_amount = excluded.total_amount,
                   expires_at = excluded.expires_at""",
            (
                event.permission_id,
                normalize_address(event.user),
                event.agent_id,
                normalize_address(event.token),
                str(event.amount_per_period),
                event.period_duration,
                str(event.total_amount),
                event.timestamp,
                event.expires_at,
                event.tx_hash,
            ),
        )
        if existing is None:
            await self._get_or_create_user(normalize_address(event.user), event.timestamp)
            await self._bump_global(event.timestamp, total_permissions=1, active_permissions=1)
        return True

    async def _on_permission_used(self, event: PermissionUsed) -> bool:
        permission = await self.get_permission(event.permission_id)
        if permission is None:
            logger.warning("PermissionUsed for unknown permission %s; skipping", event.permission_id)
            return False
        if event.amount < 0:
            logger.warning(
                "PermissionUsed with negative amount %d on %s; skipping",
                event.amount,
                event.permission_id,
            )
            return False
        used = permission.amount_used + event.amount
        if used > permission.total_amount:
            logger.warning(
                "PermissionUsed would exceed total on %s (%d > %d); skipping",
                event.permission_id,
                used,
                permission.total_amount,
            )
            return False
        await self.db.execute(
            "UPDATE permissions SET amount_used = ? WHERE permission_id = ?",
            (str(used), event.permission_id),
        )
        return True

    async def _on_permission_revoked(self, event: PermissionRevoked) -> bool:
        permission = await self.get_permission(event.permission_id)
        if permission is None or not permission.is_active:
            logger.warning("Revocation of inactive permission %s; skipping", event.permission_id)
            return False
        await self.db.execute(
            "UPDATE permissions SET is_active = 0, revoked_at = ? WHERE permission_id = ?",
            (event.timestamp, event.permission_id),
        )
        await self._bump_global(event.timestamp, active_permissions=-1)
        return True

    # ── Aggregate helpers ────────────────────────────────────────────────

    async def _get_or_create_user(self, address: str, timestamp: int) -> None:
        cursor = await self.db.execute(
            "INSERT OR IGNORE INTO users (address, first_seen_at) VALUES (?, ?)",
            (address, timestamp),
        )
        if cursor.rowcount:
            await self._bump_global(timestamp, total_users=1)

    async def _bump_global(self, timestamp: int, **deltas: int) -> None:
        assignments = ", ".join(f"{column} = {column} + ?" for column in deltas)
        await self.db.execute(
            f"UPDATE global_stats SET {assignments}, last_updated = ? WHERE id = 1",
            (*deltas.values(), timestamp),
        )

    async def _add_global_amounts(self, timestamp: int, volume: int, profit: int) -> None:
        row = await self._fetch_one(
            "SELECT total_volume, total_profit FROM global_stats WHERE id = 1"
        )
        assert row is not None
        await self.db.execute(
            """UPDATE global_stats SET total_volume = ?, total_profit = ?, last_updated = ?
               WHERE id = 1""",
            (
                str(int(row["total_volume"]) + volume),
                str(int(row["total_profit"]) + profit),
                timestamp,
            ),
        )

    async def _add_amount(
        self, table: str, column: str, key_column: str, key: Any, delta: int
    ) -> None:
        row = await self._fetch_one(
            f"SELECT {column} FROM {table} WHERE {key_column} = ?", (key,)
        )
        if row is None:
            return
        await self.db.execute(
            f"UPDATE {table} SET {column} = ? WHERE {key_column} = ?",
            (str(int(row[column]) + delta), key),
        )

    async def _fetch_one(self, sql: str, params: tuple[Any, ...] = ()) -> aiosqlite.Row | None:
        cursor = await self.db.execute(sql, params)
        return await cursor.fetchone()

    async def _fetch_all(self, sql: str, params: tuple[Any, ...] = ()) -> list[aiosqlite.Row]:
        cursor = await self.db.execute(sql, params)
        return list(await cursor.fetchall())

    # ── Queries ──────────────────────────────────────────────────────────

    async def get_agent(self, agent_id: int) -> Agent | None:
        row = await self._fetch_one("SELECT * FROM agents WHERE agent_id = ?", (agent_id,))
        return _row_to_agent(row) if row else None

    async def get_agent_by_address(self, address: str) -> Agent | None:
        row = await self._fetch_one(
            "SELECT * FROM agents WHERE address = ?", (normalize_address(address),)
        )
        return _row_to_agent(row) if row else None

    async def list_agents(
        self, active_only: bool = False, limit: int = 100, offset: int = 0
    ) -> list[Agent]:
        """Agents ordered by reputation (leaderboard order)."""
        where = "WHERE is_active = 1" if active_only else ""
        rows = await self._fetch_all(
            f"""SELECT * FROM agents {where}
                ORDER BY reputation_score DESC, total_executions DESC, agent_id
                LIMIT ? OFFSET ?""",
            (limit, offset),
        )
        return [_row_to_agent(r) for r in rows]

    async def get_execution(self, execution_id: int) -> Execution | None:
        row = await self._fetch_one(
            "SELECT * FROM executions WHERE execution_id = ?", (execution_id,)
        )
        return _row_to_execution(row) if row else None

    async def executions_for_agent(self, agent_id: int, limit: int = 50) -> list[Execution]:
        rows = await self._fetch_all(
            """SELECT * FROM executions WHERE agent_id = ?
               ORDER BY started_at DESC, execution_id DESC LIMIT ?""",
            (agent_id, limit),
        )
        return [_row_to_execution(r) for r in rows]

    async def stale_executions(
        self, now: int | None = None, older_than: int | None = None
    ) -> list[Execution]:
        """Executions still PENDING long after they started (missing completion)."""
        now = int(time.time()) if now is None else now
        age = self.STALE_EXECUTION_SECONDS if older_than is None else older_than
        rows = await self._fetch_all(
            """SELECT * FROM executions WHERE result = 'PENDING' AND started_at <= ?
               ORDER BY started_at""",
            (now - age,),
        )
        return [_row_to_execution(r) for r in rows]

    async def get_user(self, address: str) -> User | None:
        row = await self._fetch_one(
            "SELECT * FROM users WHERE address = ?", (normalize_address(address),)
        )
        if row is None:
            return None
        return User(
            address=row["address"],
            first_seen_at=row["first_seen_at"],
            total_executions=row["total_executions"],
            total_profit_from_agents=int(row["total_profit_from_agents"]),
        )

    async def get_permission(self, permission_id: str) -> Permission | None:
        row = await self._fetch_one(
            "SELECT * FROM permissions WHERE permission_id = ?", (permission_id,)
        )
        return _row_to_permission(row) if row else None

    async def active_permissions(
        self, agent_id: int, now: int | None = None
    ) -> list[Permission]:
        """Unrevoked, unexpired permissions granted to ``agent_id``."""
        now = int(time.time()) if now is None else now
        rows = await self._fetch_all(
            """SELECT * FROM permissions
               WHERE agent_id = ? AND is_active = 1 AND expires_at > ?
               ORDER BY granted_at""",
            (agent_id, now),
        )
        return [_row_to_permission(r) for r in rows]

    async def get_redelegation(self, redelegation_id: str) -> Redelegation | None:
        row = await self._fetch_one(
            "SELECT * FROM redelegations WHERE redelegation_id = ?", (redelegation_id,)
        )
        return _row_to_redelegation(row) if row else None

    async def active_redelegations(
        self, parent_agent_id: int, user: str, now: int | None = None
    ) -> list[Redelegation]:
        """Live redelegations from ``parent_agent_id`` on behalf of ``user``."""
        now = int(time.time()) if now is None else now
        rows = await self._fetch_all(
            """SELECT * FROM redelegations
               WHERE parent_agent_id = ? AND user_address = ?
                 AND is_active = 1 AND expires_at > ?
               ORDER BY created_at""",
            (parent_agent_id, normalize_address(user), now),
        )
        return [_row_to_redelegation(r) for r in rows]

    async def count_active_redelegations(
        self, parent_agent_id: int, user: str, now: int | None = None
    ) -> int:
        return len(await self.active_redelegations(parent_agent_id, user, now))

    async def daily_stats(self, agent_id: int, limit: int = 30) -> list[AgentDailyStat]:
        rows = await self._fetch_all(
            "SELECT * FROM agent_daily_stats WHERE agent_id = ? ORDER BY day_id DESC LIMIT ?",
            (agent_id, limit),
        )
        return [
            AgentDailyStat(
                id=r["id"],
                agent_id=r["agent_id"],
                day_id=r["day_id"],
                date=r["date"],
                executions=r["executions"],
                successes=r["successes"],
                failures=r["failures"],
                volume=int(r["volume"]),
                profit=int(r["profit"]),
                win_rate=r["win_rate"],
            )
            for r in rows
        ]

    async def global_stats(self) -> GlobalStats:
        row = await self._fetch_one("SELECT * FROM global_stats WHERE id = 1")
        assert row is not None
        return GlobalStats(
            total_agents=row["total_agents"],
            active_agents=row["active_agents"],
            total_users=row["total_users"],
            total_executions=row["total_executions"],
            total_permissions=row["total_permissions"],
            active_permissions=row["active_permissions"],
            total_redelegations=row["total_redelegations"],
            total_volume=int(row["total_volume"]),
            total_profit=int(row["total_profit"]),
            last_updated=row["last_updated"],
        )

    async def reputation_scores(
        self, limit: int = 100, offset: int = 0
    ) -> dict[str, int]:
        """Current score per active agent address, one page at a time."""
        rows = await self._fetch_all(
            """SELECT address, reputation_score FROM agents WHERE is_active = 1
               ORDER BY agent_id LIMIT ? OFFSET ?""",
            (limit, offset),
        )
        return {r["address"]: r["reputation_score"] for r in rows}


def _row_to_agent(row: aiosqlite.Row) -> Agent:
    return Agent(
        agent_id=row["agent_id"],
        address=row["address"],
        name=row["name"],
        strategy=row["strategy"],
        risk_level=row["risk_level"],
        is_active=bool(row["is_active"]),
        total_executions=row["total_executions"],
        successful_executions=row["successful_executions"],
        failed_executions=row["failed_executions"],
        pending_executions=row["pending_executions"],
        total_volume_in=int(row["total_volume_in"]),
        total_volume_out=int(row["total_volume_out"]),
        total_profit_loss=int(row["total_profit_loss"]),
        win_rate=row["win_rate"],
        avg_profit_per_trade=row["avg_profit_per_trade"],
        max_drawdown=row["max_drawdown"],
        sharpe_ratio=row["sharpe_ratio"],
        reputation_score=row["reputation_score"],
        metadata_uri=row["metadata_uri"],
        registered_at=row["registered_at"],
        last_execution_at=row["last_execution_at"],
        updated_at=row["updated_at"],
    )


def _row_to_execution(row: aiosqlite.Row) -> Execution:
    return Execution(
        execution_id=row["execution_id"],
        agent_id=row["agent_id"],
        user_address=row["user_address"],
        amount_in=int(row["amount_in"]),
        amount_out=int(row["amount_out"]),
        token_in=row["token_in"],
        token_out=row["token_out"],
        profit_loss=int(row["profit_loss"]),
        profit_loss_percent=row["profit_loss_percent"],
        result=ExecutionResult(row["result"]),
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        duration=row["duration"],
        start_tx_hash=row["start_tx_hash"],
        complete_tx_hash=row["complete_tx_hash"],
    )


def _row_to_permission(row: aiosqlite.Row) -> Permission:
    return Permission(
        permission_id=row["permission_id"],
        user_address=row["user_address"],
        agent_id=row["agent_id"],
        token=row["token"],
        amount_per_period=int(row["amount_per_period"]),
        period_duration=row["period_duration"],
        total_amount=int(row["total_amount"]),
        amount_used=int(row["amount_used"]),
        granted_at=row["granted_at"],
        expires_at=row["expires_at"],
        revoked_at=row["revoked_at"],
        is_active=bool(row["is_active"]),
        tx_hash=row["tx_hash"],
    )


def _row_to_redelegation(row: aiosqlite.Row) -> Redelegation:
    return Redelegation(
        redelegation_id=row["redelegation_id"],
        parent_agent_id=row["parent_agent_id"],
        child_agent_id=row["child_agent_id"],
        user_address=row["user_address"],
        amount=int(row["amount"]),
        duration=row["duration"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        is_active=bool(row["is_active"]),
        tx_hash=row["tx_hash"],
    )
