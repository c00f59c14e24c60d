"""SQLite database with WAL mode shared by the ledger, the store and the CLI."""

from __future__ import annotations

import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

SCHEMA_VERSION = 1


class Database:
    """Synchronous SQLite access for reporting; async services share ``SCHEMA``."""

    def __init__(self, data_dir: Path | None = None) -> None:
        self.data_dir = data_dir or Path.home() / ".echelon"
        self.db_path = self.data_dir / "data" / "echelon.db"

    def _ensure_dirs(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        (self.data_dir / "data").mkdir(exist_ok=True)
        (self.data_dir / "logs").mkdir(exist_ok=True)

    @contextmanager
    def connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with WAL mode."""
        self._ensure_dirs()
        conn = sqlite3.connect(str(self.db_path))
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ensure_tables(self) -> None:
        """Create all tables if they don't exist."""
        with self.connect() as conn:
            conn.executescript(SCHEMA)

    def execute(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        """Execute a query and return results."""
        with self.connect() as conn:
            cursor = conn.execute(sql, params)
            return cursor.fetchall()

    def execute_insert(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        """Execute an insert and return lastrowid."""
        with self.connect() as conn:
            cursor = conn.execute(sql, params)
            return cursor.lastrowid or 0


# Token amounts are stored as decimal TEXT: wei-scale values overflow INTEGER.
SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── Reputation ledger ─────────────────────────────────────────────────────

CREATE TABLE IF NOT EXISTS agents (
    agent_id INTEGER PRIMARY KEY,
    address TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    strategy TEXT NOT NULL DEFAULT '',
    risk_level INTEGER NOT NULL DEFAULT 5,
    is_active INTEGER NOT NULL DEFAULT 1,
    total_executions INTEGER NOT NULL DEFAULT 0,
    successful_executions INTEGER NOT NULL DEFAULT 0,
    failed_executions INTEGER NOT NULL DEFAULT 0,
    pending_executions INTEGER NOT NULL DEFAULT 0,
    total_volume_in TEXT NOT NULL DEFAULT '0',
    total_volume_out TEXT NOT NULL DEFAULT '0',
    total_profit_loss TEXT NOT NULL DEFAULT '0',
    win_rate REAL NOT NULL DEFAULT 0.0,
    avg_profit_per_trade REAL NOT NULL DEFAULT 0.0,
    max_drawdown REAL NOT NULL DEFAULT 0.0,
    sharpe_ratio REAL NOT NULL DEFAULT 0.0,
    reputation_score INTEGER NOT NULL DEFAULT 50,
    metadata_uri TEXT NOT NULL DEFAULT '',
    registered_at INTEGER NOT NULL,
    last_execution_at INTEGER,
    updated_at INTEGER NOT NULL,
    CHECK (risk_level BETWEEN 1 AND 10),
    CHECK (pending_executions >= 0),
    CHECK (win_rate BETWEEN 0.0 AND 1.0),
    CHECK (reputation_score BETWEEN 0 AND 100)
);

CREATE INDEX IF NOT EXISTS idx_agents_address ON agents(address);

CREATE TABLE IF NOT EXISTS executions (
    execution_id INTEGER PRIMARY KEY,
    agent_id INTEGER NOT NULL,
    user_address TEXT NOT NULL,
    amount_in TEXT NOT NULL,
    amount_out TEXT NOT NULL DEFAULT '0',
    token_in TEXT NOT NULL,
    token_out TEXT NOT NULL,
    profit_loss TEXT NOT NULL DEFAULT '0',
    profit_loss_percent REAL NOT NULL DEFAULT 0.0,
    result TEXT NOT NULL DEFAULT 'PENDING',
    started_at INTEGER NOT NULL,
    completed_at INTEGER,
    duration INTEGER,
    start_tx_hash TEXT NOT NULL,
    complete_tx_hash TEXT,
    CHECK (result IN ('PENDING', 'SUCCESS', 'FAILURE'))
);

CREATE INDEX IF NOT EXISTS idx_executions_agent ON executions(agent_id, started_at DESC);
CREATE INDEX IF NOT EXISTS idx_executions_result ON executions(result, started_at);

CREATE TABLE IF NOT EXISTS users (
    address TEXT PRIMARY KEY,
    first_seen_at INTEGER NOT NULL,
    total_executions INTEGER NOT NULL DEFAULT 0,
    total_profit_from_agents TEXT NOT NULL DEFAULT '0'
);

CREATE TABLE IF NOT EXISTS permissions (
    permission_id TEXT PRIMARY KEY,
    user_address TEXT NOT NULL,
    agent_id INTEGER NOT NULL,
    token TEXT NOT NULL,
    amount_per_period TEXT NOT NULL,
    period_duration INTEGER NOT NULL,
    total_amount TEXT NOT NULL,
    amount_used TEXT NOT NULL DEFAULT '0',
    granted_at INTEGER NOT NULL,
    expires_at INTEGER NOT NULL,
    revoked_at INTEGER,
    is_active INTEGER NOT NULL DEFAULT 1,
    tx_hash TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_permissions_agent ON permissions(agent_id, is_active);

CREATE TABLE IF NOT EXISTS redelegations (
    redelegation_id TEXT PRIMARY KEY,
    parent_agent_id INTEGER NOT NULL,
    child_agent_id INTEGER NOT NULL,
    user_address TEXT NOT NULL,
    amount TEXT NOT NULL,
    duration INTEGER NOT NULL,
    created_at INTEGER NOT NULL,
    expires_at INTEGER NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    tx_hash TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_redelegations_parent_user
    ON redelegations(parent_agent_id, user_address, is_active);

CREATE TABLE IF NOT EXISTS agent_daily_stats (
    id TEXT PRIMARY KEY,
    agent_id INTEGER NOT NULL,
    day_id INTEGER NOT NULL,
    date TEXT NOT NULL,
    executions INTEGER NOT NULL DEFAULT 0,
    successes INTEGER NOT NULL DEFAULT 0,
    failures INTEGER NOT NULL DEFAULT 0,
    volume TEXT NOT NULL DEFAULT '0',
    profit TEXT NOT NULL DEFAULT '0',
    win_rate REAL NOT NULL DEFAULT 0.0
);

CREATE TABLE IF NOT EXISTS global_stats (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    total_agents INTEGER NOT NULL DEFAULT 0,
    active_agents INTEGER NOT NULL DEFAULT 0,
    total_users INTEGER NOT NULL DEFAULT 0,
    total_executions INTEGER NOT NULL DEFAULT 0,
    total_permissions INTEGER NOT NULL DEFAULT 0,
    active_permissions INTEGER NOT NULL DEFAULT 0,
    total_redelegations INTEGER NOT NULL DEFAULT 0,
    total_volume TEXT NOT NULL DEFAULT '0',
    total_profit TEXT NOT NULL DEFAULT '0',
    last_updated INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS ledger_cursor (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    block_number INTEGER NOT NULL,
    log_index INTEGER NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── Delegation store ──────────────────────────────────────────────────────

CREATE TABLE IF NOT EXISTS permission_grants (
    permission_id TEXT PRIMARY KEY,
    user_address TEXT NOT NULL,
    agent_address TEXT NOT NULL,
    token TEXT NOT NULL,
    amount TEXT NOT NULL,
    expires_at INTEGER NOT NULL,
    signed_payload TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at INTEGER NOT NULL,
    claimed_at INTEGER,
    claimed_tx_hash TEXT,
    CHECK (status IN ('pending', 'claimed', 'expired', 'revoked')),
    CHECK ((status = 'claimed') = (claimed_tx_hash IS NOT NULL))
);

CREATE INDEX IF NOT EXISTS idx_grants_agent_status
    ON permission_grants(agent_address, status, expires_at);

CREATE TABLE IF NOT EXISTS a2a_delegations (
    delegation_hash TEXT PRIMARY KEY,
    parent_permission_id TEXT,
    from_agent_id INTEGER NOT NULL,
    from_agent_address TEXT NOT NULL,
    to_agent_id INTEGER NOT NULL,
    to_agent_address TEXT NOT NULL,
    user_address TEXT NOT NULL,
    token TEXT NOT NULL,
    amount TEXT NOT NULL,
    expires_at INTEGER NOT NULL,
    signed_payload TEXT NOT NULL,
    strategy_type TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at INTEGER NOT NULL,
    redeemed_at INTEGER,
    redeemed_tx_hash TEXT,
    CHECK (status IN ('pending', 'redeemed', 'expired', 'revoked')),
    CHECK ((status = 'redeemed') = (redeemed_tx_hash IS NOT NULL))
);

CREATE INDEX IF NOT EXISTS idx_a2a_to_agent_status
    ON a2a_delegations(to_agent_address, status, expires_at);
CREATE INDEX IF NOT EXISTS idx_a2a_parent ON a2a_delegations(parent_permission_id);

-- ── Dispatcher idempotency ────────────────────────────────────────────────

CREATE TABLE IF NOT EXISTS fanout_claims (
    permission_id TEXT PRIMARY KEY,
    user_address TEXT NOT NULL,
    amount TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'in_progress',
    claimed_at INTEGER NOT NULL,
    completed_at INTEGER,
    CHECK (status IN ('in_progress', 'completed', 'skipped'))
);

CREATE TABLE IF NOT EXISTS fanout_allocations (
    permission_id TEXT NOT NULL,
    specialist_id INTEGER NOT NULL,
    amount TEXT NOT NULL,
    status TEXT NOT NULL,
    tx_hash TEXT,
    error TEXT,
    created_at INTEGER NOT NULL,
    PRIMARY KEY (permission_id, specialist_id),
    CHECK (status IN ('funded', 'not_funded'))
);

INSERT OR IGNORE INTO global_stats (id) VALUES (1);
INSERT OR IGNORE INTO schema_version (version) VALUES (1);
"""
