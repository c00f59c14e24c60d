"""Tests for the echelon CLI."""

from pathlib import Path

import pytest
from click.testing import CliRunner

from echelon.cli import format_amount, main
from echelon.storage.database import Database

SPECIALIST = "0x00000000000000000000000000000000000a1f01"


@pytest.fixture
def home(tmp_path: Path) -> Path:
    return tmp_path / "echelon"


@pytest.fixture
def invoke(home: Path):
    runner = CliRunner()

    def run(*args: str):
        return runner.invoke(main, list(args), env={"ECHELON_HOME": str(home)})

    return run


def _insert_a2a(home: Path, delegation_hash: str, expires_at: int, attempts: int = 0) -> None:
    db = Database(home)
    db.ensure_tables()
    db.execute_insert(
        """INSERT INTO a2a_delegations
           (delegation_hash, from_agent_id, from_agent_address, to_agent_id, to_agent_address,
            user_address, token, amount, expires_at, signed_payload, attempts, last_error,
            created_at)
           VALUES (?, 1, '0xf0', 2, ?, '0xaa', '0xdc', '10000000', ?, '{}', ?, ?, 1)""",
        (delegation_hash, SPECIALIST, expires_at, attempts, "execution reverted" if attempts else None),
    )


def test_version(invoke) -> None:
    result = invoke("--version")
    assert result.exit_code == 0
    assert "0.1.0" in result.output


def test_init(invoke, home: Path) -> None:
    result = invoke("init")
    assert result.exit_code == 0
    assert "initialized" in result.output.lower()
    assert (home / "data" / "echelon.db").exists()


def test_bad_config_is_reported(invoke, home: Path) -> None:
    home.mkdir(parents=True)
    (home / "config.toml").write_text("slippage = 2.0\n")
    result = invoke("stats")
    assert result.exit_code != 0
    assert "slippage" in result.output


# --- Empty database ---


def test_agents_empty(invoke) -> None:
    result = invoke("agents")
    assert result.exit_code == 0
    assert "No agents indexed yet." in result.output


def test_agent_not_found(invoke) -> None:
    result = invoke("agent", "9")
    assert result.exit_code != 0
    assert "Agent 9 not found" in result.output


def test_stats_empty(invoke) -> None:
    result = invoke("stats")
    assert result.exit_code == 0
    assert "Echelon Stats" in result.output


def test_delegations_empty(invoke) -> None:
    result = invoke("delegations", SPECIALIST)
    assert result.exit_code == 0
    assert "No delegations for" in result.output


def test_anomalies_empty(invoke) -> None:
    result = invoke("anomalies")
    assert result.exit_code == 0
    assert "No anomalies found." in result.output


def test_oracle_never_synced(invoke) -> None:
    result = invoke("oracle-status")
    assert result.exit_code == 0
    assert "never been synced" in result.output


# --- Score ---


def test_score(invoke) -> None:
    result = invoke(
        "score",
        "--win-rate", "0.75",
        "--volume", "5000000000",
        "--profit-loss", "100000000",
        "--executions", "25",
        "--avg-profit", "2.0",
    )
    assert result.exit_code == 0
    assert "Score:" in result.output
    assert "Components:" in result.output


def test_score_neutral(invoke) -> None:
    result = invoke(
        "score", "--win-rate", "1.0", "--volume", "1", "--profit-loss", "1", "--executions", "2"
    )
    assert result.exit_code == 0
    assert "50" in result.output
    assert "Neutral" in result.output


def test_score_requires_inputs(invoke) -> None:
    result = invoke("score", "--win-rate", "0.5")
    assert result.exit_code != 0


def test_score_help_units(invoke) -> None:
    result = invoke("score", "--help")
    assert result.exit_code == 0
    assert "(%)" not in result.output
    assert "trade in base units" in " ".join(result.output.split())


# --- Maintenance ---


def test_expire(invoke, home: Path) -> None:
    _insert_a2a(home, "0xexpired", expires_at=100)
    _insert_a2a(home, "0xlive", expires_at=2**40)
    result = invoke("expire")
    assert result.exit_code == 0
    assert "Expired 0 grant(s) and 1 A2A delegation(s)." in result.output

    rows = Database(home).execute("SELECT delegation_hash, status FROM a2a_delegations ORDER BY 1")
    assert [tuple(r) for r in rows] == [("0xexpired", "expired"), ("0xlive", "pending")]


def test_anomalies_lists_failing_and_stuck(invoke, home: Path) -> None:
    _insert_a2a(home, "0xfailing", expires_at=2**40, attempts=5)
    Database(home).execute_insert(
        """INSERT INTO executions
           (execution_id, agent_id, user_address, amount_in, token_in, token_out,
            started_at, start_tx_hash)
           VALUES (1, 2, '0xaa', '10', '0xdc', '0xee', 100, '0xstart')"""
    )
    result = invoke("anomalies")
    assert result.exit_code == 0
    assert "failed 5x" in result.output
    assert "Executions pending too long" in result.output
    assert "No anomalies" not in result.output


# --- After a simulated run ---


@pytest.fixture
def simulated(invoke):
    result = invoke("simulate", "--users", "1", "--seed", "3")
    assert result.exit_code == 0, result.output
    return result


def test_simulate(simulated) -> None:
    assert "Simulation:" in simulated.output
    assert "4/4 allocations funded" in simulated.output


def test_agents_after_simulation(simulated, invoke) -> None:
    result = invoke("agents")
    assert result.exit_code == 0
    assert "Agent Leaderboard" in result.output


def test_agent_profile(simulated, invoke) -> None:
    result = invoke("agent", "2")
    assert result.exit_code == 0
    assert "AlphaYield #2" in result.output
    assert "neutral score" in result.output


def test_delegations_after_simulation(simulated, invoke) -> None:
    result = invoke("delegations", SPECIALIST)
    assert result.exit_code == 0
    assert "No delegations" not in result.output


def test_oracle_status_after_simulation(simulated, invoke) -> None:
    result = invoke("oracle-status")
    assert result.exit_code == 0
    assert "Agents synced: 5" in result.output


def test_format_amount() -> None:
    assert format_amount(1_500_000) == "1.50"
    assert format_amount("-250000") == "-0.25"
    assert format_amount(1_234_000_000) == "1,234.00"
