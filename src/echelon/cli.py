"""CLI entry point for Echelon."""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.table import Table

from echelon import __version__

if TYPE_CHECKING:
    from echelon.config import Settings
    from echelon.storage.database import Database

console = Console()

TIER_STYLES = {
    "excellent": "bold green",
    "good": "green",
    "fair": "yellow",
    "poor": "red",
    "critical": "bold red",
}


def format_amount(raw: int | str, decimals: int = 6) -> str:
    """Base units to a human amount (USDC has 6 decimals)."""
    value = int(raw)
    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(value), 10**decimals)
    return f"{sign}{whole:,}.{frac * 100 // 10**decimals:02d}"


def _score_cell(score: int) -> str:
    from echelon.ledger.reputation import get_score_tier

    tier = get_score_tier(score)
    style = TIER_STYLES.get(tier.tier, "")
    return f"[{style}]{score}[/{style}]"


@click.group()
@click.version_option(version=__version__, prog_name="echelon")
@click.option("--log-level", default=None, help="Override the configured log level")
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines")
@click.pass_context
def main(ctx: click.Context, log_level: str | None, json_logs: bool) -> None:
    """Echelon - delegated trading agents with an on-chain reputation ledger."""
    from echelon.config import load_settings
    from echelon.errors import ConfigError
    from echelon.logging_config import setup_logging

    try:
        settings = load_settings()
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    setup_logging(log_level or settings.log_level, json_format=json_logs or settings.log_json)
    ctx.obj = settings


def _database(settings: Settings) -> Database:
    from echelon.storage.database import Database

    db = Database(settings.home)
    db.ensure_tables()
    return db


@main.command()
@click.pass_obj
def init(settings: Settings) -> None:
    """Initialize Echelon: create ~/.echelon/ and the database."""
    db = _database(settings)
    console.print(f"[green]Echelon initialized at {db.data_dir}[/green]")
    console.print(f"  Database: {db.db_path}")
    console.print(f"  Config:   {settings.config_path}")


@main.command()
@click.option("--all", "show_all", is_flag=True, help="Include deactivated agents")
@click.option("--limit", default=20, help="Number of agents to show")
@click.pass_obj
def agents(settings: Settings, show_all: bool, limit: int) -> None:
    """Show the agent leaderboard."""
    db = _database(settings)
    where = "" if show_all else "WHERE is_active = 1"
    rows = db.execute(
        f"""SELECT * FROM agents {where}
            ORDER BY reputation_score DESC, total_executions DESC, agent_id LIMIT ?""",
        (limit,),
    )
    if not rows:
        console.print("[dim]No agents indexed yet.[/dim]")
        return

    table = Table(title="Agent Leaderboard")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Score", justify="right")
    table.add_column("Executions", justify="right")
    table.add_column("Win rate", justify="right")
    table.add_column("P&L", justify="right")
    table.add_column("Active")

    for row in rows:
        table.add_row(
            str(row["agent_id"]),
            row["name"] or row["address"][:10],
            _score_cell(row["reputation_score"]),
            str(row["total_executions"]),
            f"{row['win_rate']:.0%}",
            format_amount(row["total_profit_loss"]),
            "yes" if row["is_active"] else "[dim]no[/dim]",
        )
    console.print(table)


@main.command()
@click.argument("agent_id", type=int)
@click.option("--limit", default=10, help="Recent executions to show")
@click.pass_obj
def agent(settings: Settings, agent_id: int, limit: int) -> None:
    """Show one agent's profile, score breakdown and recent executions."""
    from echelon.ledger.reputation import ReputationInput, get_score_tier, score_components

    db = _database(settings)
    rows = db.execute("SELECT * FROM agents WHERE agent_id = ?", (agent_id,))
    if not rows:
        raise click.ClickException(f"Agent {agent_id} not found")
    row = rows[0]

    tier = get_score_tier(row["reputation_score"])
    console.print(f"[bold]{row['name'] or 'Agent'} #{agent_id}[/bold]  {row['address']}")
    console.print(f"Strategy: {row['strategy'] or '-'}  Risk: {row['risk_level']}/10")
    console.print(
        f"Score: {_score_cell(row['reputation_score'])} ({tier.label}: {tier.recommendation})"
    )

    parts = score_components(
        ReputationInput(
            win_rate=row["win_rate"],
            total_volume=float(int(row["total_volume_in"])),
            profit_loss=float(int(row["total_profit_loss"])),
            execution_count=row["total_executions"],
            avg_profit_per_trade=row["avg_profit_per_trade"],
        ),
        settings.min_executions_for_score,
    )
    if parts.is_neutral:
        console.print(
            f"[dim]Fewer than {settings.min_executions_for_score} executions: neutral score[/dim]"
        )
    else:
        console.print(
            f"  win rate {parts.win_rate:.0f} | profitability {parts.profitability:.0f} | "
            f"volume {parts.volume:.0f} | experience {parts.experience:.0f} | "
            f"efficiency {parts.efficiency:.0f}"
        )

    executions = db.execute(
        "SELECT * FROM executions WHERE agent_id = ? ORDER BY started_at DESC LIMIT ?",
        (agent_id, limit),
    )
    if not executions:
        console.print("[dim]No executions yet.[/dim]")
        return

    table = Table(title="Recent Executions")
    table.add_column("ID", style="cyan")
    table.add_column("User")
    table.add_column("In", justify="right")
    table.add_column("Out", justify="right")
    table.add_column("P&L %", justify="right")
    table.add_column("Result")
    for ex in executions:
        color = {"SUCCESS": "green", "FAILURE": "red"}.get(ex["result"], "yellow")
        table.add_row(
            str(ex["execution_id"]),
            ex["user_address"][:10],
            format_amount(ex["amount_in"]),
            format_amount(ex["amount_out"]),
            f"{ex['profit_loss_percent']:+.2f}",
            f"[{color}]{ex['result']}[/{color}]",
        )
    console.print(table)


@main.command()
@click.pass_obj
def stats(settings: Settings) -> None:
    """Show global ledger and delegation statistics."""
    db = _database(settings)
    row = db.execute("SELECT * FROM global_stats WHERE id = 1")[0]

    table = Table(title="Echelon Stats")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Agents (active / total)", f"{row['active_agents']} / {row['total_agents']}")
    table.add_row("Users", str(row["total_users"]))
    table.add_row("Executions", str(row["total_executions"]))
    table.add_row(
        "Permissions (active / total)", f"{row['active_permissions']} / {row['total_permissions']}"
    )
    table.add_row("Redelegations", str(row["total_redelegations"]))
    table.add_row("Volume", format_amount(row["total_volume"]))
    table.add_row("Profit", format_amount(row["total_profit"]))

    for name, label in (("permission_grants", "Grants"), ("a2a_delegations", "A2A delegations")):
        counts = db.execute(f"SELECT status, COUNT(*) AS n FROM {name} GROUP BY status")
        summary = ", ".join(f"{r['status']} {r['n']}" for r in counts) or "none"
        table.add_row(label, summary)
    console.print(table)


@main.command()
@click.argument("address")
@click.pass_obj
def delegations(settings: Settings, address: str) -> None:
    """Show grants and A2A delegations touching ADDRESS (user or agent)."""
    from echelon.ledger.models import normalize_address

    db = _database(settings)
    addr = normalize_address(address)
    grants = db.execute(
        """SELECT * FROM permission_grants WHERE user_address = ? OR agent_address = ?
           ORDER BY created_at DESC""",
        (addr, addr),
    )
    a2a = db.execute(
        """SELECT * FROM a2a_delegations
           WHERE user_address = ? OR from_agent_address = ? OR to_agent_address = ?
           ORDER BY created_at DESC""",
        (addr, addr, addr),
    )
    if not grants and not a2a:
        console.print(f"[dim]No delegations for {addr}.[/dim]")
        return

    table = Table(title=f"Delegations for {addr[:10]}")
    table.add_column("Kind", style="cyan")
    table.add_column("Key")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Amount", justify="right")
    table.add_column("Status")
    table.add_column("Tx")
    for g in grants:
        table.add_row(
            "grant",
            g["permission_id"][:18],
            g["user_address"][:10],
            g["agent_address"][:10],
            format_amount(g["amount"]),
            g["status"],
            (g["claimed_tx_hash"] or "")[:12],
        )
    for d in a2a:
        table.add_row(
            "a2a",
            d["delegation_hash"][:18],
            d["from_agent_address"][:10],
            d["to_agent_address"][:10],
            format_amount(d["amount"]),
            d["status"],
            (d["redeemed_tx_hash"] or "")[:12],
        )
    console.print(table)


@main.command()
@click.option("--win-rate", type=float, required=True, help="Win rate in [0, 1]")
@click.option("--volume", type=float, required=True, help="Total volume in base units")
@click.option("--profit-loss", type=float, required=True, help="Total P&L in base units")
@click.option("--executions", type=int, required=True, help="Completed executions")
@click.option(
    "--avg-profit", type=float, default=0.0, help="Average profit per trade in base units"
)
@click.pass_obj
def score(
    settings: Settings,
    win_rate: float,
    volume: float,
    profit_loss: float,
    executions: int,
    avg_profit: float,
) -> None:
    """Compute a reputation score from raw inputs."""
    from echelon.ledger.reputation import (
        ReputationInput,
        display_breakdown,
        get_score_tier,
        score_components,
    )

    data = ReputationInput(
        win_rate=win_rate,
        total_volume=volume,
        profit_loss=profit_loss,
        execution_count=executions,
        avg_profit_per_trade=avg_profit,
    )
    parts = score_components(data, settings.min_executions_for_score)
    tier = get_score_tier(parts.score)
    console.print(f"[bold]Score:[/bold] {_score_cell(parts.score)} ({tier.label})")
    if parts.is_neutral:
        console.print("[dim]Neutral: not enough executions yet[/dim]")
        return
    console.print(
        f"[bold]Components:[/bold] win rate {parts.win_rate:.1f}, "
        f"profitability {parts.profitability:.1f}, volume {parts.volume:.1f}, "
        f"experience {parts.experience:.1f}, efficiency {parts.efficiency:.1f}"
    )
    shown = display_breakdown(data, settings.min_executions_for_score)
    console.print(
        f"[bold]Display:[/bold] {shown.win_rate_points:.1f}/40 win rate, "
        f"{shown.volume_points:.1f}/25 volume, {shown.profit_points:.1f}/25 profit, "
        f"{shown.consistency_points:.1f}/10 consistency"
    )


@main.command()
@click.option("--older-than", default=3600, help="Seconds before a pending item counts as stuck")
@click.pass_obj
def anomalies(settings: Settings, older_than: int) -> None:
    """List stuck executions, fan-outs and repeatedly failing delegations."""
    db = _database(settings)
    cutoff = int(time.time()) - older_than
    found = False

    stuck = db.execute(
        """SELECT execution_id, agent_id, user_address, started_at FROM executions
           WHERE result = 'PENDING' AND started_at < ? ORDER BY started_at""",
        (cutoff,),
    )
    if stuck:
        found = True
        table = Table(title="Executions pending too long")
        table.add_column("ID", style="cyan")
        table.add_column("Agent")
        table.add_column("User")
        table.add_column("Started")
        for r in stuck:
            table.add_row(
                str(r["execution_id"]),
                str(r["agent_id"]),
                r["user_address"][:10],
                time.strftime("%Y-%m-%d %H:%M", time.gmtime(r["started_at"])),
            )
        console.print(table)

    fanouts = db.execute(
        """SELECT permission_id, user_address, claimed_at FROM fanout_claims
           WHERE status = 'in_progress' AND claimed_at < ?""",
        (cutoff,),
    )
    for r in fanouts:
        found = True
        console.print(
            f"[yellow]Fan-out {r['permission_id']} for {r['user_address'][:10]} "
            f"never finished[/yellow]"
        )

    for name, key in (("permission_grants", "permission_id"), ("a2a_delegations", "delegation_hash")):
        failing = db.execute(
            f"""SELECT {key} AS key, attempts, last_error FROM {name}
                WHERE status = 'pending' AND attempts >= ?""",
            (settings.max_retries,),
        )
        for r in failing:
            found = True
            console.print(
                f"[red]{name} {r['key'][:18]} failed {r['attempts']}x:[/red] {r['last_error']}"
            )

    if not found:
        console.print("[green]No anomalies found.[/green]")


@main.command()
@click.pass_obj
def expire(settings: Settings) -> None:
    """Mark pending grants and delegations past their expiry as expired."""
    from echelon.delegation.store import DelegationStore

    async def _expire() -> dict[str, int]:
        async with DelegationStore(settings.db_path) as store:
            return await store.expire_stale()

    counts = asyncio.run(_expire())
    console.print(
        f"Expired {counts.get('grant', 0)} grant(s) and {counts.get('a2a', 0)} A2A delegation(s)."
    )


@main.command("oracle-status")
@click.pass_obj
def oracle_status(settings: Settings) -> None:
    """Show persisted oracle sync progress."""
    from echelon.oracle.sync import SyncState

    state = SyncState.load(settings.oracle_state_path)
    if not state.last_sync_time:
        console.print("[dim]Oracle has never been synced.[/dim]")
        return
    console.print(
        f"[bold]Last sync:[/bold] "
        f"{time.strftime('%Y-%m-%d %H:%M:%S', time.gmtime(state.last_sync_time))} UTC"
    )
    console.print(f"[bold]Block:[/bold] {state.last_sync_block}")
    console.print(f"[bold]Agents synced:[/bold] {state.agents_synced}")
    console.print(f"[bold]Errors:[/bold] {state.errors}")


@main.command()
@click.option("--users", default=3, help="Users granting a permission per round")
@click.option("--amount", default=100.0, help="USDC per permission")
@click.option("--rounds", default=1, help="Rounds of permissions")
@click.option("--seed", type=int, default=None, help="Seed for the trade simulator")
@click.option("--paced", is_flag=True, help="Keep the real inter-call and execution delays")
@click.pass_obj
def simulate(
    settings: Settings, users: int, amount: float, rounds: int, seed: int | None, paced: bool
) -> None:
    """Run the full pipeline against an in-process chain."""
    from echelon.config import ONE_USDC
    from echelon.simulation import fast_settings, run_simulation

    _database(settings)
    run_settings = settings if paced else fast_settings(settings)
    report = asyncio.run(
        run_simulation(
            run_settings,
            users=users,
            amount=int(amount * ONE_USDC),
            rounds=rounds,
            seed=seed,
        )
    )

    funded = sum(a.funded for allocs in report.allocations.values() for a in allocs)
    total = sum(len(allocs) for allocs in report.allocations.values())
    console.print(
        f"[bold cyan]Simulation:[/bold cyan] {len(report.allocations)} permission(s), "
        f"{funded}/{total} allocations funded, {report.events} chain events"
    )

    table = Table(title="Agents after simulation")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Score", justify="right")
    table.add_column("Executions", justify="right")
    table.add_column("Win rate", justify="right")
    table.add_column("P&L", justify="right")
    for a in report.agents:
        table.add_row(
            str(a.agent_id),
            a.name,
            _score_cell(a.reputation_score),
            str(a.total_executions),
            f"{a.win_rate:.0%}",
            format_amount(a.total_profit_loss),
        )
    console.print(table)
    console.print(
        f"Volume {format_amount(report.stats.total_volume)} | "
        f"Profit {format_amount(report.stats.total_profit)} | "
        f"Oracle scores written: {report.oracle_synced}"
    )
