"""FastAPI server for read access to the ledger and delegation store."""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from dataclasses import asdict
from typing import Any

import click
from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from echelon import __version__
from echelon.config import Settings, load_settings
from echelon.delegation.store import DelegationStore
from echelon.ledger.ledger import ReputationLedger
from echelon.ledger.reputation import (
    ReputationInput,
    display_breakdown,
    get_score_tier,
    score_components,
)

app = FastAPI(
    title="Echelon API",
    version=__version__,
    description="Agent reputation ledger and delegation status",
)

_start_time = time.monotonic()

MAX_SAFE_INT = 2**53 - 1


def get_settings() -> Settings:
    """Settings are re-read per request so ``ECHELON_HOME`` changes take effect."""
    return load_settings()


async def get_ledger(
    settings: Settings = Depends(get_settings),
) -> AsyncGenerator[ReputationLedger, None]:
    async with ReputationLedger(settings.db_path, settings.min_executions_for_score) as ledger:
        yield ledger


async def get_store(
    settings: Settings = Depends(get_settings),
) -> AsyncGenerator[DelegationStore, None]:
    async with DelegationStore(settings.db_path) as store:
        yield store


def _amounts_as_text(data: dict[str, Any]) -> dict[str, Any]:
    # wei-scale integers exceed the range JSON clients parse exactly
    return {
        k: str(v) if isinstance(v, int) and not isinstance(v, bool) and abs(v) > MAX_SAFE_INT else v
        for k, v in data.items()
    }


class ScoreRequest(BaseModel):
    win_rate: float = Field(ge=0.0, le=1.0)
    total_volume: float = Field(ge=0.0)
    profit_loss: float
    execution_count: int = Field(ge=0)
    avg_profit_per_trade: float = 0.0


@app.get("/api/health")
async def health() -> dict[str, Any]:
    """Health check."""
    uptime = time.monotonic() - _start_time
    return {"status": "ok", "version": __version__, "uptime_seconds": round(uptime, 1)}


@app.get("/api/agents")
async def list_agents(
    limit: int = 20,
    offset: int = 0,
    active_only: bool = True,
    ledger: ReputationLedger = Depends(get_ledger),
) -> dict[str, Any]:
    """Agent leaderboard ordered by reputation."""
    agents = await ledger.list_agents(active_only=active_only, limit=limit, offset=offset)
    return {
        "agents": [_amounts_as_text(asdict(a)) for a in agents],
        "count": len(agents),
        "limit": limit,
        "offset": offset,
    }


@app.get("/api/agents/{agent_id}")
async def get_agent(agent_id: int, ledger: ReputationLedger = Depends(get_ledger)) -> dict[str, Any]:
    agent = await ledger.get_agent(agent_id)
    if agent is None:
        raise HTTPException(status_code=404, detail=f"agent {agent_id} not found")
    tier = get_score_tier(agent.reputation_score)
    executions = await ledger.executions_for_agent(agent_id, limit=10)
    return {
        "agent": _amounts_as_text(asdict(agent)),
        "tier": asdict(tier),
        "recent_executions": [_amounts_as_text(asdict(e)) for e in executions],
    }


@app.get("/api/agents/{agent_id}/daily")
async def agent_daily(
    agent_id: int, limit: int = 30, ledger: ReputationLedger = Depends(get_ledger)
) -> dict[str, Any]:
    if await ledger.get_agent(agent_id) is None:
        raise HTTPException(status_code=404, detail=f"agent {agent_id} not found")
    days = await ledger.daily_stats(agent_id, limit=limit)
    return {"agent_id": agent_id, "days": [_amounts_as_text(asdict(d)) for d in days]}


@app.get("/api/stats")
async def stats(
    ledger: ReputationLedger = Depends(get_ledger),
    store: DelegationStore = Depends(get_store),
) -> dict[str, Any]:
    """Global ledger counters plus delegation status counts."""
    return {
        "ledger": _amounts_as_text(asdict(await ledger.global_stats())),
        "delegations": await store.stats(),
    }


@app.get("/api/delegations/{address}")
async def delegations(address: str, store: DelegationStore = Depends(get_store)) -> dict[str, Any]:
    """Grants to an agent address and A2A delegations to or from it."""
    grants = await store.grants_for_agent(address)
    incoming = await store.delegations_to(address)
    outgoing = await store.delegations_from(address)
    return {
        "address": address.lower(),
        "grants": [_amounts_as_text(asdict(g)) for g in grants],
        "incoming": [_amounts_as_text(asdict(d)) for d in incoming],
        "outgoing": [_amounts_as_text(asdict(d)) for d in outgoing],
    }


@app.post("/api/reputation/score")
async def compute_score(
    request: ScoreRequest, settings: Settings = Depends(get_settings)
) -> dict[str, Any]:
    """Score arbitrary inputs with the ledger's formula."""
    data = ReputationInput(**request.model_dump())
    parts = score_components(data, settings.min_executions_for_score)
    return {
        "score": parts.score,
        "tier": asdict(get_score_tier(parts.score)),
        "components": asdict(parts),
        "display": asdict(display_breakdown(data, settings.min_executions_for_score)),
    }


@click.command()
@click.option("--port", default=3849, help="Port to listen on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
def main(port: int, host: str) -> None:
    """Start the Echelon API server."""
    import uvicorn

    from echelon.logging_config import setup_logging

    settings = load_settings()
    setup_logging(settings.log_level, json_format=settings.log_json)
    uvicorn.run(app, host=host, port=port, log_config=None)
