"""Tests for the FastAPI server."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from echelon.api.server import app
from echelon.config import load_settings
from echelon.simulation import fast_settings, run_simulation

pytestmark = pytest.mark.anyio

SPECIALIST = "0x00000000000000000000000000000000000a1f01"


@pytest.fixture
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home = tmp_path / "echelon"
    monkeypatch.setenv("ECHELON_HOME", str(home))
    return home


@pytest.fixture
async def client(home: Path) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
async def simulated(home: Path) -> None:
    await run_simulation(fast_settings(load_settings()), users=1, seed=5)


async def test_health(client: AsyncClient) -> None:
    response = await client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert "version" in data
    assert "uptime_seconds" in data


async def test_agents_empty(client: AsyncClient) -> None:
    response = await client.get("/api/agents")
    assert response.status_code == 200
    assert response.json() == {"agents": [], "count": 0, "limit": 20, "offset": 0}


async def test_agent_not_found(client: AsyncClient) -> None:
    response = await client.get("/api/agents/9")
    assert response.status_code == 404
    assert (await client.get("/api/agents/9/daily")).status_code == 404


async def test_stats_empty(client: AsyncClient) -> None:
    response = await client.get("/api/stats")
    assert response.status_code == 200
    data = response.json()
    assert data["ledger"]["total_agents"] == 0
    assert "delegations" in data


async def test_delegations_empty(client: AsyncClient) -> None:
    response = await client.get(f"/api/delegations/{SPECIALIST.upper()}")
    assert response.status_code == 200
    data = response.json()
    assert data["address"] == SPECIALIST
    assert data["grants"] == data["incoming"] == data["outgoing"] == []


# --- Score ---


async def test_score(client: AsyncClient) -> None:
    response = await client.post(
        "/api/reputation/score",
        json={
            "win_rate": 0.75,
            "total_volume": 5_000_000_000,
            "profit_loss": 100_000_000,
            "execution_count": 25,
            "avg_profit_per_trade": 2.0,
        },
    )
    assert response.status_code == 200
    data = response.json()
    assert 0 <= data["score"] <= 100
    assert data["score"] >= data["tier"]["min_score"]
    assert set(data) == {"score", "tier", "components", "display"}


async def test_score_neutral(client: AsyncClient) -> None:
    response = await client.post(
        "/api/reputation/score",
        json={"win_rate": 1.0, "total_volume": 1, "profit_loss": 1, "execution_count": 1},
    )
    assert response.json()["score"] == 50


async def test_score_validation(client: AsyncClient) -> None:
    response = await client.post(
        "/api/reputation/score",
        json={"win_rate": 1.5, "total_volume": 1, "profit_loss": 1, "execution_count": 10},
    )
    assert response.status_code == 422


# --- After a simulated run ---


async def test_agents_after_simulation(simulated: None, client: AsyncClient) -> None:
    data = (await client.get("/api/agents")).json()
    assert data["count"] == 5
    assert {a["agent_id"] for a in data["agents"]} == {1, 2, 3, 4, 5}


async def test_agent_detail(simulated: None, client: AsyncClient) -> None:
    response = await client.get("/api/agents/2")
    assert response.status_code == 200
    data = response.json()
    assert data["agent"]["name"] == "AlphaYield"
    assert len(data["recent_executions"]) == 1
    assert data["tier"]["tier"]

    daily = (await client.get("/api/agents/2/daily")).json()
    assert sum(d["executions"] for d in daily["days"]) == 1


async def test_stats_after_simulation(simulated: None, client: AsyncClient) -> None:
    data = (await client.get("/api/stats")).json()
    assert data["ledger"]["total_redelegations"] == 4
    assert data["ledger"]["total_permissions"] == 1


async def test_delegations_after_simulation(simulated: None, client: AsyncClient) -> None:
    data = (await client.get(f"/api/delegations/{SPECIALIST}")).json()
    assert len(data["incoming"]) == 1
    assert data["incoming"][0]["status"] == "redeemed"
