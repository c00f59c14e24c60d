"""End-to-end tests: every service wired together against the in-process chain."""

import pytest

from echelon.config import ONE_USDC
from echelon.simulation import fast_settings, run_simulation

pytestmark = pytest.mark.anyio


@pytest.fixture
def sim_settings(settings):
    return fast_settings(settings)


class TestSimulation:
    async def test_full_pipeline(self, sim_settings, tmp_path):
        report = await run_simulation(
            sim_settings, users=2, amount=100 * ONE_USDC, seed=7, db_path=tmp_path / "sim.db"
        )

        assert sorted(report.allocations) == ["perm-1-1", "perm-1-2"]
        allocations = [a for allocs in report.allocations.values() for a in allocs]
        assert len(allocations) == 8
        assert all(a.funded for a in allocations)

        assert report.stats.total_redelegations == 8
        assert report.stats.total_permissions == 2
        assert sum(s["executions"] for s in report.engine_stats.values()) == 8
        assert sum(s["redemptions"] for s in report.engine_stats.values()) == 8
        assert sum(s["lost_races"] for s in report.engine_stats.values()) == 0

        specialists = {a.agent_id: a for a in report.agents if a.agent_id != 1}
        assert set(specialists) == {2, 3, 4, 5}
        assert all(a.total_executions == 2 for a in specialists.values())
        assert all(a.pending_executions == 0 for a in specialists.values())

        # five active agents, all still at the neutral score, oracle starts empty
        assert report.oracle_synced == 5
        assert report.events > 0

    async def test_same_seed_same_outcome(self, sim_settings, tmp_path):
        def outcome(report):
            return [
                (a.agent_id, a.successful_executions, a.total_volume_in, a.total_volume_out)
                for a in sorted(report.agents, key=lambda a: a.agent_id)
            ]

        first = await run_simulation(sim_settings, users=1, seed=42, db_path=tmp_path / "a.db")
        second = await run_simulation(sim_settings, users=1, seed=42, db_path=tmp_path / "b.db")
        assert outcome(first) == outcome(second)

    async def test_rounds_use_fresh_users(self, sim_settings, tmp_path):
        report = await run_simulation(
            sim_settings, users=1, rounds=2, seed=1, db_path=tmp_path / "sim.db"
        )
        assert sorted(report.allocations) == ["perm-1-1", "perm-2-1"]
        assert report.stats.total_redelegations == 8
        assert report.stats.total_users == 2
