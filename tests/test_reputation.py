"""Tests for reputation scoring."""

import pytest

from echelon.ledger.reputation import (
    NEUTRAL_SCORE,
    ReputationInput,
    calculate_reputation_score,
    calculate_win_rate,
    day_date,
    day_id,
    display_breakdown,
    efficiency_score,
    experience_score,
    get_score_tier,
    max_drawdown,
    profitability_score,
    round_half_up,
    running_max_drawdown,
    score_components,
    simplified_sharpe,
    volume_score,
    win_rate_score,
)

SEASONED = ReputationInput(
    win_rate=0.8,
    total_volume=1e19,
    profit_loss=5e17,
    execution_count=120,
    avg_profit_per_trade=4.2e15,
)


# ═══════════════════════════════════════════════════════════════════════════
# CANONICAL SCORE
# ═══════════════════════════════════════════════════════════════════════════


class TestCanonicalScore:
    def test_seasoned_agent_scores_78(self):
        assert calculate_reputation_score(SEASONED) == 78

    def test_components(self):
        parts = score_components(SEASONED)
        assert parts.win_rate == pytest.approx(86.667, abs=0.01)
        assert parts.profitability == pytest.approx(75.0)
        assert parts.volume == pytest.approx(33.333, abs=0.01)
        assert parts.experience == 100.0
        assert parts.efficiency == pytest.approx(92.0)
        assert not parts.is_neutral

    def test_no_executions_is_neutral(self):
        data = ReputationInput(0.0, 0.0, 0.0, 0, 0.0)
        parts = score_components(data)
        assert parts.score == NEUTRAL_SCORE
        assert parts.is_neutral

    def test_below_minimum_executions_is_neutral(self):
        data = ReputationInput(1.0, 1e21, 1e20, 4, 1e18)
        assert calculate_reputation_score(data) == 50

    def test_minimum_is_configurable(self):
        data = ReputationInput(1.0, 1e21, 1e20, 4, 1e18)
        assert calculate_reputation_score(data, min_executions=1) > 50

    def test_score_is_bounded(self):
        best = ReputationInput(1.0, 1e24, 1e24, 10_000, 1e20)
        worst = ReputationInput(0.0, 1e18, -1e19, 5, -1e20)
        assert calculate_reputation_score(best) == 100
        assert 0 <= calculate_reputation_score(worst) <= 100


class TestComponents:
    @pytest.mark.parametrize(
        "win_rate,expected",
        [(0.0, 0.0), (0.2, 20.0), (0.3, 30.0), (0.4, 40.0), (0.5, 50.0), (0.6, 65.0), (0.7, 80.0)],
    )
    def test_win_rate_bands(self, win_rate, expected):
        assert win_rate_score(win_rate) == pytest.approx(expected)

    def test_perfect_win_rate_is_clamped(self):
        assert win_rate_score(1.0) == 100.0

    def test_profitability_without_volume_is_neutral(self):
        assert profitability_score(123.0, 0.0) == 50.0

    def test_profitability_clamps_losses(self):
        assert profitability_score(-5e18, 1e19) == 0.0

    def test_volume_thresholds(self):
        assert volume_score(5e17) == 0.0
        assert volume_score(1e18) == 0.0
        assert volume_score(1e20) == pytest.approx(66.667, abs=0.01)
        assert volume_score(1e21) == pytest.approx(100.0)
        assert volume_score(1e23) == 100.0

    def test_experience(self):
        assert experience_score(25) == pytest.approx(50.0)
        assert experience_score(100) == pytest.approx(100.0)
        assert experience_score(400) == 100.0

    def test_efficiency(self):
        assert efficiency_score(0.0) == 50.0
        assert efficiency_score(-1e17) == 0.0
        assert efficiency_score(1e17) == 100.0


class TestRounding:
    def test_half_rounds_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(77.5) == 78
        assert round(2.5) == 2

    def test_below_half_rounds_down(self):
        assert round_half_up(78.283) == 78


# ═══════════════════════════════════════════════════════════════════════════
# DISPLAY BREAKDOWN AND TIERS
# ═══════════════════════════════════════════════════════════════════════════


class TestDisplayBreakdown:
    def test_four_buckets(self):
        shown = display_breakdown(SEASONED)
        assert shown.win_rate_points == pytest.approx(32.0)
        assert shown.volume_points == pytest.approx(8.331, abs=0.01)
        assert shown.profit_points == pytest.approx(12.5)
        assert shown.consistency_points == pytest.approx(8.331, abs=0.01)
        assert shown.total == 61

    def test_never_feeds_canonical_score(self):
        assert display_breakdown(SEASONED).total != calculate_reputation_score(SEASONED)

    def test_loss_reduces_profit_points(self):
        data = ReputationInput(0.5, 1e19, -1e18, 10, 0.0)
        assert display_breakdown(data).profit_points == pytest.approx(0.0)

    def test_neutral_below_minimum(self):
        shown = display_breakdown(ReputationInput(1.0, 1e20, 1e19, 2, 0.0))
        assert shown.is_neutral
        assert shown.total == NEUTRAL_SCORE


class TestScoreTier:
    @pytest.mark.parametrize(
        "score,tier",
        [
            (100, "excellent"),
            (80, "excellent"),
            (79, "good"),
            (60, "good"),
            (59, "fair"),
            (40, "fair"),
            (39, "poor"),
            (20, "poor"),
            (19, "critical"),
            (0, "critical"),
        ],
    )
    def test_boundaries(self, score, tier):
        assert get_score_tier(score).tier == tier

    def test_recommendation_present(self):
        assert get_score_tier(90).recommendation


# ═══════════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════════


class TestHelpers:
    def test_win_rate_without_executions(self):
        assert calculate_win_rate(0, 0) == 0.0
        assert calculate_win_rate(3, 4) == 0.75

    def test_day_bucketing(self):
        ts = 3 * 86_400 + 5
        assert day_id(ts) == 3
        assert day_date(ts) == "1970-01-04"

    def test_max_drawdown(self):
        assert max_drawdown([100.0, 120.0, 90.0, 130.0]) == pytest.approx(0.25)
        assert max_drawdown([100.0]) == 0.0

    def test_running_drawdown_only_deepens_on_losses(self):
        assert running_max_drawdown(0.05, 0.0, 10.0, 100.0) == 0.05
        assert running_max_drawdown(0.05, 0.0, -10.0, 100.0) == pytest.approx(0.1)
        assert running_max_drawdown(0.5, 0.0, -10.0, 100.0) == 0.5

    def test_sharpe_requires_history(self):
        assert simplified_sharpe(10.0, 1000.0, 3, 0.8) == 0.0

    def test_sharpe_is_clamped(self):
        value = simplified_sharpe(50.0, 1000.0, 10, 0.9)
        assert -3.0 <= value <= 3.0
