"""Reputation scoring for trading agents.

Canonical score (0-100, integer) is a weighted blend of five components:

    winRate 0.35 + profitability 0.25 + volume 0.15 + experience 0.15
    + efficiency 0.10

Agents with fewer than ``MIN_EXECUTIONS_FOR_SCORE`` executions report the
neutral 50. ``display_breakdown`` renders the older four-bucket view
(40/25/25/10 points) used by dashboards; it never feeds the stored score.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Final

# ═══════════════════════════════════════════════════════════════════════════
# CONSTANTS
# ═══════════════════════════════════════════════════════════════════════════

NEUTRAL_SCORE: Final = 50
MIN_EXECUTIONS_FOR_SCORE: Final = 5

WEIGHT_WIN_RATE: Final = 0.35
WEIGHT_PROFITABILITY: Final = 0.25
WEIGHT_VOLUME: Final = 0.15
WEIGHT_EXPERIENCE: Final = 0.15
WEIGHT_EFFICIENCY: Final = 0.10

# Volume thresholds in base units (1 and 1000 tokens at 18 decimals).
MIN_VOLUME: Final = 1e18
MAX_VOLUME: Final = 1e21

EFFICIENCY_UNIT: Final = 1e17
SECONDS_PER_DAY: Final = 86_400


# ═══════════════════════════════════════════════════════════════════════════
# DATA STRUCTURES
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ReputationInput:
    """Aggregate execution history the score is computed from."""

    win_rate: float
    total_volume: float
    profit_loss: float
    execution_count: int
    avg_profit_per_trade: float


@dataclass(frozen=True)
class ScoreComponents:
    """Per-component scores, each in [0, 100]."""

    win_rate: float
    profitability: float
    volume: float
    experience: float
    efficiency: float
    score: int
    is_neutral: bool


@dataclass(frozen=True)
class DisplayBreakdown:
    """Four-bucket point breakdown (max 40/25/25/10)."""

    win_rate_points: float
    volume_points: float
    profit_points: float
    consistency_points: float
    total: int
    is_neutral: bool


@dataclass(frozen=True)
class ScoreTier:
    tier: str
    label: str
    recommendation: str
    min_score: int


SCORE_TIERS: Final = (
    ScoreTier("excellent", "Excellent", "Safe for larger delegations", 80),
    ScoreTier("good", "Good", "Standard delegations", 60),
    ScoreTier("fair", "Fair", "Small trial delegations", 40),
    ScoreTier("poor", "Poor", "Use caution", 20),
    ScoreTier("critical", "Critical", "Not recommended", 0),
)


# ═══════════════════════════════════════════════════════════════════════════
# COMPONENTS
# ═══════════════════════════════════════════════════════════════════════════


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values (``round`` is banker's)."""
    return math.floor(value + 0.5)


def win_rate_score(win_rate: float) -> float:
    if win_rate < 0.3:
        score = win_rate * 100
    elif win_rate < 0.5:
        score = 30 + (win_rate - 0.3) * 100
    elif win_rate < 0.7:
        score = 50 + (win_rate - 0.5) * 150
    else:
        score = 80 + (win_rate - 0.7) * 66.67
    return clamp(score)


def profitability_score(profit_loss: float, total_volume: float) -> float:
    if total_volume == 0:
        return 50.0
    roi = profit_loss / total_volume * 100
    return clamp(50 + roi * 5)


def volume_score(total_volume: float) -> float:
    if total_volume < MIN_VOLUME:
        return 0.0
    if total_volume > MAX_VOLUME:
        return 100.0
    span = math.log10(MAX_VOLUME) - math.log10(MIN_VOLUME)
    return clamp((math.log10(total_volume) - math.log10(MIN_VOLUME)) / span * 100)


def experience_score(execution_count: int) -> float:
    return clamp(math.sqrt(execution_count / 100) * 100)


def efficiency_score(avg_profit_per_trade: float) -> float:
    return clamp(50 + (avg_profit_per_trade / EFFICIENCY_UNIT) * 1000)


def score_components(
    data: ReputationInput, min_executions: int = MIN_EXECUTIONS_FOR_SCORE
) -> ScoreComponents:
    """Compute every component and the final score for ``data``."""
    if data.execution_count == 0 or data.execution_count < min_executions:
        return ScoreComponents(0.0, 0.0, 0.0, 0.0, 0.0, NEUTRAL_SCORE, True)

    w = win_rate_score(data.win_rate)
    p = profitability_score(data.profit_loss, data.total_volume)
    v = volume_score(data.total_volume)
    e = experience_score(data.execution_count)
    f = efficiency_score(data.avg_profit_per_trade)
    weighted = (
        WEIGHT_WIN_RATE * w
        + WEIGHT_PROFITABILITY * p
        + WEIGHT_VOLUME * v
        + WEIGHT_EXPERIENCE * e
        + WEIGHT_EFFICIENCY * f
    )
    return ScoreComponents(w, p, v, e, f, round_half_up(clamp(weighted)), False)


def calculate_reputation_score(
    data: ReputationInput, min_executions: int = MIN_EXECUTIONS_FOR_SCORE
) -> int:
    """Integer reputation score in [0, 100]."""
    return score_components(data, min_executions).score


def display_breakdown(
    data: ReputationInput, min_executions: int = MIN_EXECUTIONS_FOR_SCORE
) -> DisplayBreakdown:
    """Dashboard view: win rate 40, volume 25, profit 25, consistency 10 points."""
    if data.execution_count < min_executions:
        return DisplayBreakdown(0.0, 0.0, 0.0, 0.0, NEUTRAL_SCORE, True)

    win_points = min(40.0, data.win_rate * 40)
    volume_points = min(25.0, math.log10(max(data.total_volume, 0) / 1e18 + 1) * 8)
    if data.profit_loss > 0:
        ratio = data.profit_loss / data.total_volume if data.total_volume > 0 else 0.0
        profit_points = min(25.0, ratio * 250)
    else:
        ratio = abs(data.profit_loss) / data.total_volume if data.total_volume > 0 else 0.0
        profit_points = max(0.0, 12.5 - ratio * 125)
    consistency_points = min(10.0, math.log10(data.execution_count + 1) * 4)
    total = round_half_up(
        clamp(win_points + volume_points + profit_points + consistency_points)
    )
    return DisplayBreakdown(
        win_points, volume_points, profit_points, consistency_points, total, False
    )


# ═══════════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════════


def get_score_tier(score: int) -> ScoreTier:
    for tier in SCORE_TIERS:
        if score >= tier.min_score:
            return tier
    return SCORE_TIERS[-1]


def calculate_win_rate(successes: int, total: int) -> float:
    if total == 0:
        return 0.0
    return successes / total


def day_id(timestamp: int) -> int:
    """Days since the Unix epoch."""
    return timestamp // SECONDS_PER_DAY


def day_date(timestamp: int) -> str:
    """``YYYY-MM-DD`` (UTC) for a Unix timestamp."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")


def running_max_drawdown(
    current: float,
    cumulative_profit_before: float,
    trade_profit_loss: float,
    volume_before: float,
) -> float:
    """
    Update a max-drawdown estimate (0-1) after one trade.

    Peak equity is approximated as positive cumulative profit plus traded
    volume; only losing trades can deepen the drawdown.
    """
    if trade_profit_loss >= 0:
        return current
    peak = max(0.0, cumulative_profit_before) + volume_before
    if peak <= 0:
        return current
    drawdown = -trade_profit_loss / peak
    return max(current, min(1.0, drawdown))


def max_drawdown(values: list[float]) -> float:
    """Largest peak-to-trough fall over an equity series, as a fraction of the peak."""
    if len(values) < 2:
        return 0.0
    worst = 0.0
    peak = values[0]
    for value in values:
        peak = max(peak, value)
        if peak > 0:
            worst = max(worst, (peak - value) / peak)
    return worst


def simplified_sharpe(
    avg_profit_per_trade: float,
    total_volume: float,
    execution_count: int,
    win_rate: float,
    risk_free_rate: float = 0.02,
) -> float:
    """Annualised Sharpe estimate from aggregates, clamped to [-3, 3]."""
    if execution_count < MIN_EXECUTIONS_FOR_SCORE or total_volume == 0:
        return 0.0
    avg_trade_size = total_volume / execution_count
    mean_return = avg_profit_per_trade / avg_trade_size
    std_dev = math.sqrt(win_rate * (1 - win_rate)) * abs(mean_return) + 0.01
    annual_return = mean_return * 250
    annual_std = std_dev * math.sqrt(250)
    return clamp((annual_return - risk_free_rate) / annual_std, -3.0, 3.0)
