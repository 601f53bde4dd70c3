"""
Rule-based rebalancing advisor.

Compares the equity / fixed-income split of a set of positions with the
benchmark range of a risk profile and suggests moving money when the split is
more than a threshold away from the range midpoint. Cash counts as fixed income.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from services.performance import RiskMetrics

logger = logging.getLogger(__name__)

THRESHOLD_PERCENT = 5.0

EQUITY_LABEL = "Renta Variable (Equity)"
FIXED_LABEL = "Renta Fija (Fixed/Cash)"

EQUITY_CLASSES = frozenset({"EQUITY", "STOCK", "ETF"})
FIXED_CLASSES = frozenset({"FIXED_INCOME", "BOND"})
CASH_CLASSES = frozenset({"CASH"})


class RiskProfile(str, Enum):
    CONSERVATIVE = "Conservative"
    MODERATE = "Moderate"
    BALANCED = "Balanced"
    DYNAMIC = "Dynamic"
    AGGRESSIVE = "Aggressive"


@dataclass(frozen=True)
class AllocationRange:
    fixed: Tuple[float, float]  # (min %, max %)
    equity: Tuple[float, float]


BENCHMARK_ALLOCATION: Dict[RiskProfile, AllocationRange] = {
    RiskProfile.CONSERVATIVE: AllocationRange(fixed=(80, 100), equity=(0, 20)),
    RiskProfile.MODERATE: AllocationRange(fixed=(65, 80), equity=(20, 35)),
    RiskProfile.BALANCED: AllocationRange(fixed=(40, 60), equity=(40, 60)),
    RiskProfile.DYNAMIC: AllocationRange(fixed=(20, 35), equity=(65, 80)),
    RiskProfile.AGGRESSIVE: AllocationRange(fixed=(0, 20), equity=(80, 100)),
}


@dataclass
class AllocationPosition:
    """A value held in one asset class, already in the report currency."""
    asset_class: str
    value: float
    symbol: Optional[str] = None


@dataclass
class PortfolioStats:
    total_value: float
    allocation: Dict[str, float]  # equity / fixed / cash / other, percent of total
    risk_metrics: RiskMetrics = field(default_factory=RiskMetrics)


@dataclass
class RebalancingRecommendation:
    action: str  # "BUY" or "SELL"
    asset_class: str
    amount: float
    reason: str


def classify(asset_class: Optional[str]) -> str:
    """Map an asset class code onto equity / fixed / cash / other."""
    code = (asset_class or "EQUITY").upper()
    if code in EQUITY_CLASSES:
        return "equity"
    if code in FIXED_CLASSES:
        return "fixed"
    if code in CASH_CLASSES:
        return "cash"
    return "other"


def resolve_profile(profile) -> RiskProfile:
    """Accept a RiskProfile or its name (case-insensitive)."""
    if isinstance(profile, RiskProfile):
        return profile
    for candidate in RiskProfile:
        if candidate.value.lower() == str(profile).strip().lower():
            return candidate
    raise ValueError(f"Unknown risk profile: {profile}")


def calculate_portfolio_stats(
    positions: Iterable[AllocationPosition],
    metrics: Optional[RiskMetrics] = None
) -> PortfolioStats:
    """Aggregate positions into asset-class allocation percentages."""
    totals = {"equity": 0.0, "fixed": 0.0, "cash": 0.0, "other": 0.0}
    for position in positions:
        totals[classify(position.asset_class)] += position.value

    total_value = sum(totals.values())
    allocation = {
        bucket: (value / total_value * 100) if total_value > 0 else 0.0
        for bucket, value in totals.items()
    }
    return PortfolioStats(
        total_value=total_value,
        allocation=allocation,
        risk_metrics=metrics or RiskMetrics(),
    )


def _recommend(
    label: str,
    current: float,
    bounds: Tuple[float, float],
    total_value: float,
    threshold: float
) -> Optional[RebalancingRecommendation]:
    low, high = bounds
    target = (low + high) / 2
    diff = target - current
    if abs(diff) <= threshold:
        return None

    if diff > 0:
        action, direction = "BUY", "below"
    else:
        action, direction = "SELL", "above"
    return RebalancingRecommendation(
        action=action,
        asset_class=label,
        amount=abs(diff) / 100 * total_value,
        reason=f"Current {current:.1f}% is {direction} target range ({low:g}-{high:g}%)",
    )


def generate_rebalancing_recommendations(
    stats: PortfolioStats,
    profile,
    threshold: float = THRESHOLD_PERCENT
) -> List[RebalancingRecommendation]:
    """
    Suggest BUY/SELL moves per asset class for a risk profile.

    Args:
        stats: Output of calculate_portfolio_stats
        profile: RiskProfile or its name
        threshold: Percentage points of tolerated drift from the range midpoint

    Returns:
        Recommendations (equity first), empty when the allocation is close enough
    """
    benchmark = BENCHMARK_ALLOCATION[resolve_profile(profile)]
    current_equity = stats.allocation.get("equity", 0.0)
    current_fixed = stats.allocation.get("fixed", 0.0) + stats.allocation.get("cash", 0.0)

    recommendations = []
    for label, current, bounds in (
        (EQUITY_LABEL, current_equity, benchmark.equity),
        (FIXED_LABEL, current_fixed, benchmark.fixed),
    ):
        recommendation = _recommend(label, current, bounds, stats.total_value, threshold)
        if recommendation is not None:
            recommendations.append(recommendation)
    return recommendations
