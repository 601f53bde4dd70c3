import pytest

from services.performance import RiskMetrics
from services.rebalancing import (
    EQUITY_LABEL,
    FIXED_LABEL,
    AllocationPosition,
    RiskProfile,
    calculate_portfolio_stats,
    classify,
    generate_rebalancing_recommendations,
    resolve_profile,
)


@pytest.mark.parametrize("code,bucket", [
    ("EQUITY", "equity"),
    ("etf", "equity"),
    ("STOCK", "equity"),
    ("BOND", "fixed"),
    ("FIXED_INCOME", "fixed"),
    ("CASH", "cash"),
    ("CRYPTO", "other"),
    (None, "equity"),
])
def test_classify(code, bucket):
    assert classify(code) == bucket


def test_stats_percentages():
    positions = [
        AllocationPosition("EQUITY", 600.0, "AAPL"),
        AllocationPosition("BOND", 200.0, "AGGH"),
        AllocationPosition("CASH", 100.0),
        AllocationPosition("CRYPTO", 100.0, "BTC-USD"),
    ]
    metrics = RiskMetrics(volatility=12.0)

    stats = calculate_portfolio_stats(positions, metrics)

    assert stats.total_value == pytest.approx(1000.0)
    assert stats.allocation == {
        "equity": pytest.approx(60.0),
        "fixed": pytest.approx(20.0),
        "cash": pytest.approx(10.0),
        "other": pytest.approx(10.0),
    }
    assert stats.risk_metrics is metrics


def test_overweight_equity_on_balanced_profile():
    stats = calculate_portfolio_stats([
        AllocationPosition("EQUITY", 800.0),
        AllocationPosition("CASH", 200.0),
    ])

    recommendations = generate_rebalancing_recommendations(stats, "Balanced")

    assert [(r.action, r.asset_class) for r in recommendations] == [
        ("SELL", EQUITY_LABEL),
        ("BUY", FIXED_LABEL),
    ]
    assert recommendations[0].amount == pytest.approx(300.0)
    assert recommendations[0].reason == "Current 80.0% is above target range (40-60%)"
    assert recommendations[1].amount == pytest.approx(300.0)
    assert recommendations[1].reason == "Current 20.0% is below target range (40-60%)"


def test_no_recommendation_within_threshold():
    stats = calculate_portfolio_stats([
        AllocationPosition("EQUITY", 520.0),
        AllocationPosition("BOND", 480.0),
    ])

    assert generate_rebalancing_recommendations(stats, RiskProfile.BALANCED) == []


def test_conservative_all_cash_portfolio():
    stats = calculate_portfolio_stats([AllocationPosition("CASH", 1000.0)])

    recommendations = generate_rebalancing_recommendations(stats, RiskProfile.CONSERVATIVE)

    assert [(r.action, r.amount) for r in recommendations] == [
        ("BUY", pytest.approx(100.0)),
        ("SELL", pytest.approx(100.0)),
    ]


def test_custom_threshold():
    stats = calculate_portfolio_stats([
        AllocationPosition("EQUITY", 570.0),
        AllocationPosition("BOND", 430.0),
    ])

    assert generate_rebalancing_recommendations(stats, "Balanced") != []
    assert generate_rebalancing_recommendations(stats, "Balanced", threshold=10.0) == []


def test_resolve_profile():
    assert resolve_profile("aggressive") is RiskProfile.AGGRESSIVE
    assert resolve_profile(RiskProfile.DYNAMIC) is RiskProfile.DYNAMIC
    with pytest.raises(ValueError):
        resolve_profile("Reckless")
