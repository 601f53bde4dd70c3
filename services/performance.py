"""
Period performance and risk figures derived from the daily history.
"""

import logging
from dataclasses import dataclass, field
from itertools import groupby
from typing import Dict, List, Optional, Sequence

import numpy as np

from services.history import HistoryPoint

logger = logging.getLogger(__name__)

MONTH_LABELS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]


@dataclass
class PeriodPerformance:
    """Gain and ROI over one year or month."""
    period: str  # "2024" or "Mar"
    full_period: str  # "2024" or "2024-03"
    gain: float
    roi: float  # Percent
    invested: float  # At period end
    value: float  # At period end


@dataclass
class PerformanceReport:
    yearly: List[PeriodPerformance] = field(default_factory=list)
    monthly: Dict[str, List[PeriodPerformance]] = field(default_factory=dict)


@dataclass
class RiskMetrics:
    """Risk figures of the contribution-adjusted daily return series."""
    volatility: float = 0.0  # Annualized, percent
    max_drawdown: float = 0.0  # Percent, <= 0
    sharpe_ratio: float = 0.0


def period_performance(
    period: str,
    full_period: str,
    start: Optional[HistoryPoint],
    end: HistoryPoint
) -> PeriodPerformance:
    """
    Gain between two points net of new contributions.

    gain = (end.value - start.value) - (end.invested - start.invested)
    roi  = gain / average(start.invested, end.invested) * 100, or 0 when that average is not positive
    A missing start point counts as zero invested and zero value.
    """
    start_value = start.value if start is not None else 0.0
    start_invested = start.invested if start is not None else 0.0

    gain = (end.value - start_value) - (end.invested - start_invested)
    average_invested = (start_invested + end.invested) / 2
    roi = gain / average_invested * 100 if average_invested > 0 else 0.0

    return PeriodPerformance(
        period=period,
        full_period=full_period,
        gain=gain,
        roi=roi,
        invested=end.invested,
        value=end.value,
    )


def aggregate(points: Sequence[HistoryPoint]) -> PerformanceReport:
    """
    Bucket history points into yearly and per-year monthly performance.

    A year is measured from the last point of the previous calendar year (zero
    if there is none). A month is measured from the last point strictly before
    its first point, wherever that falls.
    """
    ordered = sorted(points, key=lambda p: p.date)
    report = PerformanceReport()
    if not ordered:
        return report

    year_ends: Dict[int, HistoryPoint] = {}
    for year, year_points in groupby(ordered, key=lambda p: p.date.year):
        year_ends[year] = list(year_points)[-1]

    position = 0
    for year, year_iter in groupby(ordered, key=lambda p: p.date.year):
        year_points = list(year_iter)
        report.yearly.append(
            period_performance(str(year), str(year), year_ends.get(year - 1), year_points[-1])
        )

        months = []
        for month, month_iter in groupby(year_points, key=lambda p: p.date.month):
            month_points = list(month_iter)
            anchor = _last_before(ordered, position, month_points[0])
            months.append(period_performance(
                MONTH_LABELS[month - 1],
                f"{year}-{month:02d}",
                anchor,
                month_points[-1],
            ))
            position += len(month_points)
        report.monthly[str(year)] = months

    return report


def _last_before(ordered: Sequence[HistoryPoint], index: int, first: HistoryPoint) -> Optional[HistoryPoint]:
    """Last point dated strictly before first, searching back from index."""
    cursor = index - 1
    while cursor >= 0:
        if ordered[cursor].date < first.date:
            return ordered[cursor]
        cursor -= 1
    return None


def risk_metrics(
    points: Sequence[HistoryPoint],
    risk_free_rate: float = 0.02,
    periods_per_year: int = 365
) -> RiskMetrics:
    """
    Volatility, maximum drawdown and Sharpe ratio of the history.

    Daily returns strip out contributions: r_t = (dV_t - dI_t) / V_{t-1}.
    Days with a non-positive starting value are ignored. Fewer than two
    usable returns yield all zeros.
    """
    if len(points) < 3:
        return RiskMetrics()

    ordered = sorted(points, key=lambda p: p.date)
    values = np.array([p.value for p in ordered], dtype=float)
    invested = np.array([p.invested for p in ordered], dtype=float)

    previous = values[:-1]
    flows = np.diff(invested)
    with np.errstate(divide='ignore', invalid='ignore'):
        returns = (np.diff(values) - flows) / previous
    returns = returns[(previous > 0) & np.isfinite(returns)]

    if len(returns) < 2:
        logger.info("Insufficient history for risk metrics")
        return RiskMetrics()

    std_return = np.std(returns)
    volatility = std_return * np.sqrt(periods_per_year) * 100

    growth = np.cumprod(1 + returns)
    peaks = np.maximum.accumulate(growth)
    max_drawdown = float(np.min(growth / peaks - 1) * 100)

    sharpe = 0.0
    if std_return > 0:
        excess = np.mean(returns) - risk_free_rate / periods_per_year
        sharpe = float(excess / std_return * np.sqrt(periods_per_year))

    return RiskMetrics(
        volatility=round(float(volatility), 2),
        max_drawdown=round(min(max_drawdown, 0.0), 2),
        sharpe_ratio=round(sharpe, 2),
    )
