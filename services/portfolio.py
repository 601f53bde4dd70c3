"""
Portfolio service: portfolio creation, headline summary, per-asset breakdown,
daily history, period performance, the cross-portfolio risk report and the
optimization prompt.

Market data and FX are injected so the figures can be computed without
network access; every public method returns a ServiceResult.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from config import get_settings
from db_engine import get_session
from models import Asset, Portfolio, Transaction
from prompts import SUPPORTED_LANGUAGES as PROMPT_LANGUAGES, format_amount, render_optimization_prompt
from repositories import AssetRepository, PortfolioRepository, TransactionRepository
from services.accounting import (
    AssetBreakdownRow,
    PortfolioSummary,
    compute_asset_breakdown,
    compute_summary,
)
from services.common import ServiceResult
from services.currency import CurrencyConverter, shared_rate_cache
from services.history import HistoryPoint, build_history, utc_today
from services.market_data import MarketDataService
from services.performance import PerformanceReport, RiskMetrics, aggregate, risk_metrics
from services.rebalancing import (
    BENCHMARK_ALLOCATION,
    EQUITY_LABEL,
    FIXED_LABEL,
    AllocationPosition,
    PortfolioStats,
    RebalancingRecommendation,
    calculate_portfolio_stats,
    generate_rebalancing_recommendations,
    resolve_profile,
)

logger = logging.getLogger(__name__)


class PortfolioNotFound(Exception):
    """Raised internally when a portfolio id does not exist."""


@dataclass
class PortfolioPerformance:
    """Period table plus the risk figures of the same history."""
    report: PerformanceReport
    risk_metrics: RiskMetrics


@dataclass
class RiskReport:
    """Allocation of one or more portfolios against a risk profile."""
    currency: str
    profile: str
    portfolio_ids: List[int]
    stats: PortfolioStats
    recommendations: List[RebalancingRecommendation] = field(default_factory=list)
    positions: List[AllocationPosition] = field(default_factory=list)
    degraded_rates: List[str] = field(default_factory=list)


class PortfolioService:
    """
    Service for portfolio calculations and analysis.
    Each request folds a freshly loaded ledger snapshot; nothing derived is written back.

    Args:
        market_data: Provider with price_series() and fx_quote() (MarketDataService by default)
        converter: CurrencyConverter; defaults to one on the process-wide rate cache
    """

    def __init__(self, market_data=MarketDataService, converter: Optional[CurrencyConverter] = None):
        self.market_data = market_data
        self.converter = converter or CurrencyConverter(market_data.fx_quote, shared_rate_cache())

    # ==================== Loading ====================

    @staticmethod
    def _load(portfolio_id: int) -> Tuple[Portfolio, List[Transaction], Dict[str, Asset]]:
        """Portfolio, its ordered ledger and the assets it references, from one session."""
        with get_session() as session:
            portfolio = PortfolioRepository.get_by_id(portfolio_id, session=session)
            if portfolio is None:
                raise PortfolioNotFound(f"Portfolio {portfolio_id} not found")
            transactions = TransactionRepository.get_by_portfolio(portfolio_id, session=session)
            symbols = [tx.asset_symbol for tx in transactions if tx.asset_symbol]
            assets = AssetRepository.get_by_symbols(symbols, session=session)
        return portfolio, transactions, {asset.symbol: asset for asset in assets}

    def _fetch_price_series(self, symbols: Sequence[str], start: date, end: date) -> Dict[str, Dict[str, float]]:
        """
        Historical closes for every symbol, fetched in parallel.
        A symbol whose fetch fails gets an empty series; the others are unaffected.
        """
        if not symbols:
            return {}

        series: Dict[str, Dict[str, float]] = {}
        max_workers = max(1, min(get_settings().market_data_max_workers, len(symbols)))
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_to_symbol = {
                executor.submit(self.market_data.price_series, symbol, start, end): symbol
                for symbol in symbols
            }
            for future in as_completed(future_to_symbol):
                symbol = future_to_symbol[future]
                try:
                    series[symbol] = future.result() or {}
                except Exception as e:
                    logger.warning(f"Historical prices for {symbol} unavailable: {e}")
                    series[symbol] = {}
        return series

    def _history(
        self,
        transactions: List[Transaction],
        assets: Dict[str, Asset],
        currency: str,
        today: Optional[date] = None
    ) -> List[HistoryPoint]:
        if not transactions:
            return []
        end = today or utc_today()
        start = min(tx.transaction_date for tx in transactions).date()
        symbols = sorted({tx.asset_symbol for tx in transactions if tx.asset_symbol})
        series = self._fetch_price_series(symbols, start, end)
        return build_history(transactions, series, assets, currency, fx_rate=self.converter.rate, today=end)

    # ==================== Portfolios ====================

    def create_portfolio(
        self,
        name: str,
        currency: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> ServiceResult[Portfolio]:
        name = (name or "").strip()
        if not name:
            return ServiceResult.fail("Portfolio name is required")
        try:
            portfolio = PortfolioRepository.add(
                name=name,
                currency=currency or get_settings().base_currency,
                user_id=user_id
            )
        except Exception as e:
            logger.error(f"Error creating portfolio {name}: {e}")
            return ServiceResult.fail("Failed to create portfolio")
        logger.info(f"Created portfolio {portfolio.id} ({portfolio.name}, {portfolio.currency})")
        return ServiceResult.ok(portfolio)

    def list_portfolios(self, user_id: Optional[str] = None) -> ServiceResult[List[Portfolio]]:
        try:
            return ServiceResult.ok(PortfolioRepository.get_all(user_id=user_id))
        except Exception as e:
            logger.error(f"Error listing portfolios: {e}")
            return ServiceResult.fail("Failed to list portfolios")

    # ==================== Figures ====================

    def get_portfolio_summary(self, portfolio_id: int) -> ServiceResult[PortfolioSummary]:
        """
        Cash, holdings value, invested capital and gains in the portfolio currency.
        FX pairs that fell back to 1.0 while computing are listed in degraded_rates.
        """
        try:
            portfolio, transactions, assets = self._load(portfolio_id)
            mark = self.converter.degradation_count
            summary = compute_summary(transactions, assets, portfolio.currency, fx_rate=self.converter.rate)
            summary.degraded_rates = self.converter.degraded_pairs(since=mark)
        except PortfolioNotFound as e:
            return ServiceResult.fail(str(e))
        except Exception as e:
            logger.error(f"Error computing summary of portfolio {portfolio_id}: {e}")
            return ServiceResult.fail("Failed to compute portfolio summary")
        return ServiceResult.ok(summary)

    def get_asset_breakdown(
        self,
        portfolio_id: int,
        include_closed: bool = False
    ) -> ServiceResult[List[AssetBreakdownRow]]:
        """Per-asset rows, largest position first."""
        try:
            portfolio, transactions, assets = self._load(portfolio_id)
            rows = compute_asset_breakdown(
                transactions, assets, portfolio.currency,
                fx_rate=self.converter.rate,
                include_closed=include_closed
            )
        except PortfolioNotFound as e:
            return ServiceResult.fail(str(e))
        except Exception as e:
            logger.error(f"Error computing breakdown of portfolio {portfolio_id}: {e}")
            return ServiceResult.fail("Failed to compute asset breakdown")
        return ServiceResult.ok(rows)

    def get_portfolio_history(
        self,
        portfolio_id: int,
        today: Optional[date] = None
    ) -> ServiceResult[List[HistoryPoint]]:
        """Daily invested/value series from the first transaction through today."""
        try:
            portfolio, transactions, assets = self._load(portfolio_id)
            points = self._history(transactions, assets, portfolio.currency, today)
        except PortfolioNotFound as e:
            return ServiceResult.fail(str(e))
        except Exception as e:
            logger.error(f"Error building history of portfolio {portfolio_id}: {e}")
            return ServiceResult.fail("Failed to build portfolio history")
        return ServiceResult.ok(points)

    def get_performance(
        self,
        portfolio_id: int,
        today: Optional[date] = None
    ) -> ServiceResult[PortfolioPerformance]:
        """Yearly and monthly gain/ROI plus volatility, drawdown and Sharpe ratio."""
        try:
            portfolio, transactions, assets = self._load(portfolio_id)
            points = self._history(transactions, assets, portfolio.currency, today)
            performance = PortfolioPerformance(
                report=aggregate(points),
                risk_metrics=risk_metrics(points, risk_free_rate=get_settings().risk_free_rate),
            )
        except PortfolioNotFound as e:
            return ServiceResult.fail(str(e))
        except Exception as e:
            logger.error(f"Error computing performance of portfolio {portfolio_id}: {e}")
            return ServiceResult.fail("Failed to compute performance")
        return ServiceResult.ok(performance)

    # ==================== Risk Management ====================

    def get_risk_report(
        self,
        portfolio_ids: Iterable[int],
        profile=None,
        report_currency: Optional[str] = None,
        today: Optional[date] = None,
        include_risk_metrics: bool = True
    ) -> ServiceResult[RiskReport]:
        """
        Combine several portfolios into one allocation and compare it with a risk profile.

        Open positions and positive cash balances (as CASH) are converted into
        report_currency. Risk metrics come from the summed daily histories.

        Args:
            portfolio_ids: Portfolios to combine
            profile: RiskProfile or its name (defaults to settings.default_risk_profile)
            report_currency: Currency of the report (defaults to settings.base_currency)
            today: Last day of the histories
            include_risk_metrics: Skip the history fetch when False
        """
        settings = get_settings()
        ids = list(dict.fromkeys(portfolio_ids))
        if not ids:
            return ServiceResult.fail("No portfolios selected")
        try:
            risk_profile = resolve_profile(profile or settings.default_risk_profile)
        except ValueError as e:
            return ServiceResult.fail(str(e))
        currency = (report_currency or settings.base_currency).upper()
        mark = self.converter.degradation_count

        try:
            positions: List[AllocationPosition] = []
            combined: Dict[date, List[float]] = {}
            for portfolio_id in ids:
                portfolio, transactions, assets = self._load(portfolio_id)
                rate = self.converter.rate(portfolio.currency, currency)

                rows = compute_asset_breakdown(transactions, assets, portfolio.currency, fx_rate=self.converter.rate)
                for row in rows:
                    if row.quantity > 0:
                        positions.append(AllocationPosition(row.asset_class, row.current_value * rate, row.symbol))

                summary = compute_summary(transactions, assets, portfolio.currency, fx_rate=self.converter.rate)
                if summary.cash_balance > 0:
                    positions.append(AllocationPosition("CASH", summary.cash_balance * rate))

                if include_risk_metrics:
                    for point in self._history(transactions, assets, portfolio.currency, today):
                        totals = combined.setdefault(point.date, [0.0, 0.0])
                        totals[0] += point.invested * rate
                        totals[1] += point.value * rate

            history = [HistoryPoint(day, invested, value) for day, (invested, value) in sorted(combined.items())]
            metrics = risk_metrics(history, risk_free_rate=settings.risk_free_rate) if history else RiskMetrics()
            stats = calculate_portfolio_stats(positions, metrics)
            recommendations = generate_rebalancing_recommendations(
                stats, risk_profile, threshold=settings.rebalance_threshold_percent
            )
        except PortfolioNotFound as e:
            return ServiceResult.fail(str(e))
        except Exception as e:
            logger.error(f"Error building risk report for portfolios {ids}: {e}")
            return ServiceResult.fail("Failed to build risk report")

        return ServiceResult.ok(RiskReport(
            currency=currency,
            profile=risk_profile.value,
            portfolio_ids=ids,
            stats=stats,
            recommendations=recommendations,
            positions=positions,
            degraded_rates=self.converter.degraded_pairs(since=mark),
        ))

    # ==================== Optimization Prompt ====================

    def generate_optimization_prompt(
        self,
        portfolio_ids: Iterable[int],
        profile=None,
        horizon: Optional[str] = None,
        goal: Optional[str] = None,
        restrictions: Optional[str] = None,
        report_currency: Optional[str] = None,
        language: str = "es"
    ) -> ServiceResult[str]:
        """
        Render the portfolio optimization prompt for an external research assistant.

        Open positions of the selected portfolios are merged by symbol and
        converted into report_currency; weights are shares of holdings plus cash.

        Args:
            portfolio_ids: Portfolios to include
            profile: RiskProfile or its name (defaults to settings.default_risk_profile)
            horizon: Investment horizon; a fill-in placeholder when omitted
            goal: Investment goal; a fill-in placeholder when omitted
            restrictions: Free-text restrictions
            report_currency: Currency of the amounts (defaults to settings.base_currency)
            language: Template language ('es' or 'en')
        """
        settings = get_settings()
        ids = list(dict.fromkeys(portfolio_ids))
        if not ids:
            return ServiceResult.fail("No portfolios selected")
        try:
            risk_profile = resolve_profile(profile or settings.default_risk_profile)
        except ValueError as e:
            return ServiceResult.fail(str(e))
        if language not in PROMPT_LANGUAGES:
            return ServiceResult.fail(f"Unsupported prompt language: {language}")
        currency = (report_currency or settings.base_currency).upper()

        try:
            cash = 0.0
            holdings: Dict[str, Dict[str, float]] = {}
            names: Dict[str, str] = {}
            positions: List[AllocationPosition] = []
            for portfolio_id in ids:
                portfolio, transactions, assets = self._load(portfolio_id)
                rate = self.converter.rate(portfolio.currency, currency)

                summary = compute_summary(transactions, assets, portfolio.currency, fx_rate=self.converter.rate)
                cash += summary.cash_balance * rate

                rows = compute_asset_breakdown(transactions, assets, portfolio.currency, fx_rate=self.converter.rate)
                for row in rows:
                    if row.quantity <= 0:
                        continue
                    holding = holdings.setdefault(row.symbol, {"quantity": 0.0, "cost": 0.0, "value": 0.0})
                    holding["quantity"] += row.quantity
                    holding["cost"] += row.total_cost * rate
                    holding["value"] += row.current_value * rate
                    names.setdefault(row.symbol, row.name)
                    positions.append(AllocationPosition(row.asset_class, row.current_value * rate, row.symbol))

            if cash > 0:
                positions.append(AllocationPosition("CASH", cash))
            stats = calculate_portfolio_stats(positions)
            total_capital = cash + sum(h["value"] for h in holdings.values())

            lines = []
            for symbol, holding in sorted(holdings.items(), key=lambda item: item[1]["value"], reverse=True):
                avg_price = holding["cost"] / holding["quantity"]
                weight = holding["value"] / total_capital * 100 if total_capital > 0 else 0.0
                lines.append(
                    f"*   **{symbol} ({names[symbol]}):** {holding['quantity']:.4f} @ "
                    f"{format_amount(avg_price, currency, language)} ({_weight_label(language)}: {weight:.2f}%)"
                )

            equity = stats.allocation["equity"]
            fixed = stats.allocation["fixed"] + stats.allocation["cash"]
            benchmark = BENCHMARK_ALLOCATION[risk_profile]
            text = render_optimization_prompt({
                "profile": risk_profile.value,
                "horizon": horizon,
                "goal": goal,
                "restrictions": restrictions,
                "total_capital": format_amount(total_capital, currency, language),
                "cash": format_amount(cash, currency, language),
                "allocation": f"{EQUITY_LABEL} {equity:.1f}%, {FIXED_LABEL} {fixed:.1f}%",
                "target": (
                    f"{EQUITY_LABEL} {benchmark.equity[0]:g}-{benchmark.equity[1]:g}%, "
                    f"{FIXED_LABEL} {benchmark.fixed[0]:g}-{benchmark.fixed[1]:g}%"
                ),
                "asset_lines": "\n".join(lines) or _no_holdings_label(language),
            }, language=language)
        except PortfolioNotFound as e:
            return ServiceResult.fail(str(e))
        except Exception as e:
            logger.error(f"Error generating optimization prompt for portfolios {ids}: {e}")
            return ServiceResult.fail("Failed to generate optimization prompt")

        logger.info(f"Generated optimization prompt for portfolios {ids} ({risk_profile.value})")
        return ServiceResult.ok(text)


def _weight_label(language: str) -> str:
    return "Peso" if language == "es" else "Weight"


def _no_holdings_label(language: str) -> str:
    return "*   (Sin posiciones abiertas)" if language == "es" else "*   (No open positions)"
