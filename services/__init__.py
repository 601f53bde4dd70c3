"""
Services package for FolioLedger.
Provides core business logic separated from the data layer.
"""

from services.common import ServiceResult
from services.market_data import MarketDataService, MarketDataError
from services.currency import CurrencyConverter, RateCache
from services.accounting import (
    AccountingPolicy,
    DEFAULT_POLICY,
    compute_summary,
    compute_asset_breakdown,
)
from services.history import build_history
from services.performance import aggregate, risk_metrics
from services.rebalancing import (
    RiskProfile,
    calculate_portfolio_stats,
    generate_rebalancing_recommendations,
)
from services.portfolio import PortfolioService
from services.transactions import TransactionService
from services.assets import AssetService
from services.import_etoro import import_etoro_transactions
from services.import_trade_republic import import_trade_republic_pdf
from services.adjustments import apply_adjustments

__all__ = [
    # Common utilities
    'ServiceResult',
    # Market data / FX
    'MarketDataService',
    'MarketDataError',
    'CurrencyConverter',
    'RateCache',
    # Accounting
    'AccountingPolicy',
    'DEFAULT_POLICY',
    'compute_summary',
    'compute_asset_breakdown',
    'build_history',
    'aggregate',
    'risk_metrics',
    # Rebalancing
    'RiskProfile',
    'calculate_portfolio_stats',
    'generate_rebalancing_recommendations',
    # Services
    'PortfolioService',
    'TransactionService',
    'AssetService',
    # Imports
    'import_etoro_transactions',
    'import_trade_republic_pdf',
    'apply_adjustments',
]
