"""
Asset service: live price refresh and symbol search.

Quotes are fetched in parallel with a bounded thread pool; each symbol's
failure is isolated and reported as its own status. Database writes happen
afterwards, one symbol at a time.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from config import get_settings
from db_engine import get_session
from repositories import AssetRepository, PortfolioRepository, TransactionRepository
from services.common import ServiceResult, major_currency
from services.currency import CurrencyConverter, shared_rate_cache
from services.market_data import MarketDataError, MarketDataService, Quote, SearchCandidate

logger = logging.getLogger(__name__)

STATUS_UPDATED = "updated"
STATUS_NO_DATA = "no_data"
STATUS_ERROR = "error"


@dataclass
class PriceUpdate:
    """Outcome of refreshing one symbol."""
    symbol: str
    status: str
    price: Optional[float] = None
    currency: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PriceRefreshReport:
    results: List[PriceUpdate] = field(default_factory=list)

    @property
    def updated_count(self) -> int:
        return sum(1 for r in self.results if r.status == STATUS_UPDATED)

    def by_status(self, status: str) -> List[str]:
        return [r.symbol for r in self.results if r.status == status]


class AssetService:
    """
    Service for keeping asset prices and FX snapshots current.

    Args:
        market_data: Provider with quote(), search() and fx_quote()
        converter: CurrencyConverter used for the USD/EUR snapshot rates
    """

    def __init__(self, market_data=MarketDataService, converter: Optional[CurrencyConverter] = None):
        self.market_data = market_data
        self.converter = converter or CurrencyConverter(market_data.fx_quote, shared_rate_cache())

    def _fetch_quotes(self, symbols: Sequence[str]) -> Dict[str, object]:
        """Quote every symbol in parallel. Values are a Quote or the exception raised."""
        outcomes: Dict[str, object] = {}
        max_workers = max(1, min(get_settings().market_data_max_workers, len(symbols)))
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_to_symbol = {
                executor.submit(self.market_data.quote, symbol): symbol
                for symbol in symbols
            }
            for future in as_completed(future_to_symbol):
                symbol = future_to_symbol[future]
                try:
                    outcomes[symbol] = future.result()
                except Exception as e:
                    outcomes[symbol] = e
        return outcomes

    def _store(self, symbol: str, quote: Quote) -> PriceUpdate:
        currency = quote.currency.strip() if quote.currency else None
        rates: Dict[str, Optional[float]] = {"to_usd": None, "to_eur": None}
        if currency:
            rates = self.converter.rates_for(major_currency(currency))

        asset = AssetRepository.update_market_data(
            symbol,
            current_price=quote.price,
            name=quote.name,
            quote_currency=currency,
            exchange_rate_to_usd=rates["to_usd"],
            exchange_rate_to_eur=rates["to_eur"],
        )
        if asset is None:
            # Referenced by a transaction but never stored
            AssetRepository.upsert(
                symbol,
                name=quote.name,
                quote_currency=currency,
                current_price=quote.price,
                exchange_rate_to_usd=rates["to_usd"],
                exchange_rate_to_eur=rates["to_eur"],
            )
        logger.info(f"Updated {symbol}: {quote.price} ({currency})")
        return PriceUpdate(symbol=symbol, status=STATUS_UPDATED, price=quote.price, currency=currency)

    def refresh_prices(self, symbols: Sequence[str]) -> PriceRefreshReport:
        """
        Refresh the given symbols. A symbol that fails keeps its stored price.

        Returns:
            PriceRefreshReport with one PriceUpdate per distinct symbol, in input order
        """
        wanted = list(dict.fromkeys(s for s in symbols if s))
        report = PriceRefreshReport()
        if not wanted:
            return report

        outcomes = self._fetch_quotes(wanted)
        for symbol in wanted:
            outcome = outcomes.get(symbol)
            if isinstance(outcome, MarketDataError):
                logger.warning(f"No valid quote for {symbol}: {outcome}")
                report.results.append(PriceUpdate(symbol=symbol, status=STATUS_NO_DATA, error=str(outcome)))
            elif isinstance(outcome, Exception) or outcome is None:
                logger.error(f"Failed to fetch price for {symbol}: {outcome}")
                report.results.append(PriceUpdate(symbol=symbol, status=STATUS_ERROR, error=str(outcome)))
            else:
                try:
                    report.results.append(self._store(symbol, outcome))
                except Exception as e:
                    logger.error(f"Failed to store price for {symbol}: {e}")
                    report.results.append(PriceUpdate(symbol=symbol, status=STATUS_ERROR, error=str(e)))

        logger.info(f"Price refresh finished: {report.updated_count}/{len(wanted)} updated")
        return report

    def update_portfolio_prices(self, portfolio_id: int) -> ServiceResult[PriceRefreshReport]:
        """Refresh every asset referenced by a portfolio's ledger."""
        try:
            with get_session() as session:
                if PortfolioRepository.get_by_id(portfolio_id, session=session) is None:
                    return ServiceResult.fail("Portfolio not found")
                symbols = TransactionRepository.get_symbols_by_portfolio(portfolio_id, session=session)
        except Exception as e:
            logger.error(f"Update prices error for portfolio {portfolio_id}: {e}")
            return ServiceResult.fail("Failed to update prices")

        logger.info(f"Starting price update for portfolio {portfolio_id}: {symbols}")
        return ServiceResult.ok(self.refresh_prices(symbols))

    def update_all_prices(self) -> ServiceResult[PriceRefreshReport]:
        """Refresh every stored asset (used by the scheduled job)."""
        try:
            symbols = [asset.symbol for asset in AssetRepository.get_all()]
        except Exception as e:
            logger.error(f"Update prices error: {e}")
            return ServiceResult.fail("Failed to update prices")
        return ServiceResult.ok(self.refresh_prices(symbols))

    def search_assets(self, query: str) -> ServiceResult[List[SearchCandidate]]:
        """Ticker candidates for a name, ticker or ISIN query."""
        try:
            return ServiceResult.ok(self.market_data.search(query))
        except Exception as e:
            logger.error(f"Search assets error for {query!r}: {e}")
            return ServiceResult.fail("Failed to search assets")
