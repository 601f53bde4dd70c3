"""
Market data service for quotes, symbol search, historical closes and FX rates.
Backed by yfinance, with tenacity retry logic for resilience.
Failures surface as exceptions; callers isolate them per symbol.
"""

import yfinance as yf
import pandas as pd
import logging
from datetime import date, timedelta
from dataclasses import dataclass
from typing import Optional, Dict, List

from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

logger = logging.getLogger(__name__)

MIN_SEARCH_LENGTH = 2


class MarketDataError(Exception):
    """Raised when the market-data provider has nothing usable for a symbol."""


@dataclass
class Quote:
    """Latest price of a symbol in its quote currency."""
    symbol: str
    price: float
    currency: Optional[str] = None
    name: Optional[str] = None


@dataclass
class SearchCandidate:
    """One hit from a symbol/ISIN search."""
    symbol: str
    name: str
    exchange: Optional[str] = None
    quote_type: Optional[str] = None


@dataclass
class PricePoint:
    """A daily close."""
    date: date
    close: float


class MarketDataService:
    """
    Service for fetching market data from Yahoo Finance.
    All methods are static so the class itself can be handed around as a provider.
    """

    @staticmethod
    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(Exception),
        reraise=True
    )
    def _fetch_ticker_info(yf_symbol: str) -> Dict:
        """Fetch ticker info with retry logic."""
        ticker = yf.Ticker(yf_symbol)
        return ticker.info

    @staticmethod
    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(Exception),
        reraise=True
    )
    def _fetch_ticker_history(yf_symbol: str, period: str = None, start=None, end=None,
                              interval: str = "1d") -> pd.DataFrame:
        """Fetch ticker history with retry logic."""
        ticker = yf.Ticker(yf_symbol)
        if start and end:
            return ticker.history(start=start, end=end, interval=interval)
        return ticker.history(period=period or "1d", interval=interval)

    @staticmethod
    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(Exception),
        reraise=True
    )
    def _fetch_search_quotes(query: str, max_results: int) -> List[Dict]:
        """Run a Yahoo Finance search with retry logic."""
        return yf.Search(query, max_results=max_results).quotes

    @staticmethod
    def quote(symbol: str) -> Quote:
        """
        Fetch the latest price, currency and display name of a symbol.

        Raises:
            MarketDataError: if no price could be found
        """
        info = MarketDataService._fetch_ticker_info(symbol) or {}

        # Try multiple price fields
        price = info.get('regularMarketPrice') or info.get('currentPrice') or info.get('lastPrice')

        if price is None:
            hist = MarketDataService._fetch_ticker_history(symbol, period="5d")
            if not hist.empty:
                price = hist['Close'].iloc[-1]

        if price is None or pd.isna(price):
            raise MarketDataError(f"No price available for {symbol}")

        return Quote(
            symbol=symbol,
            price=float(price),
            currency=info.get('currency'),
            name=info.get('longName') or info.get('shortName')
        )

    @staticmethod
    def search(query: str, max_results: int = 8) -> List[SearchCandidate]:
        """
        Search tickers by name, ticker or ISIN.
        Queries shorter than two characters return no candidates.
        """
        query = (query or "").strip()
        if len(query) < MIN_SEARCH_LENGTH:
            return []

        quotes = MarketDataService._fetch_search_quotes(query, max_results)
        candidates = []
        for item in quotes or []:
            symbol = item.get('symbol')
            if not symbol:
                continue
            candidates.append(SearchCandidate(
                symbol=symbol,
                name=item.get('longname') or item.get('shortname') or symbol,
                exchange=item.get('exchange'),
                quote_type=item.get('quoteType')
            ))
        return candidates

    @staticmethod
    def historical(symbol: str, start: date, end: date, interval: str = "1d") -> List[PricePoint]:
        """
        Fetch daily closes between start and end (both inclusive).

        Returns:
            Price points in date order; empty when the provider has no data
        """
        # yfinance treats end as exclusive
        hist = MarketDataService._fetch_ticker_history(
            symbol, start=start, end=end + timedelta(days=1), interval=interval
        )
        if hist is None or hist.empty:
            return []

        points = []
        for timestamp, close in hist['Close'].items():
            if pd.isna(close):
                continue
            points.append(PricePoint(date=timestamp.date(), close=float(close)))
        return points

    @staticmethod
    def price_series(symbol: str, start: date, end: date) -> Dict[str, float]:
        """Daily closes keyed by ISO date string."""
        return {
            point.date.isoformat(): point.close
            for point in MarketDataService.historical(symbol, start, end)
        }

    @staticmethod
    def fx_quote(from_currency: str, to_currency: str) -> Optional[float]:
        """
        Quote an exchange rate through the synthetic "{from}{to}=X" symbol.

        Returns:
            The rate, or None when the provider returned nothing usable
        """
        ticker_symbol = f"{from_currency}{to_currency}=X"

        hist = MarketDataService._fetch_ticker_history(ticker_symbol, period="5d")
        if hist is not None and not hist.empty:
            rate = hist['Close'].iloc[-1]
            if not pd.isna(rate) and rate > 0:
                return float(rate)

        # Fallback: try info
        info = MarketDataService._fetch_ticker_info(ticker_symbol) or {}
        rate = info.get('regularMarketPrice') or info.get('previousClose')
        if rate and rate > 0:
            return float(rate)

        logger.warning(f"Could not get exchange rate for {ticker_symbol}")
        return None
