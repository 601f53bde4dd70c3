import pytest
from datetime import datetime

import config
import db_engine
from models import Asset, Transaction
from services.currency import CurrencyConverter, RateCache
from services.market_data import MarketDataError, Quote, SearchCandidate


class FakeMarketData:
    """In-memory stand-in for MarketDataService."""

    def __init__(self, quotes=None, series=None, fx=None, search_results=None):
        self.quotes = quotes or {}
        self.series = series or {}
        self.fx = fx or {}
        self.search_results = search_results or {}
        self.fx_calls = []
        self.search_calls = []

    def quote(self, symbol):
        outcome = self.quotes.get(symbol)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            raise MarketDataError(f"No price available for {symbol}")
        return outcome

    def search(self, query, max_results=8):
        self.search_calls.append(query)
        return [SearchCandidate(symbol=s, name=s) for s in self.search_results.get(query, [])]

    def price_series(self, symbol, start, end):
        outcome = self.series.get(symbol, {})
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def fx_quote(self, from_currency, to_currency):
        self.fx_calls.append((from_currency, to_currency))
        outcome = self.fx.get((from_currency, to_currency))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def db(tmp_path, monkeypatch):
    """Fresh SQLite database per test."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'test.db'}")
    config.reload_settings()
    db_engine.reset_engine()
    db_engine.init_db()
    yield
    db_engine.reset_engine()
    config.reload_settings()


@pytest.fixture
def market_data():
    return FakeMarketData(
        quotes={"AAPL": Quote(symbol="AAPL", price=200.0, currency="USD", name="Apple Inc.")},
        fx={("USD", "EUR"): 0.9, ("EUR", "USD"): 1.1},
    )


@pytest.fixture
def converter(market_data):
    return CurrencyConverter(market_data.fx_quote, RateCache())


@pytest.fixture
def make_tx():
    """Build an unsaved Transaction with sensible defaults."""
    counter = {"id": 0}

    def _make(tx_type, amount, when="2024-01-02", symbol=None, quantity=None, fee=0.0, **extra):
        counter["id"] += 1
        return Transaction(
            id=counter["id"],
            portfolio_id=1,
            transaction_date=datetime.fromisoformat(when),
            transaction_type=tx_type,
            amount=amount,
            currency=extra.pop("currency", "EUR"),
            asset_symbol=symbol,
            quantity=quantity,
            fee=fee,
            **extra
        )

    return _make


@pytest.fixture
def make_asset():
    def _make(symbol, price=None, quote_currency="EUR", **extra):
        return Asset(symbol=symbol, name=extra.pop("name", symbol), quote_currency=quote_currency,
                     current_price=price, **extra)

    return _make
