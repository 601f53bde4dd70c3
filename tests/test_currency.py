import logging

import pytest

from services.currency import CurrencyConverter, RateCache
from tests.conftest import FakeMarketData


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_same_currency_is_one_without_lookup():
    market = FakeMarketData()
    converter = CurrencyConverter(market.fx_quote, RateCache())

    assert converter.rate("EUR", "EUR") == 1.0
    assert market.fx_calls == []


def test_direct_quote_is_cached_until_ttl_expires():
    clock = FakeClock()
    market = FakeMarketData(fx={("USD", "EUR"): 0.9})
    converter = CurrencyConverter(market.fx_quote, RateCache(ttl_seconds=3600, clock=clock))

    assert converter.rate("USD", "EUR") == pytest.approx(0.9)
    assert converter.rate("USD", "EUR") == pytest.approx(0.9)
    assert market.fx_calls == [("USD", "EUR")]

    clock.now = 3600
    market.fx[("USD", "EUR")] = 0.95
    assert converter.rate("USD", "EUR") == pytest.approx(0.95)
    assert len(market.fx_calls) == 2


def test_cache_keys_concatenate_codes():
    cache = RateCache()
    cache.set("USD", "EUR", 0.9)

    assert RateCache.key("USD", "EUR") == "USDEUR"
    assert cache.get("USD", "EUR") == 0.9
    assert cache.get("EUR", "USD") is None
    assert len(cache) == 1


@pytest.mark.parametrize("direct", [None, RuntimeError("rate limited")])
def test_inverse_quote_fallback(direct):
    market = FakeMarketData(fx={("CHF", "EUR"): direct, ("EUR", "CHF"): 0.8})
    cache = RateCache()
    converter = CurrencyConverter(market.fx_quote, cache)

    assert converter.rate("CHF", "EUR") == pytest.approx(1.25)
    assert cache.get("CHF", "EUR") == pytest.approx(1.25)
    assert not converter.degradations


def test_unresolvable_pair_degrades_to_one(caplog):
    market = FakeMarketData()
    cache = RateCache()
    converter = CurrencyConverter(market.fx_quote, cache)

    with caplog.at_level(logging.WARNING, logger="services.currency"):
        assert converter.rate("XAU", "EUR") == 1.0

    assert converter.degraded_pairs() == ["XAU->EUR"]
    assert len(cache) == 0
    record = [r for r in caplog.records if getattr(r, "event", None) == "fx_rate_degraded"][0]
    assert record.from_currency == "XAU"
    assert record.to_currency == "EUR"


def test_pence_converts_as_hundredth_of_pound():
    market = FakeMarketData(fx={("GBP", "EUR"): 1.2})
    converter = CurrencyConverter(market.fx_quote, RateCache())

    assert converter.rate("GBX", "EUR") == pytest.approx(0.012)
    assert converter.rate("GBp", "GBP") == pytest.approx(0.01)
    assert converter.convert(500, "GBX", "EUR") == pytest.approx(6.0)


def test_rates_for_snapshot():
    market = FakeMarketData(fx={("GBP", "USD"): 1.27, ("GBP", "EUR"): 1.17})
    converter = CurrencyConverter(market.fx_quote, RateCache())

    assert converter.rates_for("GBP") == {"to_usd": pytest.approx(1.27), "to_eur": pytest.approx(1.17)}


def test_degradations_are_bounded():
    converter = CurrencyConverter(FakeMarketData().fx_quote, RateCache(), max_degradations=3)

    for code in ("AAA", "BBB", "CCC", "DDD", "EEE"):
        converter.rate(code, "EUR")

    assert len(converter.degradations) == 3
    assert converter.degradation_count == 5
    assert converter.degraded_pairs() == ["CCC->EUR", "DDD->EUR", "EEE->EUR"]
    assert converter.degraded_pairs(since=4) == ["EEE->EUR"]
    assert converter.degraded_pairs(since=5) == []

    converter.reset_degradations()
    assert converter.degraded_pairs() == []
