import json

import pytest

from repositories import AssetRepository, PortfolioRepository
from services.adjustments import apply_adjustments, implied_exchange_rate, parse_symbol, parse_units


@pytest.mark.parametrize("label,symbol", [
    ("AAPL - Apple Inc", "AAPL"),
    ("Cellnex Telecom (CLNX.MC)", "CLNX.MC"),
    ("IBE.MC", "IBE.MC"),
    ("Some Long Company Name", None),
    ("", None),
    (None, None),
])
def test_parse_symbol(label, symbol):
    assert parse_symbol(label) == symbol


def test_parse_units():
    assert parse_units(3) == 3.0
    assert parse_units("2.5") == 2.5
    assert parse_units("<0.01") == 0.0
    assert parse_units(None) == 0.0


def test_implied_exchange_rate():
    assert implied_exchange_rate(180.0, 2.0, 100.0) == pytest.approx(0.9)
    assert implied_exchange_rate(180.0, 0.0, 100.0) is None
    assert implied_exchange_rate(-5.0, 2.0, 100.0) is None
    assert implied_exchange_rate(None, 2.0, 100.0) is None


@pytest.fixture
def portfolio(db):
    AssetRepository.upsert("AAPL", quote_currency="USD", current_price=150.0)
    AssetRepository.upsert("CLNX.MC", quote_currency="EUR", current_price=30.0)
    AssetRepository.upsert("MSFT", quote_currency="USD", current_price=400.0)
    return PortfolioRepository.add(name="Main", currency="EUR")


def test_apply_adjustments_updates_known_assets(portfolio):
    content = json.dumps({"portfolio_summary": [
        {"asset_name": "AAPL - Apple Inc", "current_price": 190.5, "net_value": 350.0,
         "total_investment_units": 2, "positions": []},
        {"asset_name": "Cellnex Telecom (CLNX.MC)", "current_price": "35.2", "net_value": 0.3,
         "total_investment_units": "<0.01"},
        {"asset_name": "Unknown Corp Holdings", "current_price": 10.0},
        {"asset_name": "MSFT", "current_price": "n/a"},
    ]})

    result = apply_adjustments(portfolio.id, content)

    assert result.success
    assert result.data.updated == 2
    assert result.data.skipped == ["Unknown Corp Holdings", "MSFT"]

    apple = AssetRepository.get_by_symbol("AAPL")
    assert apple.current_price == pytest.approx(190.5)
    assert apple.exchange_rate_to_usd == pytest.approx(350.0 / (2 * 190.5))
    cellnex = AssetRepository.get_by_symbol("CLNX.MC")
    assert cellnex.current_price == pytest.approx(35.2)
    assert cellnex.exchange_rate_to_usd is None
    assert AssetRepository.get_by_symbol("MSFT").current_price == pytest.approx(400.0)


def test_apply_adjustments_rejects_bad_payloads(portfolio):
    assert not apply_adjustments(portfolio.id, "{not json").success

    missing = apply_adjustments(portfolio.id, json.dumps({"assets": []}))
    assert not missing.success
    assert "portfolio_summary" in missing.error


def test_apply_adjustments_unknown_portfolio(db):
    result = apply_adjustments(404, json.dumps({"portfolio_summary": []}))

    assert not result.success
    assert result.error == "Portfolio not found"
