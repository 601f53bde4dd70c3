import pytest
from datetime import datetime

from repositories import AssetRepository, PortfolioRepository, TransactionRepository


@pytest.fixture
def portfolio(db):
    return PortfolioRepository.add(name="Main", currency="eur", user_id="u1")


def add_tx(portfolio_id, day, tx_type="DEPOSIT", amount=100.0, **kwargs):
    return TransactionRepository.add(
        portfolio_id=portfolio_id,
        transaction_date=datetime(2024, 1, day),
        transaction_type=tx_type,
        amount=amount,
        currency="EUR",
        **kwargs
    )


class TestPortfolioRepository:

    def test_add_normalizes_currency(self, portfolio):
        assert portfolio.id is not None
        assert portfolio.currency == "EUR"

    def test_get_all_filters_by_owner(self, portfolio):
        PortfolioRepository.add(name="Other", currency="USD", user_id="u2")

        assert [p.name for p in PortfolioRepository.get_all(user_id="u1")] == ["Main"]
        assert len(PortfolioRepository.get_all()) == 2

    def test_delete_cascades_transactions(self, portfolio):
        add_tx(portfolio.id, 1)

        assert PortfolioRepository.delete(portfolio.id)
        assert PortfolioRepository.get_by_id(portfolio.id) is None
        assert TransactionRepository.get_by_portfolio(portfolio.id) == []
        assert not PortfolioRepository.delete(portfolio.id)


class TestAssetRepository:

    def test_upsert_creates_with_defaults(self, db):
        asset = AssetRepository.upsert("AAPL")

        assert asset.name == "AAPL"
        assert asset.quote_currency == "USD"
        assert asset.asset_class == "EQUITY"
        assert asset.updated_at is not None

    def test_upsert_keeps_fields_not_provided(self, db):
        AssetRepository.upsert("AAPL", name="Apple", isin="US0378331005", current_price=150.0)
        asset = AssetRepository.upsert("AAPL", current_price=160.0, name=None)

        assert asset.current_price == 160.0
        assert asset.name == "Apple"
        assert asset.isin == "US0378331005"

    def test_get_by_symbols_ignores_unknown(self, db):
        AssetRepository.upsert("AAPL")
        AssetRepository.upsert("MSFT")

        found = AssetRepository.get_by_symbols(["AAPL", "AAPL", "NOPE", None])

        assert [a.symbol for a in found] == ["AAPL"]

    def test_update_market_data_unknown_symbol(self, db):
        assert AssetRepository.update_market_data("NOPE", current_price=1.0) is None

    def test_migrate_isin_moves_legacy_transactions(self, portfolio):
        AssetRepository.upsert("IE00B4L5Y983", isin="IE00B4L5Y983", current_price=80.0, quote_currency="EUR")
        add_tx(portfolio.id, 2, "BUY", 80.0, asset_symbol="IE00B4L5Y983", quantity=1)

        asset = AssetRepository.migrate_isin("IE00B4L5Y983", "IWDA.AS", name="iShares Core MSCI World")

        assert asset.symbol == "IWDA.AS"
        assert asset.isin == "IE00B4L5Y983"
        assert asset.current_price == 80.0
        assert asset.quote_currency == "EUR"
        assert AssetRepository.get_by_symbol("IE00B4L5Y983") is None
        assert TransactionRepository.get_symbols_by_portfolio(portfolio.id) == ["IWDA.AS"]

    def test_migrate_isin_is_idempotent(self, db):
        AssetRepository.migrate_isin("US0378331005", "AAPL")
        AssetRepository.migrate_isin("US0378331005", "AAPL")

        assert AssetRepository.get_by_isin("US0378331005").symbol == "AAPL"
        assert len(AssetRepository.get_all()) == 1


class TestTransactionRepository:

    def test_get_by_portfolio_orders_by_date_then_insertion(self, portfolio):
        later = add_tx(portfolio.id, 5)
        first = add_tx(portfolio.id, 1)
        second = add_tx(portfolio.id, 1, "WITHDRAWAL", 10.0)

        ledger = TransactionRepository.get_by_portfolio(portfolio.id)

        assert [tx.id for tx in ledger] == [first.id, second.id, later.id]

    def test_get_page_newest_first(self, portfolio):
        for day in range(1, 6):
            add_tx(portfolio.id, day)

        rows, total = TransactionRepository.get_page(portfolio.id, page=2, page_size=2)

        assert total == 5
        assert [tx.transaction_date.day for tx in rows] == [3, 2]

    def test_add_rejects_unknown_type(self, portfolio):
        with pytest.raises(ValueError):
            add_tx(portfolio.id, 1, "TRANSFER")

    def test_replace_resets_missing_fields(self, portfolio):
        tx = add_tx(portfolio.id, 1, "BUY", 100.0, asset_symbol="AAPL", quantity=1, fee=2.0,
                    isin="US0378331005")

        updated = TransactionRepository.replace(tx.id, {
            "transaction_date": datetime(2024, 2, 1),
            "transaction_type": "SELL",
            "amount": 120.0,
            "currency": "EUR",
            "asset_symbol": "AAPL",
            "quantity": 1,
        })

        assert updated.transaction_type == "SELL"
        assert updated.fee == 0.0
        assert updated.isin is None
        assert TransactionRepository.replace(9999, {"transaction_type": "BUY"}) is None

    def test_delete_by_portfolio_counts(self, portfolio):
        add_tx(portfolio.id, 1)
        add_tx(portfolio.id, 2)

        assert TransactionRepository.delete_by_portfolio(portfolio.id) == 2
        assert TransactionRepository.get_by_portfolio(portfolio.id) == []
