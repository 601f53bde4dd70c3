import pytest
from datetime import datetime
from unittest.mock import MagicMock, patch

from models import TransactionType
from repositories import AssetRepository, PortfolioRepository, TransactionRepository
from services.import_trade_republic import (
    IsinResolver,
    block_to_rows,
    classify,
    extract_lines,
    import_trade_republic_pdf,
    parse_block,
    parse_block_date,
    parse_statement_text,
    split_blocks,
)
from services.ledger_import import ImportFormatError
from tests.conftest import FakeMarketData

STATEMENT_LINES = [
    "TRADE REPUBLIC BANK GMBH  Brunnenstrasse 19-21",
    "02 ene 2024 Savings plan execution IE00B4L5Y983 iShares Core MSCI World, quantity: 1.5 75,50 € 1.000,00 €",
    "05 feb",
    "2024 Buy trade US0378331005 Apple Inc, quantity: 2",
    "351,00 € 649,00 €",
    "10 mar 2024 Cash Dividend for ISIN US0378331005 0,48 € 649,48 €",
    "",
    "Página 1 de 2",
    "01 abr 2024 Interest payment 2,10 € 651,58 €",
    "03 abr 2024 Incoming transfer from J. Doe 500,00 € 1.151,58 €",
    "15 abr 2024 Saveback payment 3,00 € 1.154,58 €",
    "20 sept 2024 Sell trade US0378331005 Apple Inc, quantity: 1 200,00 € 1.354,58 €",
]


@pytest.fixture
def eur_portfolio(db):
    return PortfolioRepository.add(name="Trade Republic", currency="EUR")


@pytest.fixture
def tr_market():
    return FakeMarketData(search_results={"IE00B4L5Y983": ["IWDA.AS"], "US0378331005": ["AAPL"]})


def test_split_blocks_drops_headers_and_joins_continuations():
    blocks = split_blocks(STATEMENT_LINES)

    assert len(blocks) == 7
    assert blocks[1] == ["05 feb", "2024 Buy trade US0378331005 Apple Inc, quantity: 2", "351,00 € 649,00 €"]
    assert not any("Página" in line for block in blocks for line in block)


@pytest.mark.parametrize("text,kind", [
    ("Savings plan execution", "SAVINGS_PLAN"),
    ("Buy trade", "BUY_TRADE"),
    ("SELL TRADE", "SELL_TRADE"),
    ("Reembolso por tu regalo", "GIFT_REWARD"),
    ("Saveback payment", "GIFT_SAVEBACK"),
    ("Cash Dividend for ISIN", "DIVIDEND"),
    ("Intereses", "INTEREST"),
    ("Ingreso aceptado", "INCOMING_TRANSFER"),
    ("Outgoing transfer", "OUTGOING_TRANSFER"),
    ("Card transaction", "UNKNOWN"),
])
def test_classify(text, kind):
    assert classify(text) == kind


def test_parse_block_date_variants():
    assert parse_block_date("02 ene 2024 Savings plan") == datetime(2024, 1, 2)
    assert parse_block_date("20 sept 2024 Sell trade") == datetime(2024, 9, 20)
    assert parse_block_date("12 Savings plan execution oct 2024") == datetime(2024, 10, 12)
    assert parse_block_date("12 Savings plan execution") is None
    assert parse_block_date("Savings plan") is None


def test_parse_block_fields():
    block = parse_block([STATEMENT_LINES[1]])

    assert block.kind == "SAVINGS_PLAN"
    assert block.date == datetime(2024, 1, 2)
    assert block.raw_amount == pytest.approx(75.5)
    assert block.balance == pytest.approx(1000.0)
    assert block.isin == "IE00B4L5Y983"
    assert block.quantity == pytest.approx(1.5)
    assert block.asset_name == "iShares Core MSCI World"


def test_short_fragments_are_ignored():
    assert parse_block(["07"]) is None


def test_buy_trade_books_fee_and_funding_deposit():
    block = parse_statement_text(STATEMENT_LINES)[1]

    buy, deposit = block_to_rows(block, "AAPL")

    assert buy.transaction_type == TransactionType.BUY
    assert buy.amount == pytest.approx(350.0)
    assert buy.fee == pytest.approx(1.0)
    assert buy.price_per_unit == pytest.approx(175.0)
    assert buy.asset_symbol == "AAPL"
    assert deposit.transaction_type == TransactionType.DEPOSIT
    assert deposit.amount == pytest.approx(351.0)


def test_dividend_requires_isin():
    block = parse_block(["10 mar 2024 Cash Dividend 0,48 € 649,48 €"])

    assert block_to_rows(block, None) == []


def test_transfers_produce_no_rows():
    block = parse_statement_text(STATEMENT_LINES)[4]

    assert block.kind == "INCOMING_TRANSFER"
    assert block_to_rows(block, None) == []


def test_extract_lines_reads_every_page():
    pages = [MagicMock(), MagicMock()]
    pages[0].extract_text.return_value = "line one\nline two"
    pages[1].extract_text.return_value = None

    with patch("services.import_trade_republic.pdfplumber.open") as mock_open:
        mock_open.return_value.__enter__.return_value.pages = pages
        lines = extract_lines(b"%PDF")

    assert lines == ["line one", "line two", ""]


def test_extract_lines_rejects_bad_pdf():
    with patch("services.import_trade_republic.pdfplumber.open", side_effect=Exception("no PDF header")):
        with pytest.raises(ImportFormatError):
            extract_lines(b"garbage")


def test_resolver_memoizes_per_run(db):
    market = FakeMarketData(search_results={"US0378331005": ["AAPL"]})
    resolver = IsinResolver(market)

    assert resolver.resolve("US0378331005") == ("AAPL", True)
    assert resolver.resolve("US0378331005") == ("AAPL", True)
    assert resolver.resolve("XS0000000009") == ("XS0000000009", False)
    assert market.search_calls == ["US0378331005", "XS0000000009"]


@patch("services.import_trade_republic.extract_lines", return_value=STATEMENT_LINES)
def test_import_appends_ledger(mock_extract, eur_portfolio, tr_market):
    first = import_trade_republic_pdf(eur_portfolio.id, b"%PDF", market_data=tr_market)
    second = import_trade_republic_pdf(eur_portfolio.id, b"%PDF", market_data=tr_market)

    assert first.success
    assert first.data.created == 8
    assert first.data.skipped == 1
    assert first.data.not_found == 0
    assert second.data.created == 8

    ledger = TransactionRepository.get_by_portfolio(eur_portfolio.id)
    assert len(ledger) == 16
    types = [tx.transaction_type for tx in ledger]
    assert types.count("DEPOSIT") == 4
    assert types.count("BUY") == 4
    assert AssetRepository.get_by_isin("US0378331005").symbol == "AAPL"
    assert AssetRepository.get_by_symbol("IWDA.AS").name == "iShares Core MSCI World"


@patch("services.import_trade_republic.extract_lines", return_value=STATEMENT_LINES)
def test_unresolved_isin_keeps_isin_symbol(mock_extract, eur_portfolio):
    result = import_trade_republic_pdf(eur_portfolio.id, b"%PDF", market_data=FakeMarketData())

    assert result.success
    # One per line item carrying an unresolved ISIN
    assert result.data.not_found == 4
    symbols = TransactionRepository.get_symbols_by_portfolio(eur_portfolio.id)
    assert symbols == ["IE00B4L5Y983", "US0378331005"]


def test_import_unknown_portfolio(db):
    result = import_trade_republic_pdf(404, b"%PDF", market_data=FakeMarketData())

    assert not result.success


@patch("services.import_trade_republic.persist_rows", side_effect=RuntimeError("disk full"))
@patch("services.import_trade_republic.extract_lines", return_value=STATEMENT_LINES)
def test_failed_import_rolls_back_isin_migrations(mock_extract, mock_persist, eur_portfolio, tr_market):
    result = import_trade_republic_pdf(eur_portfolio.id, b"%PDF", market_data=tr_market)

    assert not result.success
    assert TransactionRepository.get_by_portfolio(eur_portfolio.id) == []
    assert AssetRepository.get_by_isin("US0378331005") is None
    assert AssetRepository.get_by_symbol("IWDA.AS") is None
