import pytest
from datetime import datetime
from io import BytesIO
from unittest.mock import patch

from openpyxl import Workbook

from models import TransactionType
from repositories import AssetRepository, PortfolioRepository, TransactionRepository
from services.import_etoro import (
    ACTIVITY_SHEET,
    CLOSED_POSITIONS_SHEET,
    DIVIDENDS_SHEET,
    import_etoro_transactions,
    merge_fee_rows,
    parse_asset_details,
    parse_etoro_date,
    parse_etoro_statement,
)
from services.ledger_import import ImportedTransaction

ACTIVITY_HEADER = ["Fecha", "Tipo", "Detalles", "Importe", "Unidades", "ID de posición"]
DIVIDENDS_HEADER = [
    "ID de posición",
    "Importe de la retención tributaria (USD)",
    "Tasa de retención fiscal (%)",
    "ISIN",
]
CLOSED_HEADER = ["ID de posición", "Acción", "Importe", "Ganancias (USD)", "Unidades", "Fecha de cierre"]


def build_statement(activity, dividends=(), closed=(), include_activity=True):
    workbook = Workbook()
    first = workbook.active
    if include_activity:
        first.title = ACTIVITY_SHEET
        first.append(ACTIVITY_HEADER)
        for row in activity:
            first.append(list(row))
    else:
        first.title = "Resumen"
        first.append(["Nada"])

    sheet = workbook.create_sheet(DIVIDENDS_SHEET)
    sheet.append(DIVIDENDS_HEADER)
    for row in dividends:
        sheet.append(list(row))

    sheet = workbook.create_sheet(CLOSED_POSITIONS_SHEET)
    sheet.append(CLOSED_HEADER)
    for row in closed:
        sheet.append(list(row))

    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


@pytest.fixture
def statement():
    return build_statement(
        activity=[
            ("01/02/2024 10:00:00", "Depósito", "1000.00 EUR", 1100.0, "", ""),
            ("02/02/2024 10:00:00", "Posición abierta", "AAPL/USD", 500.0, 2.5, 111),
            ("02/02/2024 11:00:00", "Posición abierta", "BARC/GBX", 300.0, 100, 222),
            ("03/02/2024 09:00:00", "SDRT", "BARC/GBX", -1.5, "", 222),
            ("04/02/2024 09:00:00", "Posición abierta", "SAN", 200.0, 50, 333),
            ("05/02/2024 09:00:00", "Posición abierta", "SHIBxM", 100.0, 10, 444),
            ("10/03/2024 09:00:00", "Dividendo", "AAPL/USD", 2.0, "", 111),
            ("11/03/2024 09:00:00", "Retirada", "", -50.0, "", ""),
            ("not a date", "Posición abierta", "MSFT/USD", 10.0, 1, 555),
        ],
        dividends=[(111, 0.3, "15 %", "US0378331005")],
        closed=[(333, "SAN", 200.0, 20.0, 50, "15/03/2024 12:00:00")],
    )


@pytest.fixture
def usd_portfolio(db):
    return PortfolioRepository.add(name="eToro", currency="USD")


def test_parse_etoro_date():
    assert parse_etoro_date("01/02/2024 10:30:00") == datetime(2024, 2, 1, 10, 30)
    assert parse_etoro_date("01/02/2024") == datetime(2024, 2, 1)
    assert parse_etoro_date(datetime(2024, 2, 1, 8)) == datetime(2024, 2, 1, 8)
    with pytest.raises(ValueError):
        parse_etoro_date("2024-02-01")
    with pytest.raises(ValueError):
        parse_etoro_date(None)


@pytest.mark.parametrize("detail,expected", [
    ("AAPL/USD", ("AAPL", "USD")),
    ("BARC/GBX", ("BARC.L", "GBX")),
    ("Cellnex (CLNX.MC)", ("CLNX.MC", None)),
    ("ITX", ("ITX.MC", None)),
    ("ML/EUR", ("ML.PA", "EUR")),
    ("", (None, None)),
    (None, (None, None)),
])
def test_parse_asset_details(detail, expected):
    assert parse_asset_details(detail) == expected


def test_parse_statement_rows(statement):
    rows, counters = parse_etoro_statement(statement)

    assert counters.skipped == 2
    assert counters.not_found == 0
    assert [r.transaction_type for r in rows] == [
        TransactionType.DEPOSIT,
        TransactionType.BUY,
        TransactionType.BUY,
        TransactionType.BUY,
        TransactionType.BUY,
        TransactionType.DIVIDEND,
        TransactionType.SELL,
    ]

    deposit = rows[0]
    assert deposit.amount == pytest.approx(1100.0)
    assert deposit.original_amount == pytest.approx(1000.0)
    assert deposit.original_currency == "EUR"
    assert deposit.exchange_rate == pytest.approx(1.1)
    assert deposit.asset_symbol is None

    by_symbol = {r.asset_symbol: r for r in rows if r.transaction_type == TransactionType.BUY}
    assert by_symbol["AAPL"].price_per_unit == pytest.approx(200.0)
    assert by_symbol["BARC.L"].fee == pytest.approx(1.5)
    assert by_symbol["BARC.L"].asset_currency == "GBX"
    assert by_symbol["SAN.MC"].quantity == 50
    assert by_symbol["SHIB-USD"].quantity == pytest.approx(10_000_000)
    assert by_symbol["SHIB-USD"].price_per_unit == pytest.approx(0.00001)

    dividend = rows[5]
    assert dividend.asset_symbol == "AAPL"
    assert dividend.withholding_tax == pytest.approx(0.3)
    assert dividend.tax_rate == pytest.approx(15.0)
    assert dividend.isin == "US0378331005"

    sell = rows[6]
    assert sell.asset_symbol == "SAN.MC"
    assert sell.amount == pytest.approx(220.0)
    assert sell.price_per_unit == pytest.approx(4.4)


def test_fee_without_opening_buy_is_kept():
    fee_only = ImportedTransaction(
        transaction_date=datetime(2024, 1, 1),
        transaction_type=TransactionType.BUY,
        amount=0.0,
        currency="USD",
        asset_symbol="TSLA",
        quantity=0.0,
        fee=0.4,
        position_id="999",
    )

    assert merge_fee_rows([fee_only]) == [fee_only]


def test_import_replaces_ledger(usd_portfolio, statement):
    first = import_etoro_transactions(usd_portfolio.id, statement)
    second = import_etoro_transactions(usd_portfolio.id, statement)

    assert first.success
    assert first.data.created == 7
    assert first.data.deleted == 0
    assert second.success
    assert second.data.created == 7
    assert second.data.deleted == 7

    ledger = TransactionRepository.get_by_portfolio(usd_portfolio.id)
    assert len(ledger) == 7
    assert all(tx.currency == "USD" for tx in ledger)
    assert AssetRepository.get_by_symbol("BARC.L").quote_currency == "GBX"
    assert AssetRepository.get_by_symbol("SHIB-USD") is not None


def test_import_requires_activity_sheet(usd_portfolio):
    result = import_etoro_transactions(usd_portfolio.id, build_statement([], include_activity=False))

    assert not result.success
    assert ACTIVITY_SHEET in result.error


def test_import_rejects_unreadable_file(usd_portfolio):
    result = import_etoro_transactions(usd_portfolio.id, b"not a spreadsheet")

    assert not result.success


def test_import_unknown_portfolio(db, statement):
    result = import_etoro_transactions(404, statement)

    assert not result.success
    assert result.error == "Portfolio not found"


def test_failed_reimport_keeps_previous_ledger(usd_portfolio, statement):
    import_etoro_transactions(usd_portfolio.id, statement)
    replacement = build_statement(activity=[
        ("01/03/2024 10:00:00", "Posición abierta", "NVDA/USD", 400.0, 1, 777),
    ])

    with patch("services.import_etoro.persist_rows", side_effect=RuntimeError("disk full")):
        result = import_etoro_transactions(usd_portfolio.id, replacement)

    assert not result.success
    ledger = TransactionRepository.get_by_portfolio(usd_portfolio.id)
    assert len(ledger) == 7
    assert "NVDA" not in {tx.asset_symbol for tx in ledger}
    assert AssetRepository.get_by_symbol("NVDA") is None
