"""
eToro account statement importer (Spanish-locale XLSX export).

Reads the "Actividad de la cuenta", "Dividendos" and "Posiciones cerradas"
sheets with openpyxl and rebuilds the portfolio ledger from scratch: every
import deletes the portfolio's existing transactions first, so importing the
same file twice yields the same ledger.
"""

import logging
import re
from collections import OrderedDict
from datetime import datetime
from io import BytesIO
from typing import Any, Dict, List, Optional, Tuple

from openpyxl import load_workbook

from db_engine import get_session
from models import TransactionType
from repositories import PortfolioRepository, TransactionRepository
from services.common import ServiceResult, parse_number
from services.ledger_import import (
    ImportFormatError,
    ImportResult,
    ImportedTransaction,
    persist_rows,
    upsert_assets_for,
)

logger = logging.getLogger(__name__)

ACTIVITY_SHEET = "Actividad de la cuenta"
DIVIDENDS_SHEET = "Dividendos"
CLOSED_POSITIONS_SHEET = "Posiciones cerradas"

# eToro accounts settle in USD
ACCOUNT_CURRENCY = "USD"

# Tickers eToro lists without the exchange suffix market data needs
TICKER_REMAP = {
    "ITX": "ITX.MC",
    "MAP": "MAP.MC",
    "AMS": "AMS.MC",
    "IBE": "IBE.MC",
    "MTS": "MTS.MC",
    "SAN": "SAN.MC",
    "REP": "REP.MC",
    "CLNX": "CLNX.MC",
    "ML": "ML.PA",
}

# eToro's SHIBxM unit is one million SHIB
SHIB_MILLIONS_SYMBOL = "SHIBXM"
SHIB_SYMBOL = "SHIB-USD"
SHIB_UNIT = 1_000_000

FEE_ROW_TYPES = ("Rollover Fee", "SDRT")
FEE_DETAIL_MARKERS = ("SDRT", "Stamp Duty")

DEPOSIT_DETAILS_PATTERN = re.compile(r"^([\d.,]+)\s+([A-Z]{3})")
PARENTHESIZED_TICKER = re.compile(r"\(([^)]+)\)")

# Position ids eToro uses for rows not tied to a position
EMPTY_POSITION_IDS = ("", "-", "0")


def parse_etoro_date(value: Any) -> datetime:
    """
    Parse a "dd/mm/yyyy HH:MM:SS" cell (time optional) or a native datetime.

    Raises:
        ValueError: for empty or malformed values
    """
    if isinstance(value, datetime):
        return value
    if not value or not isinstance(value, str):
        raise ValueError(f"Missing or invalid date: {value!r}")

    text = value.strip()
    for fmt in ("%d/%m/%Y %H:%M:%S", "%d/%m/%Y %H:%M", "%d/%m/%Y"):
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    raise ValueError(f"Unrecognized date: {value!r}")


def parse_asset_details(detail: Any) -> Tuple[Optional[str], Optional[str]]:
    """
    Extract (ticker, quote currency) from an eToro description.

    Tries, in order: a parenthesized ticker ("Cellnex (CLNX.MC)"), a
    "TICKER/CURRENCY" pair ("BARC/GBX" -> "BARC.L"), then the bare text.
    Known ambiguous codes are remapped to their exchange-qualified ticker.
    """
    if detail is None or not str(detail).strip():
        return None, None

    text = str(detail).strip()
    currency = None

    match = PARENTHESIZED_TICKER.search(text)
    if match:
        symbol = match.group(1).strip().upper()
    elif "/" in text:
        left, right = text.split("/", 1)
        symbol = left.strip().upper()
        currency = right.strip() or None
        if currency == "GBX" and not symbol.endswith(".L"):
            symbol = f"{symbol}.L"
    else:
        symbol = text.upper()

    return TICKER_REMAP.get(symbol, symbol), currency


def _position_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return None if text in EMPTY_POSITION_IDS else text


def _parse_tax_rate(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return parse_number(str(value).replace("%", "").strip())


def read_sheets(file_bytes: bytes) -> Dict[str, List[Dict[str, Any]]]:
    """
    Load every worksheet as a list of dicts keyed by the header row.

    Raises:
        ImportFormatError: if the bytes are not a readable workbook
    """
    try:
        workbook = load_workbook(filename=BytesIO(file_bytes), data_only=True, read_only=True)
    except Exception as e:
        raise ImportFormatError(f"Could not read spreadsheet: {e}") from e

    sheets: Dict[str, List[Dict[str, Any]]] = {}
    try:
        for sheet in workbook.worksheets:
            header: Optional[List[str]] = None
            rows: List[Dict[str, Any]] = []
            for values in sheet.iter_rows(values_only=True):
                if values is None or all(v is None or str(v).strip() == "" for v in values):
                    continue
                if header is None:
                    header = [str(v).strip() if v is not None else "" for v in values]
                    continue
                rows.append({key: value for key, value in zip(header, values) if key})
            sheets[sheet.title] = rows
    finally:
        workbook.close()
    return sheets


def _dividend_side_table(rows: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    table = {}
    for row in rows:
        position_id = _position_id(row.get("ID de posición"))
        if position_id:
            table[position_id] = row
    return table


def _activity_row(row: Dict[str, Any], dividends: Dict[str, Dict[str, Any]]) -> Optional[ImportedTransaction]:
    """Map one activity row; None for row types the ledger ignores."""
    row_type = str(row.get("Tipo") or "").strip()
    details = row.get("Detalles")
    details_text = str(details or "")
    position_id = _position_id(row.get("ID de posición"))

    is_fee = row_type in FEE_ROW_TYPES or any(marker in details_text for marker in FEE_DETAIL_MARKERS)
    if row_type not in ("Posición abierta", "Dividendo", "Depósito", "Ajuste") and not is_fee:
        return None

    date = parse_etoro_date(row.get("Fecha"))
    amount = parse_number(row.get("Importe"))

    if row_type == "Posición abierta":
        symbol, asset_currency = parse_asset_details(details)
        units = parse_number(row.get("Unidades"))
        return ImportedTransaction(
            transaction_date=date,
            transaction_type=TransactionType.BUY,
            amount=amount,
            currency=ACCOUNT_CURRENCY,
            asset_symbol=symbol,
            quantity=units,
            price_per_unit=amount / units if units > 0 else 0.0,
            asset_currency=asset_currency,
            asset_name=details_text or symbol,
            position_id=position_id,
        )

    if row_type == "Dividendo":
        symbol, asset_currency = parse_asset_details(details)
        withholding_tax = None
        tax_rate = None
        isin = None
        side = dividends.get(position_id) if position_id else None
        if side is not None:
            withholding_tax = parse_number(side.get("Importe de la retención tributaria (USD)"))
            tax_rate = _parse_tax_rate(side.get("Tasa de retención fiscal (%)"))
            isin = side.get("ISIN") or None
        return ImportedTransaction(
            transaction_date=date,
            transaction_type=TransactionType.DIVIDEND,
            amount=amount,
            currency=ACCOUNT_CURRENCY,
            asset_symbol=symbol,
            quantity=0.0,
            price_per_unit=0.0,
            isin=isin,
            asset_currency=asset_currency,
            asset_name=details_text or symbol,
            withholding_tax=withholding_tax,
            tax_rate=tax_rate,
            position_id=position_id,
        )

    if row_type == "Depósito":
        original_amount = None
        original_currency = None
        exchange_rate = 1.0
        match = DEPOSIT_DETAILS_PATTERN.match(details_text.strip())
        if match:
            original_amount = parse_number(match.group(1))
            original_currency = match.group(2)
            if original_amount:
                exchange_rate = amount / original_amount
        return ImportedTransaction(
            transaction_date=date,
            transaction_type=TransactionType.DEPOSIT,
            amount=amount,
            currency=ACCOUNT_CURRENCY,
            exchange_rate=exchange_rate,
            original_amount=original_amount or None,
            original_currency=original_currency,
            position_id=position_id,
        )

    if row_type == "Ajuste":
        return ImportedTransaction(
            transaction_date=date,
            transaction_type=TransactionType.GIFT,
            amount=amount,
            currency=ACCOUNT_CURRENCY,
            position_id=position_id,
        )

    # Fee row: adds cost to the position without changing its quantity
    symbol, asset_currency = parse_asset_details(details)
    return ImportedTransaction(
        transaction_date=date,
        transaction_type=TransactionType.BUY,
        amount=0.0,
        currency=ACCOUNT_CURRENCY,
        asset_symbol=symbol,
        quantity=0.0,
        price_per_unit=0.0,
        fee=abs(amount),
        asset_currency=asset_currency,
        asset_name=details_text or symbol,
        position_id=position_id,
    )


def _closed_position_row(row: Dict[str, Any]) -> ImportedTransaction:
    raw_symbol = row.get("Acción")
    symbol, _ = parse_asset_details(raw_symbol)
    invested = parse_number(row.get("Importe"))
    profit = parse_number(row.get("Ganancias (USD)"))
    units = parse_number(row.get("Unidades"))
    proceeds = invested + profit
    return ImportedTransaction(
        transaction_date=parse_etoro_date(row.get("Fecha de cierre")),
        transaction_type=TransactionType.SELL,
        amount=proceeds,
        currency=ACCOUNT_CURRENCY,
        asset_symbol=symbol,
        quantity=units,
        price_per_unit=proceeds / units if units > 0 else 0.0,
        asset_name=str(raw_symbol or symbol),
        position_id=_position_id(row.get("ID de posición")),
    )


def merge_fee_rows(rows: List[ImportedTransaction]) -> List[ImportedTransaction]:
    """
    Fold fee-only BUY rows into the opening BUY of the same position.

    Fee rows whose position has no opening BUY are kept as they are.
    """
    merged: List[ImportedTransaction] = []
    groups: "OrderedDict[str, List[ImportedTransaction]]" = OrderedDict()
    for row in rows:
        if not row.position_id:
            merged.append(row)
            continue
        groups.setdefault(row.position_id, []).append(row)

    for group in groups.values():
        main = next(
            (r for r in group if r.transaction_type == TransactionType.BUY and (r.quantity or 0) > 0),
            None
        )
        if main is None:
            merged.extend(group)
            continue
        for row in group:
            if row is main:
                merged.append(row)
            elif row.transaction_type == TransactionType.BUY and not row.quantity and row.fee > 0:
                main.fee += row.fee
            else:
                merged.append(row)
    return merged


def _rescale_shib(row: ImportedTransaction) -> None:
    if row.asset_symbol and row.asset_symbol.upper() == SHIB_MILLIONS_SYMBOL:
        row.asset_symbol = SHIB_SYMBOL
        if row.quantity:
            row.quantity *= SHIB_UNIT
        if row.price_per_unit:
            row.price_per_unit /= SHIB_UNIT


def parse_etoro_statement(file_bytes: bytes) -> Tuple[List[ImportedTransaction], ImportResult]:
    """
    Turn an eToro XLSX export into date-ordered ledger rows.

    Returns:
        Tuple of (rows, counters with skipped / not_found filled in)

    Raises:
        ImportFormatError: if the workbook is unreadable or lacks the activity sheet
    """
    sheets = read_sheets(file_bytes)
    if ACTIVITY_SHEET not in sheets:
        raise ImportFormatError(f'Missing "{ACTIVITY_SHEET}" sheet')

    counters = ImportResult()
    dividends = _dividend_side_table(sheets.get(DIVIDENDS_SHEET, []))
    rows: List[ImportedTransaction] = []

    for raw in sheets[ACTIVITY_SHEET]:
        try:
            row = _activity_row(raw, dividends)
        except ValueError as e:
            logger.warning(f"Skipping activity row {raw.get('ID de posición')}: {e}")
            counters.skipped += 1
            continue
        if row is None:
            counters.skipped += 1
            continue
        if row.transaction_type not in (TransactionType.DEPOSIT, TransactionType.GIFT) and not row.asset_symbol:
            counters.not_found += 1
            continue
        rows.append(row)

    for raw in sheets.get(CLOSED_POSITIONS_SHEET, []):
        try:
            row = _closed_position_row(raw)
        except ValueError as e:
            logger.warning(f"Skipping closed position {raw.get('ID de posición')}: {e}")
            counters.skipped += 1
            continue
        if not row.asset_symbol:
            counters.not_found += 1
            continue
        rows.append(row)

    rows = merge_fee_rows(rows)
    for row in rows:
        _rescale_shib(row)
    rows.sort(key=lambda r: r.transaction_date)
    return rows, counters


def import_etoro_transactions(portfolio_id: int, file_bytes: bytes) -> ServiceResult[ImportResult]:
    """
    Replace a portfolio's ledger with the contents of an eToro statement.

    Returns:
        ServiceResult carrying the ImportResult counters
    """
    portfolio = PortfolioRepository.get_by_id(portfolio_id)
    if portfolio is None:
        return ServiceResult.fail("Portfolio not found")
    if portfolio.currency != ACCOUNT_CURRENCY:
        logger.warning(
            f"Portfolio {portfolio_id} is in {portfolio.currency} but eToro statements settle in {ACCOUNT_CURRENCY}"
        )

    try:
        rows, result = parse_etoro_statement(file_bytes)
    except ImportFormatError as e:
        logger.error(f"eToro import failed for portfolio {portfolio_id}: {e}")
        return ServiceResult.fail(str(e))

    try:
        # Delete, asset upserts and inserts commit together or not at all
        with get_session() as session:
            try:
                deleted = TransactionRepository.delete_by_portfolio(portfolio_id, session=session, commit=False)
                upsert_assets_for(rows, ACCOUNT_CURRENCY, session, commit=False)
                created = persist_rows(portfolio_id, rows, session, commit=False)
                session.commit()
            except Exception:
                session.rollback()
                raise
        result.deleted = deleted
        result.created = created
    except Exception as e:
        logger.error(f"Error saving eToro import for portfolio {portfolio_id}: {e}")
        return ServiceResult.fail("Failed to process file")

    logger.info(
        f"eToro import for portfolio {portfolio_id}: {result.created} created, "
        f"{result.deleted} replaced, {result.skipped} skipped, {result.not_found} unresolved"
    )
    return ServiceResult.ok(result)
