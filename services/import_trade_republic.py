"""
Trade Republic account statement importer (Spanish-locale PDF).

The statement text is extracted with pdfplumber and cut into blocks, one per
statement line item, each starting with a "DD mon" date line. Blocks are
classified by keyword and mapped to ledger rows through a fixed rule table.
Unlike the spreadsheet importer this one is additive: existing transactions
are kept.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from io import BytesIO
from typing import Callable, Dict, List, Optional, Tuple

import pdfplumber

from db_engine import get_session
from models import TransactionType
from repositories import AssetRepository, PortfolioRepository
from services.common import ServiceResult, parse_euro_amount
from services.ledger_import import (
    ImportFormatError,
    ImportResult,
    ImportedTransaction,
    persist_rows,
)
from services.market_data import MarketDataService

logger = logging.getLogger(__name__)

STATEMENT_CURRENCY = "EUR"

# Flat commission Trade Republic charges on a regular order
ORDER_FEE = 1.0

SPANISH_MONTHS = {
    "ene": 1, "feb": 2, "mar": 3, "abr": 4, "may": 5, "jun": 6,
    "jul": 7, "ago": 8, "sep": 9, "sept": 9, "oct": 10, "nov": 11, "dic": 12,
}
# "sept" first so the alternation does not stop at "sep"
_MONTH_ALTERNATION = "sept|ene|feb|mar|abr|may|jun|jul|ago|sep|oct|nov|dic"

BLOCK_START = re.compile(rf"^(\d{{2}})(\s+({_MONTH_ALTERNATION})|\s*$)", re.IGNORECASE)
LEADING_DATE = re.compile(rf"^(\d{{2}})\s*({_MONTH_ALTERNATION})?\s*(20\d{{2}})?", re.IGNORECASE)
INNER_MONTH = re.compile(rf"\s+({_MONTH_ALTERNATION})\s+", re.IGNORECASE)
INNER_YEAR = re.compile(r"20[2-3]\d")
AMOUNT = re.compile(r"([\d.,]+)\s*€")
ISIN = re.compile(r"\b([A-Z]{2}[A-Z0-9]{9}\d)\b")
QUANTITY = re.compile(r"quantity:\s*([\d.]+)", re.IGNORECASE)
NAME_END = re.compile(r"(quantity:|[\d.,]+\s*€)", re.IGNORECASE)

NOISE_MARKERS = ("TRADE REPUBLIC BANK", "Página")
MIN_BLOCK_LENGTH = 10

# Keyword -> block kind, first match wins
BLOCK_KINDS: List[Tuple[Tuple[str, ...], str]] = [
    (("savings plan execution",), "SAVINGS_PLAN"),
    (("buy trade",), "BUY_TRADE"),
    (("sell trade",), "SELL_TRADE"),
    (("reembolso por tu regalo",), "GIFT_REWARD"),
    (("saveback payment",), "GIFT_SAVEBACK"),
    (("cash dividend",), "DIVIDEND"),
    (("intereses", "interest payment"), "INTEREST"),
    (("incoming transfer", "ingreso aceptado"), "INCOMING_TRANSFER"),
    (("outgoing transfer",), "OUTGOING_TRANSFER"),
]


@dataclass
class StatementBlock:
    """One line item of the statement."""
    text: str
    kind: str = "UNKNOWN"
    date: Optional[datetime] = None
    raw_amount: Optional[float] = None
    balance: Optional[float] = None
    isin: Optional[str] = None
    quantity: Optional[float] = None
    asset_name: Optional[str] = None
    amounts: List[float] = field(default_factory=list)


def extract_lines(file_bytes: bytes) -> List[str]:
    """
    Extract the text lines of every page.

    Raises:
        ImportFormatError: if the bytes are not a readable PDF
    """
    try:
        with pdfplumber.open(BytesIO(file_bytes)) as pdf:
            text = "\n".join(page.extract_text() or "" for page in pdf.pages)
    except Exception as e:
        raise ImportFormatError(f"Failed to parse PDF content: {e}") from e
    return text.split("\n")


def split_blocks(lines: List[str]) -> List[List[str]]:
    """Group lines into blocks, dropping blank lines and page headers/footers."""
    blocks: List[List[str]] = []
    current: List[str] = []
    for line in lines:
        clean = line.strip()
        if not clean:
            continue
        if any(marker in clean for marker in NOISE_MARKERS):
            continue
        if BLOCK_START.match(clean):
            if current:
                blocks.append(current)
            current = [clean]
        else:
            current.append(clean)
    if current:
        blocks.append(current)
    return blocks


def classify(text: str) -> str:
    lowered = text.lower()
    for keywords, kind in BLOCK_KINDS:
        if any(keyword in lowered for keyword in keywords):
            return kind
    return "UNKNOWN"


def parse_block_date(text: str) -> Optional[datetime]:
    """
    Date of a block: "DD mon YYYY" at the start, with month and year looked
    up anywhere in the block when the first line lacks them.
    """
    match = LEADING_DATE.match(text)
    if not match:
        return None
    day = int(match.group(1))
    month = match.group(2)
    year = match.group(3)

    if not month:
        inner = INNER_MONTH.search(text)
        if inner:
            month = inner.group(1)
    if not year:
        inner = INNER_YEAR.search(text)
        if inner:
            year = inner.group(0)

    if not month or not year:
        return None
    try:
        return datetime(int(year), SPANISH_MONTHS[month.lower()], day)
    except (KeyError, ValueError):
        return None


def _asset_name(text: str, isin: str) -> str:
    after = text.split(isin, 1)[1] if isin in text else ""
    if not after:
        return "Unknown Asset"
    end = NAME_END.search(after)
    name = after[:end.start()] if end else after
    return re.sub(r"[,|]", "", name).strip() or "Unknown Asset"


def parse_block(lines: List[str]) -> Optional[StatementBlock]:
    """Parse one block; None for fragments too short to be a line item."""
    text = " ".join(lines)
    if len(text) < MIN_BLOCK_LENGTH:
        return None

    block = StatementBlock(text=text, kind=classify(text), date=parse_block_date(text))

    for match in AMOUNT.finditer(text):
        value = parse_euro_amount(match.group(1))
        if value is not None:
            block.amounts.append(value)
    if block.amounts:
        block.balance = block.amounts[-1]
        if len(block.amounts) >= 2:
            block.raw_amount = block.amounts[-2]

    isin_match = ISIN.search(text)
    if isin_match:
        block.isin = isin_match.group(1)
        block.asset_name = _asset_name(text, block.isin)

    quantity_match = QUANTITY.search(text)
    if quantity_match:
        try:
            block.quantity = float(quantity_match.group(1))
        except ValueError:
            block.quantity = None
    return block


def parse_statement_text(lines: List[str]) -> List[StatementBlock]:
    return [block for block in (parse_block(b) for b in split_blocks(lines)) if block is not None]


def _row(block: StatementBlock, tx_type: TransactionType, amount: float, **extra) -> ImportedTransaction:
    return ImportedTransaction(
        transaction_date=block.date,
        transaction_type=tx_type,
        amount=amount,
        currency=STATEMENT_CURRENCY,
        exchange_rate=1.0,
        **extra
    )


def _asset_fields(block: StatementBlock, symbol: str) -> Dict:
    return {"asset_symbol": symbol, "isin": block.isin, "asset_name": block.asset_name}


def _savings_plan(block: StatementBlock, symbol: Optional[str]) -> List[ImportedTransaction]:
    if not (block.isin and block.quantity and symbol):
        return []
    cost = block.raw_amount
    return [
        _row(block, TransactionType.BUY, cost, quantity=block.quantity, price_per_unit=cost / block.quantity,
             fee=0.0, original_amount=cost, original_currency=STATEMENT_CURRENCY, **_asset_fields(block, symbol)),
        _row(block, TransactionType.DEPOSIT, cost),
    ]


def _buy_trade(block: StatementBlock, symbol: Optional[str]) -> List[ImportedTransaction]:
    if not (block.isin and block.quantity and symbol):
        return []
    cost = block.raw_amount - ORDER_FEE
    return [
        _row(block, TransactionType.BUY, cost, quantity=block.quantity, price_per_unit=cost / block.quantity,
             fee=ORDER_FEE, original_amount=cost, original_currency=STATEMENT_CURRENCY,
             **_asset_fields(block, symbol)),
        # Funding deposit covering the whole outflow
        _row(block, TransactionType.DEPOSIT, block.raw_amount),
    ]


def _sell_trade(block: StatementBlock, symbol: Optional[str]) -> List[ImportedTransaction]:
    if not (block.isin and block.quantity and symbol):
        return []
    proceeds = block.raw_amount
    return [
        _row(block, TransactionType.SELL, proceeds, quantity=block.quantity,
             price_per_unit=proceeds / block.quantity, **_asset_fields(block, symbol)),
    ]


def _gift(block: StatementBlock, symbol: Optional[str]) -> List[ImportedTransaction]:
    return [_row(block, TransactionType.GIFT, block.raw_amount)]


def _dividend(block: StatementBlock, symbol: Optional[str]) -> List[ImportedTransaction]:
    if not (block.isin and symbol):
        return []
    return [_row(block, TransactionType.DIVIDEND, block.raw_amount, **_asset_fields(block, symbol))]


def _interest(block: StatementBlock, symbol: Optional[str]) -> List[ImportedTransaction]:
    return [_row(block, TransactionType.INTEREST, block.raw_amount)]


# Block kind -> ledger rows. Transfers are absent: buys already synthesize
# the deposit that funds them, so mapping transfers would count money twice.
RULES: Dict[str, Callable[[StatementBlock, Optional[str]], List[ImportedTransaction]]] = {
    "SAVINGS_PLAN": _savings_plan,
    "BUY_TRADE": _buy_trade,
    "SELL_TRADE": _sell_trade,
    "GIFT_REWARD": _gift,
    "GIFT_SAVEBACK": _gift,
    "DIVIDEND": _dividend,
    "INTEREST": _interest,
}


def block_to_rows(block: StatementBlock, symbol: Optional[str]) -> List[ImportedTransaction]:
    """Apply the rule table; an empty list means the block is not importable."""
    rule = RULES.get(block.kind)
    if rule is None or block.date is None or not block.raw_amount:
        return []
    return rule(block, symbol)


class IsinResolver:
    """
    Resolves ISINs to market-data tickers, memoized for one import run.

    An existing asset already carrying the ISIN under a real ticker wins;
    otherwise the first search hit is used, and failing that the ISIN itself.
    """

    def __init__(self, market_data=MarketDataService):
        self.market_data = market_data
        self._resolved: Dict[str, Tuple[str, bool]] = {}

    def resolve(self, isin: str, session=None) -> Tuple[str, bool]:
        """Returns (symbol, found) where found is False for the ISIN fallback."""
        if isin in self._resolved:
            return self._resolved[isin]

        result = (isin, False)
        existing = AssetRepository.get_by_isin(isin, session=session)
        if existing is not None and existing.symbol != isin:
            result = (existing.symbol, True)
        else:
            try:
                candidates = self.market_data.search(isin)
                if candidates:
                    result = (candidates[0].symbol, True)
            except Exception as e:
                logger.warning(f"Ticker lookup failed for {isin}: {e}")

        self._resolved[isin] = result
        return result


def import_trade_republic_pdf(
    portfolio_id: int,
    file_bytes: bytes,
    market_data=MarketDataService
) -> ServiceResult[ImportResult]:
    """
    Append the line items of a Trade Republic statement to a portfolio.

    Returns:
        ServiceResult carrying created / skipped / not_found counters
    """
    portfolio = PortfolioRepository.get_by_id(portfolio_id)
    if portfolio is None:
        return ServiceResult.fail("Portfolio not found")

    try:
        blocks = parse_statement_text(extract_lines(file_bytes))
    except ImportFormatError as e:
        logger.error(f"Trade Republic import failed for portfolio {portfolio_id}: {e}")
        return ServiceResult.fail(str(e))

    logger.info(f"Parsed {len(blocks)} blocks from Trade Republic statement")
    result = ImportResult()
    resolver = IsinResolver(market_data)
    rows: List[ImportedTransaction] = []

    try:
        # ISIN migrations and inserts commit together or not at all
        with get_session() as session:
            try:
                for block in blocks:
                    if block.date is None or not block.raw_amount or block.kind not in RULES:
                        result.skipped += 1
                        continue

                    symbol = None
                    if block.isin:
                        symbol, found = resolver.resolve(block.isin, session=session)
                        if not found:
                            result.not_found += 1
                        AssetRepository.migrate_isin(
                            block.isin,
                            symbol,
                            name=block.asset_name,
                            quote_currency=STATEMENT_CURRENCY,
                            session=session,
                            commit=False,
                        )

                    block_rows = block_to_rows(block, symbol)
                    if not block_rows:
                        result.skipped += 1
                        continue
                    rows.extend(block_rows)

                created = persist_rows(portfolio_id, rows, session, commit=False)
                session.commit()
            except Exception:
                session.rollback()
                raise
        result.created = created
    except Exception as e:
        logger.error(f"Error saving Trade Republic import for portfolio {portfolio_id}: {e}")
        return ServiceResult.fail("Failed to process file")

    logger.info(
        f"Trade Republic import for portfolio {portfolio_id}: {result.created} created, "
        f"{result.skipped} skipped, {result.not_found} unresolved ISINs"
    )
    return ServiceResult.ok(result)
