"""
Shared pieces of the statement importers: the canonical imported row, the
import outcome counters, and persistence of a batch of rows.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlmodel import Session

from models import Transaction, TransactionType
from repositories import AssetRepository, TransactionRepository

logger = logging.getLogger(__name__)

# Transaction types that never reference an asset
CASH_ONLY_TYPES = (TransactionType.DEPOSIT, TransactionType.WITHDRAWAL, TransactionType.GIFT, TransactionType.INTEREST)


class ImportFormatError(Exception):
    """Raised when an uploaded statement is not in the expected layout."""


@dataclass
class ImportedTransaction:
    """A broker statement row normalized to the ledger's vocabulary."""
    transaction_date: datetime
    transaction_type: TransactionType
    amount: float
    currency: str
    asset_symbol: Optional[str] = None
    quantity: Optional[float] = None
    price_per_unit: Optional[float] = None
    fee: float = 0.0
    exchange_rate: Optional[float] = None
    original_amount: Optional[float] = None
    original_currency: Optional[str] = None
    isin: Optional[str] = None
    asset_currency: Optional[str] = None
    asset_name: Optional[str] = None
    withholding_tax: Optional[float] = None
    tax_rate: Optional[float] = None
    position_id: Optional[str] = None  # Broker-side id, used to merge fee rows

    def to_model(self, portfolio_id: int) -> Transaction:
        symbol = None if self.transaction_type in CASH_ONLY_TYPES else self.asset_symbol
        return Transaction(
            portfolio_id=portfolio_id,
            transaction_date=self.transaction_date,
            transaction_type=self.transaction_type.value,
            amount=self.amount,
            currency=self.currency,
            asset_symbol=symbol,
            quantity=self.quantity,
            price_per_unit=self.price_per_unit,
            fee=self.fee or 0.0,
            exchange_rate=self.exchange_rate,
            original_amount=self.original_amount,
            original_currency=self.original_currency,
            isin=self.isin,
            asset_currency=self.asset_currency,
            withholding_tax=self.withholding_tax,
            tax_rate=self.tax_rate,
        )


@dataclass
class ImportResult:
    """Outcome counters of one import run."""
    created: int = 0
    skipped: int = 0
    not_found: int = 0
    deleted: int = 0


def upsert_assets_for(
    rows: List[ImportedTransaction],
    default_currency: str,
    session: Session,
    commit: bool = True
) -> int:
    """
    Make sure every asset referenced by the rows exists.

    Existing assets only get their quote currency refreshed when the statement
    states one; new assets are named after the statement description.

    Returns:
        Number of distinct assets touched
    """
    seen: Dict[str, ImportedTransaction] = {}
    for row in rows:
        if row.transaction_type in CASH_ONLY_TYPES or not row.asset_symbol:
            continue
        seen.setdefault(row.asset_symbol, row)

    for symbol, row in seen.items():
        existing = AssetRepository.get_by_symbol(symbol, session=session)
        if existing is None:
            AssetRepository.upsert(
                symbol,
                session=session,
                commit=commit,
                name=row.asset_name or symbol,
                quote_currency=row.asset_currency or default_currency,
            )
        elif row.asset_currency:
            AssetRepository.upsert(symbol, session=session, commit=commit, quote_currency=row.asset_currency)
    return len(seen)


def persist_rows(portfolio_id: int, rows: List[ImportedTransaction], session: Session, commit: bool = True) -> int:
    """Insert rows as ledger transactions. Returns the number created."""
    models = [row.to_model(portfolio_id) for row in rows]
    return TransactionRepository.add_many(models, session=session, commit=commit)
