"""
Transaction model - one economic event in a portfolio's ledger.
"""

from enum import Enum
from typing import Optional
from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class TransactionType(str, Enum):
    """Ledger event types."""
    BUY = "BUY"
    SELL = "SELL"
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    DIVIDEND = "DIVIDEND"
    INTEREST = "INTEREST"
    GIFT = "GIFT"
    SAVEBACK = "SAVEBACK"
    ROUNDUP = "ROUNDUP"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Transaction(SQLModel, table=True):
    """A ledger row; amount and fee are in the portfolio's base currency."""
    id: Optional[int] = Field(default=None, primary_key=True)
    portfolio_id: int = Field(foreign_key="portfolio.id", index=True)
    transaction_date: datetime = Field(index=True)  # UTC
    transaction_type: str  # TransactionType value
    amount: float
    currency: str = Field(default="EUR")
    asset_symbol: Optional[str] = Field(default=None, foreign_key="asset.symbol", index=True)
    quantity: Optional[float] = Field(default=None)
    price_per_unit: Optional[float] = Field(default=None)
    fee: float = Field(default=0.0)

    # Provenance of foreign-currency cash movements: amount = original_amount * exchange_rate
    exchange_rate: Optional[float] = Field(default=None)
    original_amount: Optional[float] = Field(default=None)
    original_currency: Optional[str] = Field(default=None)

    isin: Optional[str] = Field(default=None)
    asset_currency: Optional[str] = Field(default=None)
    withholding_tax: Optional[float] = Field(default=None)
    tax_rate: Optional[float] = Field(default=None)  # Percent, e.g. 19.0
    created_at: datetime = Field(default_factory=_utcnow)
