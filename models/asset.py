"""
Asset model - a market instrument shared by every portfolio.
"""

from typing import Optional
from datetime import datetime
from sqlmodel import SQLModel, Field


class Asset(SQLModel, table=True):
    """A tradable instrument keyed by its market-data ticker."""
    symbol: str = Field(primary_key=True)  # e.g., "AAPL", "IBE.MC", "VUSA.L"
    name: str = Field(default="", index=True)
    quote_currency: str = Field(default="USD")  # Currency of current_price; "GBX"/"GBp" are pence
    current_price: Optional[float] = Field(default=None)  # Last fetched spot price in quote currency
    exchange_rate_to_usd: Optional[float] = Field(default=None)  # FX snapshot quote->USD
    exchange_rate_to_eur: Optional[float] = Field(default=None)  # FX snapshot quote->EUR
    isin: Optional[str] = Field(default=None, unique=True, index=True)
    asset_class: str = Field(default="EQUITY")  # EQUITY, ETF, STOCK, FIXED_INCOME, BOND, CASH
    updated_at: Optional[datetime] = Field(default=None)
