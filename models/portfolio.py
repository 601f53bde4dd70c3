"""
Portfolio model - a ledger of transactions kept in one base currency.
"""

from typing import Optional
from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Portfolio(SQLModel, table=True):
    """A user's portfolio; all transaction amounts are in its currency."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    currency: str = Field(default="EUR")  # Base currency, e.g. "EUR" or "USD"
    user_id: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=_utcnow)
