"""
Database models for FolioLedger.
All SQLModel table definitions are centralized here.
"""

from models.portfolio import Portfolio
from models.asset import Asset
from models.transaction import Transaction, TransactionType

__all__ = [
    'Portfolio',
    'Asset',
    'Transaction',
    'TransactionType',
]
