"""
Repositories package for FolioLedger.
Provides data access layer for all database operations.
"""

from repositories.portfolio_repository import PortfolioRepository
from repositories.asset_repository import AssetRepository
from repositories.transaction_repository import TransactionRepository

__all__ = [
    'PortfolioRepository',
    'AssetRepository',
    'TransactionRepository',
]
