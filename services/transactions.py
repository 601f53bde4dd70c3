"""
Transaction service: manual ledger entry, full-replace edits, deletion and
paginated listing.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List

from models import Transaction, TransactionType
from repositories import AssetRepository, PortfolioRepository, TransactionRepository
from services.common import ServiceResult

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20


@dataclass
class TransactionPage:
    """One page of a portfolio's ledger, newest first."""
    transactions: List[Transaction]
    total: int
    page: int
    page_size: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool


def _normalize(data: Dict[str, Any], currency: str) -> Dict[str, Any]:
    """
    Validate and coerce user-supplied fields.

    Raises:
        ValueError: for a missing/unknown type, a missing date or amount
    """
    values = {k: v for k, v in data.items() if k not in ("id", "portfolio_id", "session")}

    raw_type = values.get("transaction_type")
    if raw_type is None:
        raise ValueError("Transaction type is required")
    values["transaction_type"] = TransactionType(str(raw_type).upper()).value

    when = values.get("transaction_date")
    if isinstance(when, str):
        when = datetime.fromisoformat(when)
    if not isinstance(when, datetime):
        raise ValueError("Transaction date is required")
    values["transaction_date"] = when

    if values.get("amount") is None:
        raise ValueError("Amount is required")
    values["amount"] = float(values["amount"])
    values["fee"] = float(values.get("fee") or 0.0)
    values["currency"] = (values.get("currency") or currency).upper()

    symbol = values.get("asset_symbol")
    values["asset_symbol"] = symbol.strip().upper() if symbol else None
    return values


def _touch_asset(values: Dict[str, Any]) -> None:
    symbol = values.get("asset_symbol")
    if not symbol:
        return
    # The ISIN stays on the transaction only; ISIN ownership is settled by imports
    AssetRepository.upsert(
        symbol,
        name=values.get("asset_name"),
        quote_currency=values.get("asset_currency"),
    )


class TransactionService:
    """Service for manual ledger maintenance."""

    @staticmethod
    def create_transaction(portfolio_id: int, data: Dict[str, Any]) -> ServiceResult[Transaction]:
        """
        Record a transaction entered by hand.

        Args:
            portfolio_id: Owning portfolio
            data: Transaction fields; asset_name / asset_currency are used to
                create the asset when the symbol is new
        """
        portfolio = PortfolioRepository.get_by_id(portfolio_id)
        if portfolio is None:
            return ServiceResult.fail("Portfolio not found")

        try:
            values = _normalize(data, portfolio.currency)
        except ValueError as e:
            return ServiceResult.fail(str(e))

        try:
            _touch_asset(values)
            transaction = TransactionRepository.add(
                portfolio_id=portfolio_id,
                transaction_date=values.pop("transaction_date"),
                transaction_type=values.pop("transaction_type"),
                amount=values.pop("amount"),
                currency=values.pop("currency"),
                asset_symbol=values.pop("asset_symbol"),
                quantity=values.pop("quantity", None),
                price_per_unit=values.pop("price_per_unit", None),
                fee=values.pop("fee"),
                **values
            )
        except Exception as e:
            logger.error(f"Error creating transaction in portfolio {portfolio_id}: {e}")
            return ServiceResult.fail("Failed to create transaction")
        return ServiceResult.ok(transaction)

    @staticmethod
    def update_transaction(transaction_id: int, data: Dict[str, Any]) -> ServiceResult[Transaction]:
        """Replace every field of an existing transaction."""
        existing = TransactionRepository.get_by_id(transaction_id)
        if existing is None:
            return ServiceResult.fail("Transaction not found")
        portfolio = PortfolioRepository.get_by_id(existing.portfolio_id)

        try:
            values = _normalize(data, portfolio.currency if portfolio else existing.currency)
        except ValueError as e:
            return ServiceResult.fail(str(e))

        try:
            _touch_asset(values)
            transaction = TransactionRepository.replace(transaction_id, values)
        except Exception as e:
            logger.error(f"Error updating transaction {transaction_id}: {e}")
            return ServiceResult.fail("Failed to update transaction")
        return ServiceResult.ok(transaction)

    @staticmethod
    def delete_transaction(transaction_id: int) -> ServiceResult[bool]:
        try:
            deleted = TransactionRepository.delete(transaction_id)
        except Exception as e:
            logger.error(f"Error deleting transaction {transaction_id}: {e}")
            return ServiceResult.fail("Failed to delete transaction")
        if not deleted:
            return ServiceResult.fail("Transaction not found")
        return ServiceResult.ok(True)

    @staticmethod
    def delete_all_transactions(portfolio_id: int) -> ServiceResult[int]:
        """Wipe a portfolio's ledger. Returns the number of rows removed."""
        if PortfolioRepository.get_by_id(portfolio_id) is None:
            return ServiceResult.fail("Portfolio not found")
        count = TransactionRepository.delete_by_portfolio(portfolio_id)
        logger.info(f"Deleted {count} transactions from portfolio {portfolio_id}")
        return ServiceResult.ok(count)

    @staticmethod
    def get_transactions(
        portfolio_id: int,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE
    ) -> ServiceResult[TransactionPage]:
        """One page of the ledger (newest first) with pagination metadata."""
        if PortfolioRepository.get_by_id(portfolio_id) is None:
            return ServiceResult.fail("Portfolio not found")

        page = max(int(page), 1)
        page_size = max(int(page_size), 1)
        rows, total = TransactionRepository.get_page(portfolio_id, page, page_size)
        total_pages = math.ceil(total / page_size) if total else 0

        return ServiceResult.ok(TransactionPage(
            transactions=rows,
            total=total,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
            has_next_page=page < total_pages,
            has_previous_page=page > 1,
        ))
