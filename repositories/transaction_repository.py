"""
Transaction Repository - data access layer for Transaction model.
Optimized with optional session parameter for transaction reuse.
"""

from typing import Optional, List, Tuple, Dict, Any
from datetime import datetime
from sqlalchemy import func
from sqlmodel import Session, select

from db_engine import get_engine
from models import Transaction, TransactionType

# Columns a full replace overwrites
_REPLACEABLE_FIELDS = (
    'transaction_date',
    'transaction_type',
    'amount',
    'currency',
    'asset_symbol',
    'quantity',
    'price_per_unit',
    'fee',
    'exchange_rate',
    'original_amount',
    'original_currency',
    'isin',
    'asset_currency',
    'withholding_tax',
    'tax_rate',
)


class TransactionRepository:
    """Repository for Transaction CRUD operations."""

    @staticmethod
    def add(
        portfolio_id: int,
        transaction_date: datetime,
        transaction_type: str,
        amount: float,
        currency: str,
        asset_symbol: Optional[str] = None,
        quantity: Optional[float] = None,
        price_per_unit: Optional[float] = None,
        fee: float = 0.0,
        session: Optional[Session] = None,
        **provenance
    ) -> Transaction:
        """
        Add a new transaction to the database.

        Args:
            portfolio_id: Owning portfolio
            transaction_date: When the event happened (UTC)
            transaction_type: A TransactionType value
            amount: Settlement amount in the portfolio currency
            currency: Portfolio currency code
            asset_symbol: Asset ticker, None for cash movements
            quantity: Units bought/sold
            price_per_unit: Unit price in the portfolio currency
            fee: Fee in the portfolio currency
            session: Optional existing session for transaction reuse
            **provenance: exchange_rate, original_amount, original_currency, isin,
                asset_currency, withholding_tax, tax_rate

        Returns:
            Created Transaction object
        """
        def _create_transaction(sess: Session) -> Transaction:
            transaction = Transaction(
                portfolio_id=portfolio_id,
                transaction_date=transaction_date,
                transaction_type=TransactionType(transaction_type).value,
                amount=amount,
                currency=currency,
                asset_symbol=asset_symbol,
                quantity=quantity,
                price_per_unit=price_per_unit,
                fee=fee or 0.0,
                **{k: v for k, v in provenance.items() if k in _REPLACEABLE_FIELDS}
            )
            sess.add(transaction)
            sess.commit()
            sess.refresh(transaction)
            return transaction

        if session is not None:
            return _create_transaction(session)
        else:
            with Session(get_engine()) as session:
                return _create_transaction(session)

    @staticmethod
    def add_many(
        transactions: List[Transaction],
        session: Optional[Session] = None,
        commit: bool = True
    ) -> int:
        """
        Insert several transactions in one commit.
        With commit=False the rows are only flushed; the caller owns the commit.

        Returns:
            Number of rows inserted
        """
        def _add_many(sess: Session) -> int:
            try:
                for tx in transactions:
                    tx.transaction_type = TransactionType(tx.transaction_type).value
                    sess.add(tx)
                if commit:
                    sess.commit()
                else:
                    sess.flush()
                return len(transactions)
            except Exception as e:
                sess.rollback()
                raise e

        if session is not None:
            return _add_many(session)
        else:
            with Session(get_engine()) as session:
                return _add_many(session)

    @staticmethod
    def get_by_portfolio(portfolio_id: int, session: Optional[Session] = None) -> List[Transaction]:
        """
        Retrieve a portfolio's ledger in fold order (date ascending, then insertion).

        Args:
            portfolio_id: Portfolio ID to look up
            session: Optional existing session for transaction reuse

        Returns:
            List of Transaction objects
        """
        def _get_by_portfolio(sess: Session) -> List[Transaction]:
            statement = (
                select(Transaction)
                .where(Transaction.portfolio_id == portfolio_id)
                .order_by(Transaction.transaction_date, Transaction.id)
            )
            return list(sess.exec(statement).all())

        if session is not None:
            return _get_by_portfolio(session)
        else:
            with Session(get_engine()) as session:
                return _get_by_portfolio(session)

    @staticmethod
    def get_page(
        portfolio_id: int,
        page: int = 1,
        page_size: int = 20,
        session: Optional[Session] = None
    ) -> Tuple[List[Transaction], int]:
        """
        Retrieve one page of a portfolio's transactions, newest first.

        Returns:
            Tuple of (transactions on the page, total transaction count)
        """
        def _get_page(sess: Session) -> Tuple[List[Transaction], int]:
            total = sess.exec(
                select(func.count()).select_from(Transaction).where(Transaction.portfolio_id == portfolio_id)
            ).one()
            statement = (
                select(Transaction)
                .where(Transaction.portfolio_id == portfolio_id)
                .order_by(Transaction.transaction_date.desc(), Transaction.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            return list(sess.exec(statement).all()), int(total)

        if session is not None:
            return _get_page(session)
        else:
            with Session(get_engine()) as session:
                return _get_page(session)

    @staticmethod
    def get_by_id(transaction_id: int, session: Optional[Session] = None) -> Optional[Transaction]:
        """Retrieve a transaction by its ID, or None if not found."""
        def _get_by_id(sess: Session) -> Optional[Transaction]:
            return sess.get(Transaction, transaction_id)

        if session is not None:
            return _get_by_id(session)
        else:
            with Session(get_engine()) as session:
                return _get_by_id(session)

    @staticmethod
    def get_symbols_by_portfolio(portfolio_id: int, session: Optional[Session] = None) -> List[str]:
        """Distinct asset symbols referenced by a portfolio's ledger."""
        def _get_symbols(sess: Session) -> List[str]:
            statement = (
                select(Transaction.asset_symbol)
                .where(Transaction.portfolio_id == portfolio_id)
                .where(Transaction.asset_symbol.is_not(None))
                .distinct()
            )
            return sorted(sess.exec(statement).all())

        if session is not None:
            return _get_symbols(session)
        else:
            with Session(get_engine()) as session:
                return _get_symbols(session)

    @staticmethod
    def replace(
        transaction_id: int,
        data: Dict[str, Any],
        session: Optional[Session] = None
    ) -> Optional[Transaction]:
        """
        Fully replace an existing transaction's fields.
        Fields missing from data are reset to their defaults.

        Returns:
            Updated Transaction object or None if not found
        """
        def _replace(sess: Session) -> Optional[Transaction]:
            transaction = sess.get(Transaction, transaction_id)
            if transaction is None:
                return None
            for field_name in _REPLACEABLE_FIELDS:
                value = data.get(field_name)
                if field_name == 'fee':
                    value = value or 0.0
                elif field_name == 'transaction_type':
                    value = TransactionType(value).value
                setattr(transaction, field_name, value)
            sess.add(transaction)
            sess.commit()
            sess.refresh(transaction)
            return transaction

        if session is not None:
            return _replace(session)
        else:
            with Session(get_engine()) as session:
                return _replace(session)

    @staticmethod
    def delete(transaction_id: int, session: Optional[Session] = None) -> bool:
        """
        Delete a transaction by its ID.

        Returns:
            True if successful, False otherwise
        """
        def _delete(sess: Session) -> bool:
            try:
                transaction = sess.get(Transaction, transaction_id)
                if transaction:
                    sess.delete(transaction)
                    sess.commit()
                    return True
                return False
            except Exception as e:
                sess.rollback()
                raise e

        if session is not None:
            return _delete(session)
        else:
            with Session(get_engine()) as session:
                return _delete(session)

    @staticmethod
    def delete_by_portfolio(
        portfolio_id: int,
        session: Optional[Session] = None,
        commit: bool = True
    ) -> int:
        """
        Delete all transactions of a portfolio (used by full re-imports).
        With commit=False the deletes are only flushed; the caller owns the commit.

        Returns:
            Number of transactions deleted
        """
        def _delete_by_portfolio(sess: Session) -> int:
            statement = select(Transaction).where(Transaction.portfolio_id == portfolio_id)
            transactions = sess.exec(statement).all()
            count = 0
            for tx in transactions:
                sess.delete(tx)
                count += 1
            if commit:
                sess.commit()
            else:
                sess.flush()
            return count

        if session is not None:
            return _delete_by_portfolio(session)
        else:
            with Session(get_engine()) as session:
                return _delete_by_portfolio(session)
