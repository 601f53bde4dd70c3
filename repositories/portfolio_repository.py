"""
Portfolio Repository - data access layer for Portfolio model.
Optimized with optional session parameter for transaction reuse.
"""

from typing import Optional, List
from sqlmodel import Session, select

from db_engine import get_engine
from models import Portfolio, Transaction


class PortfolioRepository:
    """Repository for Portfolio CRUD operations."""

    @staticmethod
    def add(
        name: str,
        currency: str,
        user_id: Optional[str] = None,
        session: Optional[Session] = None
    ) -> Portfolio:
        """
        Add a new portfolio to the database.

        Args:
            name: Display name
            currency: Base currency code (e.g. "EUR")
            user_id: Optional owner identifier
            session: Optional existing session for transaction reuse

        Returns:
            Created Portfolio object
        """
        def _create_portfolio(sess: Session) -> Portfolio:
            portfolio = Portfolio(name=name, currency=currency.upper(), user_id=user_id)
            sess.add(portfolio)
            sess.commit()
            sess.refresh(portfolio)
            return portfolio

        if session is not None:
            return _create_portfolio(session)
        else:
            with Session(get_engine()) as session:
                return _create_portfolio(session)

    @staticmethod
    def get_by_id(portfolio_id: int, session: Optional[Session] = None) -> Optional[Portfolio]:
        """Retrieve a portfolio by its ID, or None if not found."""
        def _get_by_id(sess: Session) -> Optional[Portfolio]:
            return sess.get(Portfolio, portfolio_id)

        if session is not None:
            return _get_by_id(session)
        else:
            with Session(get_engine()) as session:
                return _get_by_id(session)

    @staticmethod
    def get_all(user_id: Optional[str] = None, session: Optional[Session] = None) -> List[Portfolio]:
        """
        Retrieve portfolios, optionally restricted to one owner.

        Args:
            user_id: Owner to filter by (None returns every portfolio)
            session: Optional existing session for transaction reuse

        Returns:
            List of Portfolio objects ordered by ID
        """
        def _get_all(sess: Session) -> List[Portfolio]:
            statement = select(Portfolio)
            if user_id is not None:
                statement = statement.where(Portfolio.user_id == user_id)
            statement = statement.order_by(Portfolio.id)
            return list(sess.exec(statement).all())

        if session is not None:
            return _get_all(session)
        else:
            with Session(get_engine()) as session:
                return _get_all(session)

    @staticmethod
    def delete(portfolio_id: int, session: Optional[Session] = None) -> bool:
        """
        Delete a portfolio and all its transactions.

        Returns:
            True if the portfolio existed and was removed
        """
        def _delete(sess: Session) -> bool:
            try:
                portfolio = sess.get(Portfolio, portfolio_id)
                if portfolio is None:
                    return False
                statement = select(Transaction).where(Transaction.portfolio_id == portfolio_id)
                for tx in sess.exec(statement).all():
                    sess.delete(tx)
                sess.delete(portfolio)
                sess.commit()
                return True
            except Exception as e:
                sess.rollback()
                raise e

        if session is not None:
            return _delete(session)
        else:
            with Session(get_engine()) as session:
                return _delete(session)
