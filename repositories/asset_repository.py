"""
Asset Repository - data access layer for Asset model.
Optimized with optional session parameter for transaction reuse.
"""

from typing import Optional, List, Iterable
from datetime import datetime, timezone
from sqlmodel import Session, select

from db_engine import get_engine
from models import Asset, Transaction

# Columns upsert() may write; anything else passed in is ignored
_ASSET_FIELDS = (
    'name',
    'quote_currency',
    'current_price',
    'exchange_rate_to_usd',
    'exchange_rate_to_eur',
    'isin',
    'asset_class',
)


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AssetRepository:
    """Repository for Asset CRUD operations."""

    @staticmethod
    def get_by_symbol(symbol: str, session: Optional[Session] = None) -> Optional[Asset]:
        """Retrieve an asset by its ticker symbol, or None if not found."""
        def _get_by_symbol(sess: Session) -> Optional[Asset]:
            return sess.get(Asset, symbol)

        if session is not None:
            return _get_by_symbol(session)
        else:
            with Session(get_engine()) as session:
                return _get_by_symbol(session)

    @staticmethod
    def get_by_symbols(symbols: Iterable[str], session: Optional[Session] = None) -> List[Asset]:
        """
        Retrieve every asset whose symbol is in the given collection.

        Args:
            symbols: Ticker symbols to look up (duplicates are fine)
            session: Optional existing session for transaction reuse

        Returns:
            List of matching Asset objects (unknown symbols are simply absent)
        """
        wanted = sorted(set(s for s in symbols if s))

        def _get_by_symbols(sess: Session) -> List[Asset]:
            if not wanted:
                return []
            statement = select(Asset).where(Asset.symbol.in_(wanted))
            return list(sess.exec(statement).all())

        if session is not None:
            return _get_by_symbols(session)
        else:
            with Session(get_engine()) as session:
                return _get_by_symbols(session)

    @staticmethod
    def get_by_isin(isin: str, session: Optional[Session] = None) -> Optional[Asset]:
        """Retrieve the asset carrying an ISIN, or None."""
        def _get_by_isin(sess: Session) -> Optional[Asset]:
            statement = select(Asset).where(Asset.isin == isin)
            return sess.exec(statement).first()

        if session is not None:
            return _get_by_isin(session)
        else:
            with Session(get_engine()) as session:
                return _get_by_isin(session)

    @staticmethod
    def get_all(session: Optional[Session] = None) -> List[Asset]:
        """Retrieve all assets from the database."""
        def _get_all(sess: Session) -> List[Asset]:
            return list(sess.exec(select(Asset).order_by(Asset.symbol)).all())

        if session is not None:
            return _get_all(session)
        else:
            with Session(get_engine()) as session:
                return _get_all(session)

    @staticmethod
    def upsert(symbol: str, session: Optional[Session] = None, commit: bool = True, **fields) -> Asset:
        """
        Create the asset if missing, otherwise update the provided fields.

        Only keyword arguments whose value is not None are written on update, so
        callers can refresh a price without clobbering the stored ISIN.

        Args:
            symbol: Ticker symbol (primary key)
            session: Optional existing session for transaction reuse
            commit: Flush only when False, leaving the commit to the caller
            **fields: Asset columns (name, quote_currency, current_price, ...)

        Returns:
            The created or updated Asset
        """
        values = {k: v for k, v in fields.items() if k in _ASSET_FIELDS and v is not None}

        def _upsert(sess: Session) -> Asset:
            try:
                asset = sess.get(Asset, symbol)
                if asset is None:
                    values.setdefault('name', symbol)
                    asset = Asset(symbol=symbol, updated_at=_now(), **values)
                else:
                    for key, value in values.items():
                        setattr(asset, key, value)
                    asset.updated_at = _now()
                sess.add(asset)
                if commit:
                    sess.commit()
                else:
                    sess.flush()
                sess.refresh(asset)
                return asset
            except Exception as e:
                sess.rollback()
                raise e

        if session is not None:
            return _upsert(session)
        else:
            with Session(get_engine()) as session:
                return _upsert(session)

    @staticmethod
    def update_market_data(
        symbol: str,
        current_price: Optional[float] = None,
        name: Optional[str] = None,
        quote_currency: Optional[str] = None,
        exchange_rate_to_usd: Optional[float] = None,
        exchange_rate_to_eur: Optional[float] = None,
        session: Optional[Session] = None
    ) -> Optional[Asset]:
        """
        Store a freshly fetched quote and FX snapshot on an existing asset.

        Returns:
            Updated Asset object or None if the symbol is unknown
        """
        def _update(sess: Session) -> Optional[Asset]:
            asset = sess.get(Asset, symbol)
            if asset is None:
                return None
            if current_price is not None:
                asset.current_price = current_price
            if name:
                asset.name = name
            if quote_currency:
                asset.quote_currency = quote_currency
            if exchange_rate_to_usd is not None:
                asset.exchange_rate_to_usd = exchange_rate_to_usd
            if exchange_rate_to_eur is not None:
                asset.exchange_rate_to_eur = exchange_rate_to_eur
            asset.updated_at = _now()
            sess.add(asset)
            sess.commit()
            sess.refresh(asset)
            return asset

        if session is not None:
            return _update(session)
        else:
            with Session(get_engine()) as session:
                return _update(session)

    @staticmethod
    def delete(symbol: str, session: Optional[Session] = None) -> bool:
        """
        Delete an asset row. Transactions still referencing it are left untouched;
        use migrate_isin() to move them first.

        Returns:
            True if an asset was deleted
        """
        def _delete(sess: Session) -> bool:
            try:
                asset = sess.get(Asset, symbol)
                if asset:
                    sess.delete(asset)
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
    def migrate_isin(
        isin: str,
        new_symbol: str,
        name: Optional[str] = None,
        quote_currency: Optional[str] = None,
        session: Optional[Session] = None,
        commit: bool = True
    ) -> Asset:
        """
        Make new_symbol the single owner of an ISIN.

        When another asset row already carries the ISIN (typically one keyed by the
        ISIN itself from an earlier import), its transactions are moved to
        new_symbol and the legacy row is deleted before the ISIN is attached, so the
        unique constraint on isin is never violated.

        Args:
            isin: The ISIN being resolved
            new_symbol: The ticker it now resolves to
            name: Optional display name for a newly created asset
            quote_currency: Optional quote currency for a newly created asset
            session: Optional existing session for transaction reuse
            commit: Flush only when False, leaving the commit to the caller

        Returns:
            The asset row keyed by new_symbol, carrying the ISIN
        """
        def _migrate(sess: Session) -> Asset:
            try:
                legacy = sess.exec(select(Asset).where(Asset.isin == isin)).first()
                target = sess.get(Asset, new_symbol)
                if target is None:
                    target = Asset(
                        symbol=new_symbol,
                        name=name or (legacy.name if legacy else new_symbol),
                        quote_currency=quote_currency or (legacy.quote_currency if legacy else "USD"),
                        updated_at=_now()
                    )
                    sess.add(target)
                    sess.flush()

                if legacy is not None and legacy.symbol != new_symbol:
                    statement = select(Transaction).where(Transaction.asset_symbol == legacy.symbol)
                    for tx in sess.exec(statement).all():
                        tx.asset_symbol = new_symbol
                        sess.add(tx)
                    if target.current_price is None:
                        target.current_price = legacy.current_price
                    sess.delete(legacy)
                    sess.flush()

                target.isin = isin
                target.updated_at = _now()
                sess.add(target)
                if commit:
                    sess.commit()
                else:
                    sess.flush()
                sess.refresh(target)
                return target
            except Exception as e:
                sess.rollback()
                raise e

        if session is not None:
            return _migrate(session)
        else:
            with Session(get_engine()) as session:
                return _migrate(session)
