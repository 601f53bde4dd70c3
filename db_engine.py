"""
Engine and session factory for the FolioLedger database.

The engine is built lazily from settings so tests can point DATABASE_URL at a
temporary file and call reset_engine(). On SQLite the journal runs in WAL mode,
letting the scheduled price refresh write while dashboards read.
"""

from sqlmodel import SQLModel, Session, create_engine
from typing import Optional
import logging

from config import get_settings

logger = logging.getLogger(__name__)

_engine: Optional[object] = None


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def get_engine():
    """Return the shared engine, creating it on first use."""
    global _engine
    if _engine is None:
        settings = get_settings()
        sqlite = _is_sqlite(settings.database_url)
        _engine = create_engine(
            settings.database_url,
            echo=settings.db_echo,
            # Price refresh threads share the engine
            connect_args={"check_same_thread": False} if sqlite else {}
        )
        if sqlite:
            _configure_sqlite(_engine)
    return _engine


def _configure_sqlite(engine) -> None:
    """Switch the journal to WAL and wait up to 5 s on a locked database."""
    try:
        with engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL")
            conn.exec_driver_sql("PRAGMA busy_timeout=5000")
        logger.info("SQLite journal set to WAL")
    except Exception as e:
        logger.warning(f"Could not configure SQLite journal: {e}")


def reset_engine():
    """Dispose the current engine so the next call picks up fresh settings."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


def init_db():
    """Create the portfolio, asset and transaction tables if they are missing."""
    from models import Asset, Portfolio, Transaction  # noqa: F401

    SQLModel.metadata.create_all(get_engine())
    logger.info("Database initialized")


def get_session() -> Session:
    """Open a session on the shared engine; callers use it as a context manager."""
    return Session(get_engine())
