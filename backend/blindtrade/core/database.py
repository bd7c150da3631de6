"""
Database utilities and connection management.

WHAT: SQLite database setup with WAL mode
WHY: Store negotiations and their message logs durably, shared by worker threads
HOW: SQLAlchemy sync engine v2 with WAL mode, busy timeout, session management
"""

from sqlalchemy import create_engine, text, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from pathlib import Path

from .config import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)


def create_db_engine(url: str, timeout: float = settings.DATABASE_TIMEOUT, echo: bool = False) -> Engine:
    """
    Create a SQLite engine with WAL mode and foreign keys enabled.

    Args:
        url: SQLAlchemy database URL
        timeout: Seconds a connection waits on a locked database
        echo: Log SQL statements

    Returns:
        Configured Engine
    """
    if url.startswith("sqlite:///") and ":memory:" not in url:
        # Ensure data directory exists
        Path(url.replace("sqlite:///", "")).parent.mkdir(parents=True, exist_ok=True)

    db_engine = create_engine(
        url,
        connect_args={
            "check_same_thread": False,  # Allow multi-threaded access
            "timeout": timeout,
        },
        echo=echo,
        future=True
    )

    # Enable WAL mode on connection
    @event.listens_for(db_engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        """Enable WAL mode for better concurrency."""
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")  # Enable FK constraints
        cursor.close()

    return db_engine


def create_session_factory(db_engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=db_engine,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False
    )


engine = create_db_engine(settings.DATABASE_URL, echo=settings.DEBUG)

# Session factory
SessionLocal = create_session_factory(engine)

# Base for models
Base = declarative_base()


def ping_database() -> dict:
    """
    Check database connectivity.

    Returns:
        Dict with status and info
    """
    try:
        with engine.connect() as conn:
            result = conn.execute(text("SELECT 1"))
            result.fetchone()

        return {
            "available": True,
            "url": settings.DATABASE_URL,
            "error": None
        }
    except Exception as e:
        logger.error(f"Database ping failed: {e}")
        return {
            "available": False,
            "url": settings.DATABASE_URL,
            "error": str(e)
        }


def init_db(db_engine: Engine = None):
    """Initialize database tables and enable WAL mode."""
    # Register ORM models on Base.metadata
    from . import models  # noqa: F401

    db_engine = db_engine or engine
    with db_engine.connect() as conn:
        # Ensure WAL mode
        conn.execute(text("PRAGMA journal_mode=WAL"))
        conn.execute(text("PRAGMA foreign_keys=ON"))
        conn.commit()

    # Create all tables
    Base.metadata.create_all(bind=db_engine)
    logger.info("Database initialized with WAL mode")


def close_db():
    """Close database connections."""
    engine.dispose()
    logger.info("Database connections closed")
