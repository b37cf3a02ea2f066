"""
SQLite database setup for the scheduler activity journal.
"""
import logging
from datetime import datetime, timedelta

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from config import CONFIG_DIR

logger = logging.getLogger(__name__)

# Database file location
JOURNAL_DB_FILE = CONFIG_DIR / "journal.db"

# SQLAlchemy Base for model declarations
Base = declarative_base()

# Engine and session factory (initialized on startup)
_engine = None
_SessionLocal = None


def get_database_url() -> str:
    """Get the SQLite database URL."""
    return f"sqlite:///{JOURNAL_DB_FILE}"


def init_db(purge_days: int = 30) -> None:
    """Initialize the database, creating tables if they don't exist."""
    global _engine, _SessionLocal

    try:
        CONFIG_DIR.mkdir(parents=True, exist_ok=True)

        database_url = get_database_url()
        logger.info(f"Initializing journal database at {JOURNAL_DB_FILE}")

        _engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,  # Set to True for SQL debugging
        )

        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)

        # Import models to register them with Base
        from models import JournalEntry  # noqa: F401

        Base.metadata.create_all(bind=_engine)
        logger.debug("Database tables created/verified")

        _perform_maintenance(_engine, purge_days)

        logger.info("Journal database initialized successfully")
    except Exception as e:
        logger.exception(f"Failed to initialize database: {e}")
        raise


def _perform_maintenance(engine, purge_days: int) -> None:
    """Perform database maintenance on startup: purge old entries and vacuum."""
    with engine.connect() as conn:
        try:
            cutoff_date = datetime.utcnow() - timedelta(days=purge_days)
            result = conn.execute(
                text("DELETE FROM journal_entries WHERE timestamp < :cutoff"),
                {"cutoff": cutoff_date}
            )
            if result.rowcount > 0:
                logger.info(f"Purged {result.rowcount} journal entries older than {purge_days} days")
            conn.commit()

            # Run VACUUM to reclaim disk space (must be outside transaction)
            conn.execute(text("VACUUM"))
            logger.debug("Database vacuum completed")
        except Exception as e:
            logger.error(f"Database maintenance failed: {e}")


def get_session():
    """Get a database session. Use as context manager or close manually."""
    if _SessionLocal is None:
        logger.error("Attempted to get database session before initialization")
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _SessionLocal()

