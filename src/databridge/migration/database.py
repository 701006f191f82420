"""
Database engine and session utilities.

Engines are created here for the execution state database as well as for
project source and target databases. Session scopes wrap state store
operations so that every failure surfaces as a StateError.
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine, event, pool
from sqlalchemy.engine import URL
from sqlalchemy.orm import Session, sessionmaker

from databridge.client.exceptions import ConfigurationError, StateError
from databridge.migration.models import Base
from databridge.utils.logging import get_logger

logger = get_logger(__name__)


def _enable_sqlite_foreign_keys(dbapi_conn, connection_record):
    """SQLite has foreign keys disabled by default; enable them per connection."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_database_engine(
    database_url: str | URL,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 3600,
) -> Engine:
    """
    Create a SQLAlchemy engine with appropriate settings.

    Args:
        database_url: Database connection URL
        echo: Whether to log SQL statements
        pool_size: Number of connections to maintain in the pool
        max_overflow: Connections allowed beyond pool_size
        pool_timeout: Timeout for getting a connection from the pool (seconds)
        pool_recycle: Recycle connections after this many seconds

    Returns:
        SQLAlchemy Engine instance

    Raises:
        ConfigurationError: If the URL is empty or the engine cannot be created
    """
    if not database_url:
        raise ConfigurationError("Database URL cannot be empty")

    url_text = database_url if isinstance(database_url, str) else database_url.drivername
    is_sqlite = url_text.startswith("sqlite")

    try:
        if is_sqlite:
            # NullPool avoids sharing SQLite connections across threads
            engine = create_engine(
                database_url,
                echo=echo,
                poolclass=pool.NullPool,
                connect_args={"check_same_thread": False},
            )
            event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        else:
            engine = create_engine(
                database_url,
                echo=echo,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=pool_timeout,
                pool_pre_ping=True,
                pool_recycle=pool_recycle,
            )
    except Exception as e:
        logger.error("database_engine_failed", error=str(e))
        raise ConfigurationError(f"Failed to create database engine: {e}") from e

    logger.debug(
        "database_engine_created",
        dialect=engine.dialect.name,
        pool_size="NullPool" if is_sqlite else pool_size,
    )
    return engine


def init_database(engine: Engine) -> sessionmaker:
    """
    Create all state tables if they don't exist and return a session factory.

    Idempotent and safe to call multiple times.

    Raises:
        ConfigurationError: If the tables cannot be created
    """
    try:
        Base.metadata.create_all(engine)
    except Exception as e:
        logger.error("database_init_failed", error=str(e))
        raise ConfigurationError(f"Failed to initialize database: {e}") from e

    logger.debug("database_initialized", tables=len(Base.metadata.tables))
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Commits on success, rolls back on exception and always closes the session.

    Yields:
        SQLAlchemy Session instance

    Raises:
        StateError: If the database operation fails
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error("database_session_rolled_back", error=str(e))
        raise StateError(f"Database operation failed: {e}") from e
    finally:
        session.close()
