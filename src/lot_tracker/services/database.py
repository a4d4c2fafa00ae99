"""
Database connection and session management for the Lot Tracker.

This module provides:
- Database engine creation and configuration
- Session factory for database operations
- Database initialization (create tables)
- WAL mode configuration and foreign key enforcement for SQLite
"""

from typing import Optional
from contextlib import contextmanager
import logging

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import close_all_sessions, sessionmaker, Session
from sqlalchemy.pool import StaticPool

from ..utils.config import get_config
from ..models.base import Base
from .change_feed import discard_pending_changes

logger = logging.getLogger(__name__)

# Global engine and session factory
_engine: Optional[Engine] = None
_SessionFactory: Optional[sessionmaker] = None

EXPECTED_TABLES = ("production_units", "orders", "order_station_counters", "lot_sequences")


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):
    """
    Set SQLite pragmas on connection.

    Enables foreign key constraints (so history rows cascade with their unit)
    and WAL mode so several terminals can read while one writes.
    """
    if type(dbapi_connection).__module__.split(".")[0] not in ("sqlite3", "pysqlite2"):
        return

    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


def create_database_engine(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """
    Create and configure the database engine.

    Args:
        database_url: Optional database URL. If None, uses config default.
        echo: If True, log all SQL statements (useful for debugging)

    Returns:
        Configured SQLAlchemy Engine
    """
    if database_url is None:
        config = get_config()
        config.ensure_directories()
        database_url = config.database_url

    logger.info(f"Creating database engine: {database_url}")

    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo, pool_pre_ping=True)

    if ":memory:" in database_url or "mode=memory" in database_url:
        # In-memory databases must share one connection across threads
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return create_engine(
        database_url,
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": 30},
    )


def _register_models() -> None:
    # Importing the package registers every model with Base.metadata
    from .. import models  # noqa: F401


def init_database(engine: Optional[Engine] = None) -> None:
    """
    Initialize the database by creating all tables.

    Safe to call multiple times - existing tables won't be recreated.

    Args:
        engine: Optional engine to use. If None, uses global engine.
    """
    if engine is None:
        engine = get_engine()

    logger.info("Initializing database tables")
    _register_models()
    Base.metadata.create_all(engine)
    logger.info("Database tables initialized successfully")


def get_engine(force_recreate: bool = False) -> Engine:
    """
    Get the global database engine (created on first use).

    Args:
        force_recreate: If True, recreate the engine even if one exists

    Returns:
        Database engine
    """
    global _engine

    if _engine is None or force_recreate:
        _engine = create_database_engine()

    return _engine


def get_session_factory() -> sessionmaker:
    """
    Get the global session factory.

    Returns:
        Session factory (sessionmaker)
    """
    global _SessionFactory

    if _SessionFactory is None:
        engine = get_engine()
        _SessionFactory = sessionmaker(bind=engine, expire_on_commit=False)

    return _SessionFactory


def get_session() -> Session:
    """
    Create a new database session.

    Prefer session_scope() unless the caller needs to manage the
    transaction explicitly.
    """
    session_factory = get_session_factory()
    return session_factory()


@contextmanager
def session_scope():
    """
    Provide a transactional scope for database operations.

    Commits on success, rolls back on exception and always closes the
    session. Change events queued during the transaction are delivered by
    the change feed once the commit succeeds.

    Yields:
        Database session

    Example:
        with session_scope() as session:
            unit = session.query(ProductionUnit).filter_by(lot_number=lot).one()
            unit.note = "checked"
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        discard_pending_changes(session)
        raise
    finally:
        session.close()


def insert_if_missing(session: Session, model, values: dict, index_elements: list) -> None:
    """
    Insert a row unless one with the same unique key already exists.

    Uses INSERT ... ON CONFLICT DO NOTHING on SQLite and PostgreSQL so that
    concurrent writers racing to create the same row never fail.

    Args:
        session: Active session (the insert joins its transaction)
        model: Mapped class to insert into
        values: Column values for the new row
        index_elements: Columns of the unique constraint that may conflict
    """
    dialect = session.get_bind().dialect.name

    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    elif dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy import insert as generic_insert

        try:
            with session.begin_nested():
                session.execute(generic_insert(model).values(**values))
        except IntegrityError:
            # Row already present
            logger.debug(f"{model.__tablename__} row already exists: {values}")
        return

    stmt = insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    session.execute(stmt)


def database_exists() -> bool:
    """
    Check if the database file exists.

    Returns:
        True if database exists, False otherwise
    """
    return get_config().database_exists()


def verify_database() -> bool:
    """
    Verify that the database is accessible and has the lot tracking tables.

    Returns:
        True if database is valid, False otherwise
    """
    try:
        tables = inspect(get_engine()).get_table_names()
    except SQLAlchemyError as e:
        logger.error(f"Database verification failed: {e}")
        return False
    return all(table in tables for table in EXPECTED_TABLES)


def reset_database(confirm: bool = False) -> None:
    """
    Drop all tables and recreate the database.

    WARNING: This will delete all data!

    Args:
        confirm: Must be True to actually reset. Safety check.

    Raises:
        ValueError: If confirm is not True
    """
    if not confirm:
        raise ValueError("Must pass confirm=True to reset database. This will delete all data!")

    logger.warning("RESETTING DATABASE - ALL DATA WILL BE LOST")

    engine = get_engine()
    _register_models()

    Base.metadata.drop_all(engine)
    logger.info("All tables dropped")

    Base.metadata.create_all(engine)
    logger.info("Tables recreated")


def close_connections() -> None:
    """
    Close all database connections.

    Useful for cleanup or before application exit.
    """
    global _engine, _SessionFactory

    if _SessionFactory is not None:
        close_all_sessions()
        _SessionFactory = None

    if _engine is not None:
        _engine.dispose()
        _engine = None

    logger.info("Database connections closed")


def initialize_app_database() -> None:
    """
    Initialize the application database.

    Main entry point for setting up the database when the CLI starts. Creates
    the database file and tables if they don't exist.
    """
    config = get_config()

    if config.database_url.startswith("sqlite:///") and not config.database_exists():
        logger.info(f"Creating new database at: {config.database_path}")
    else:
        logger.info(f"Using database: {config.database_url}")

    engine = get_engine()
    init_database(engine)

    if verify_database():
        logger.info("Database initialized and verified successfully")
    else:
        logger.warning("Database verification failed - tables may not exist")
