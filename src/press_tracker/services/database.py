"""
Database engine and transaction scope for Press Tracker.

This module provides:
- Engine creation for SQLite (default) or any SQLAlchemy URL
- The session factory used by every service
- session_scope(), the unit of work each service call runs in
- Table creation and a schema check for the CLI

Locking:
    Services lock the rows an allocation depends on with SELECT ... FOR
    UPDATE. SQLite ignores that clause, so file-backed SQLite engines start
    every transaction with BEGIN IMMEDIATE instead: the database write lock
    is taken up front and two press run completions targeting the same
    vessel run one after the other, the second seeing the first one's batch.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..models.base import Base
from ..utils.config import get_config

logger = logging.getLogger(__name__)

# Tables the pressing workflow cannot run without
REQUIRED_TABLES = (
    "purchase_lots",
    "vessels",
    "press_runs",
    "press_run_loads",
    "batches",
    "batch_compositions",
    "batch_merge_history",
)

# Seconds a SQLite writer waits for the write lock before failing
SQLITE_LOCK_TIMEOUT = 30

_engine: Optional[Engine] = None
_SessionFactory: Optional[sessionmaker] = None


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):
    """
    Enforce foreign keys on every SQLite connection.

    Hard-deleting a press run relies on ON DELETE SET NULL for merge history,
    batch origin and lot depletion references.
    """
    if "sqlite" not in type(dbapi_connection).__module__:
        return

    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _use_immediate_transactions(engine: Engine) -> None:
    """Make a pysqlite engine begin each transaction with BEGIN IMMEDIATE."""

    @event.listens_for(engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        # pysqlite would otherwise emit its own deferred BEGIN
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_database_engine(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """
    Create the database engine.

    Args:
        database_url: SQLAlchemy URL; defaults to the configured database
        echo: Log every SQL statement

    Returns:
        Configured Engine
    """
    if database_url is None:
        database_url = get_config().database_url

    logger.info(f"Creating database engine: {database_url}")

    if ":memory:" in database_url or "mode=memory" in database_url:
        # One shared connection so every session sees the same in-memory database
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": SQLITE_LOCK_TIMEOUT},
        )
        _use_immediate_transactions(engine)
        return engine

    return create_engine(database_url, echo=echo, pool_pre_ping=True)


def get_engine(force_recreate: bool = False) -> Engine:
    """Return the process-wide engine, creating it on first use."""
    global _engine, _SessionFactory

    if _engine is None or force_recreate:
        if _engine is not None:
            _engine.dispose()
        _engine = create_database_engine()
        _SessionFactory = None

    return _engine


def get_session_factory() -> sessionmaker:
    """
    Return the process-wide session factory.

    Sessions keep loaded attributes after commit so services can build
    their result dicts once the transaction has ended.
    """
    global _SessionFactory

    if _SessionFactory is None:
        _SessionFactory = sessionmaker(bind=get_engine(), expire_on_commit=False)

    return _SessionFactory


@contextmanager
def session_scope() -> Iterator[Session]:
    """
    Run a block as one transaction.

    Commits when the block finishes, rolls back and re-raises on any
    exception, and always closes the session. Every public service function
    opens one of these unless the caller passes its own session.

    Example:
        with session_scope() as session:
            press_run = press_run_service.load_press_run(session, 12, for_update=True)
            press_run.notes = "Second pressing of the Gravenstein bins"
    """
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_database(engine: Optional[Engine] = None) -> None:
    """
    Create any missing tables. Existing tables are left alone.

    Args:
        engine: Engine to use; defaults to the process-wide engine
    """
    engine = engine or get_engine()

    # Registers every model with Base.metadata
    from .. import models  # noqa: F401

    Base.metadata.create_all(engine)
    logger.info("Database tables initialized")


def missing_tables(engine: Optional[Engine] = None) -> list:
    """Names from REQUIRED_TABLES that the database does not have."""
    existing = set(inspect(engine or get_engine()).get_table_names())
    return [table for table in REQUIRED_TABLES if table not in existing]


def initialize_app_database() -> None:
    """Create the configured database and its tables, then check the schema."""
    config = get_config()

    if config.database_exists():
        logger.info(f"Using existing database at: {config.database_url}")
    else:
        logger.info(f"Creating new database at: {config.database_path}")

    engine = get_engine()
    init_database(engine)

    missing = missing_tables(engine)
    if missing:
        logger.warning(f"Database is missing tables: {', '.join(missing)}")
    else:
        logger.info("Database initialized and verified successfully")
