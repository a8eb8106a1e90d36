"""
Database connection management for the ad script service.

Builds the SQLModel engine for the task store and creates tables. An
in-memory SQLite URL gets a single shared connection so every session,
including those opened from a TestClient worker thread, sees one database.

SQLite has no row locks, so SQLite transactions start with BEGIN IMMEDIATE:
a transaction takes the write lock when it begins, and concurrent writers
queue on the busy timeout instead of failing to upgrade a read lock.
"""

import logging

from sqlalchemy import event, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

logger = logging.getLogger(__name__)

# Seconds a SQLite connection waits for the write lock
SQLITE_BUSY_TIMEOUT = 30


def _begin_immediate(engine: Engine) -> None:
    """Let SQLAlchemy, not pysqlite, emit BEGIN, and make it IMMEDIATE."""

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin_immediate(connection):
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create the engine for the task store.

    Args:
        database_url: SQLAlchemy URL (e.g. "postgresql+psycopg://..." or
            "sqlite:///./ad_refactor.db")
        echo: Whether to log emitted SQL

    Returns:
        SQLAlchemy Engine
    """
    if database_url.startswith("sqlite"):
        kwargs: dict = {
            "connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}
        }
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, echo=echo, **kwargs)
        _begin_immediate(engine)
        return engine

    return create_engine(database_url, echo=echo, pool_pre_ping=True)


def create_db_and_tables(engine: Engine) -> None:
    """
    Create database tables if they don't exist.

    Should be called on application startup.
    """
    # Register the table on SQLModel.metadata
    from ad_refactor.models.task import AdScriptTask  # noqa: F401

    SQLModel.metadata.create_all(engine)
    logger.info("Database tables initialized")


def check_database_connection(engine: Engine) -> bool:
    """
    Check if database connection is alive.

    Returns:
        bool: True if database is reachable, False otherwise
    """
    try:
        with Session(engine) as session:
            session.execute(text("SELECT 1"))
            return True
    except Exception as e:  # noqa: BLE001
        logger.warning("Database connection check failed: %s", e)
        return False
