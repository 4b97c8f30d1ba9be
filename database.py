"""
Database Configuration and Session Management
============================================

This module provides the database engine, session factory, and table creation
functionality for the payment reconciliation service.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from config import Config
from models import Base
from services.domain_events import domain_event_bus

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")


def _enable_sqlite_savepoints(sqlite_engine) -> None:
    """Let SQLAlchemy own BEGIN so SAVEPOINT (begin_nested) behaves on pysqlite"""

    @event.listens_for(sqlite_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(database_url: str):
    """Create an engine with pool settings appropriate for the backend"""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            # One shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool
        sqlite_engine = create_engine(database_url, **kwargs)
        _enable_sqlite_savepoints(sqlite_engine)
        return sqlite_engine

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=5,           # Webhook bursts are short; keep the base pool small
        max_overflow=10,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,
        echo=False,
        connect_args={
            "connect_timeout": 10,
            "application_name": "payment_reconciliation",
        },
    )


engine = build_engine(Config.DATABASE_URL)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def create_tables(bind=None):
    """Create all database tables if they don't exist"""
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        Base.metadata.create_all(bind=bind or engine)
        logger.info("✅ Database tables ready")
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        raise


def test_connection() -> bool:
    """Check the database answers a trivial query"""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False


@contextmanager
def managed_session(session_factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """
    Sync context manager for database sessions.

    Commits on success and rolls back on any exception. Domain events collected
    during the unit of work are dispatched only after the commit succeeds, and
    dropped on rollback.
    """
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        domain_event_bus.discard_pending(session)
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()

    domain_event_bus.dispatch_pending(session)
