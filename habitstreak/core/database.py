"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (StaticPool for SQLite)
- Test database support
- Table definitions for completions, streak state, audit and fraud flags
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Index, PrimaryKeyConstraint, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
import logging
import os

from habitstreak.core.config import settings

logger = logging.getLogger("habitstreak")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
    if test_url:
        return test_url

    return settings.DATABASE_URL


def build_engine(url: str) -> Engine:
    """Create an engine with pooling suited to the backend."""
    if url.startswith("sqlite"):
        # In-memory SQLite only exists on one connection; share it.
        return create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        echo=False,  # Set to True for SQL query logging
    )


@contextmanager
def get_db_session(engine: Engine):
    """
    Context manager for database sessions.

    Commits on success, rolls back on any exception.

    Usage:
        with get_db_session(engine) as session:
            session.execute(...)
    """
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine):
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine)


def check_connection(engine: Engine) -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Append-only completion log. Rows are deactivated, never deleted,
# except by a habit purge.
habit_completions = Table(
    'habit_completions',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('habit_id', String(100), nullable=False),
    Column('user_id', String(100), nullable=False),
    Column('completed_at', DateTime(timezone=True), nullable=False),
    Column('timezone', String(64), nullable=False),
    Column('difficulty', String(16), nullable=False),
    Column('notes', Text, nullable=True),
    Column('active', Boolean, nullable=False, default=True),
    Column('source', String(16), nullable=False, default='user'),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('deactivated_at', DateTime(timezone=True), nullable=True),
    Index('ix_habit_completions_key', 'habit_id', 'user_id'),
    Index('ix_habit_completions_created_at', 'created_at'),
)

# One aggregate document per (habit, user); version drives optimistic commits.
habit_streaks = Table(
    'habit_streaks',
    metadata,
    Column('habit_id', String(100), nullable=False),
    Column('user_id', String(100), nullable=False),
    Column('document', JSON, nullable=False),
    Column('version', Integer, nullable=False, default=1),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint('habit_id', 'user_id', name='pk_habit_streaks'),
)

audit_log = Table(
    'audit_log',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('ts', DateTime(timezone=True), nullable=False, index=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('habit_id', String(100), nullable=True),
    Column('action', String(100), nullable=False, index=True),
    Column('entity_type', String(32), nullable=False),
    Column('entity_id', String(200), nullable=True),
    Column('old_data', JSON, nullable=True),
    Column('new_data', JSON, nullable=True),
    Column('validation_errors', JSON, nullable=True),
    Column('suspicious_flags', JSON, nullable=True),
    Column('warnings', JSON, nullable=True),
    Column('risk_level', String(16), nullable=False),
    Column('request_id', String(100), nullable=True),
)

suspicious_activity = Table(
    'suspicious_activity',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('habit_id', String(100), nullable=True),
    Column('flags', JSON, nullable=False),
    Column('risk_level', String(16), nullable=False),
    Column('completions_count', Integer, nullable=False, default=0),
    Column('detected_at', DateTime(timezone=True), nullable=False, index=True),
    Column('reviewed', Boolean, nullable=False, default=False),
    Column('source', String(16), nullable=False),
)
