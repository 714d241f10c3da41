"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite in-memory via StaticPool)
- Table definitions for users, subscriptions, usage records and processed events
"""
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, Optional
import os

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError as DBAPITimeoutError,
)
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func

from responsiai.core.config import settings
from responsiai.core.errors import TransientStoreError, UnrecoverableStoreError

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine: Optional[Engine] = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def build_engine(url: str) -> Engine:
    """Create an engine with pooling appropriate for the URL."""
    if url.startswith("sqlite"):
        # Single shared connection so in-memory databases survive across sessions
        return create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
        echo=False,  # Set to True for SQL query logging
    )


def init_engine(database_url: Optional[str] = None) -> Engine:
    """
    Initialize the global SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    _engine = build_engine(url)
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )
    return _engine


def get_engine() -> Engine:
    """Get the current SQLAlchemy engine."""
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def session_scope(engine: Optional[Engine] = None) -> Generator[Session, None, None]:
    """
    Transactional session bound to `engine` (or the global engine).

    Commits on success, rolls back on any exception.

    Usage:
        with session_scope(engine) as session:
            session.execute(...)
    """
    if engine is None:
        session = get_session_factory()()
    else:
        session = Session(bind=engine, autoflush=False)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Optional[Engine] = None) -> None:
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine or get_engine())


def drop_all_tables(engine: Optional[Engine] = None) -> None:
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    metadata.drop_all(bind=engine or get_engine())


@contextmanager
def store_errors(operation: str):
    """Map driver exceptions onto the store error taxonomy.

    IntegrityError is left to callers, which use it for insert-if-absent.
    """
    try:
        yield
    except IntegrityError:
        raise
    except (OperationalError, InterfaceError, DBAPITimeoutError) as e:
        raise TransientStoreError(f"{operation} failed: {e}") from e
    except DBAPIError as e:
        if e.connection_invalidated:
            raise TransientStoreError(f"{operation} failed: {e}") from e
        raise UnrecoverableStoreError(f"{operation} failed: {e}") from e
    except SQLAlchemyError as e:
        raise UnrecoverableStoreError(f"{operation} failed: {e}") from e


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on round trip; treat naive values as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Users
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(255), nullable=False, unique=True),
    Column('display_name', Text, nullable=True),
    Column('plan_tier', String(20), nullable=False, server_default='free'),
    Column('external_customer_id', String(100), nullable=True, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_app_users_plan_tier', 'plan_tier'),
)

# Subscriptions (canceled rows are kept for history)
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('external_subscription_id', String(100), nullable=False, unique=True),
    Column('status', String(20), nullable=False),  # none, trialing, active, past_due, canceled
    Column('cancel_at_period_end', Boolean, nullable=False, server_default='false'),
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('plan_tier', String(20), nullable=False),
    Column('version', Integer, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_subscriptions_user_status', 'user_id', 'status'),
    # At most one non-canceled subscription per user
    Index(
        'uq_subscriptions_open_per_user',
        'user_id',
        unique=True,
        postgresql_where=text("status <> 'canceled'"),
        sqlite_where=text("status <> 'canceled'"),
    ),
)

# Usage records, one row per (user, calendar month)
usage_records = Table(
    'usage_records',
    metadata,
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('period_key', String(7), nullable=False),  # YYYY-MM
    Column('count', Integer, nullable=False, server_default='0'),
    Column('limit_snapshot', Integer, nullable=True),  # NULL = unlimited
    Column('notified_threshold', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    PrimaryKeyConstraint('user_id', 'period_key', name='pk_usage_records'),
)

# Processed webhook events (idempotency log)
processed_events = Table(
    'processed_events',
    metadata,
    Column('event_id', String(100), primary_key=True),
    Column('event_type', String(100), nullable=False),
    Column('status', String(20), nullable=False),  # processing, processed
    Column('claimed_at', DateTime(timezone=True), nullable=False),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('outcome', String(200), nullable=True),
    Index('idx_processed_events_processed_at', 'processed_at'),
)
