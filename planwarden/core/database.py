"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite in-memory)
- Table definitions for users, entitlements, the webhook ledger and audit trail
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, JSON, Text, Index, UniqueConstraint, text
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from planwarden.core.config import settings


logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
    if test_url:
        return test_url

    return settings.DATABASE_URL


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            # One shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
        return kwargs
    return {
        "poolclass": QueuePool,
        "pool_size": POOL_SIZE,
        "max_overflow": MAX_OVERFLOW,
        "pool_timeout": POOL_TIMEOUT,
        "pool_recycle": POOL_RECYCLE,
    }


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

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

    if _engine is not None:
        _engine.dispose()

    _engine = create_engine(url, echo=False, **_engine_kwargs(url))

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Commits on clean exit, rolls back and re-raises otherwise.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Users table: primary user record, carries the denormalized plan projection
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('display_name', Text, nullable=True),
    Column('email', String(255), nullable=True),
    Column('status', String(50), nullable=False, server_default='active'),
    Column('stripe_customer_id', String(100), nullable=True, unique=True),
    # Projection of entitlements.plan / entitlements.plan_expires_at
    Column('plan', String(20), nullable=False, server_default='free'),
    Column('plan_expires_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_created_at', 'created_at'),
    Index('idx_users_stripe_customer_id', 'stripe_customer_id'),
)

# Entitlements: canonical per-user grant, written only by the webhook interpreter
entitlements = Table(
    'entitlements',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('plan', String(20), nullable=False, server_default='free'),
    Column('plan_expires_at', DateTime(timezone=True), nullable=True),
    Column('stripe_subscription_id', String(100), nullable=True),
    Column('status', String(20), nullable=False, server_default='active'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('user_id', name='uq_entitlements_user_id'),
    Index('idx_entitlements_subscription_id', 'stripe_subscription_id'),
)

# Webhook events: idempotency ledger, one row per provider event id forever
webhook_events = Table(
    'webhook_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_id', String(255), nullable=False),
    Column('event_type', String(100), nullable=False),
    Column('payload', JSON, nullable=True),
    Column('status', String(20), nullable=False, server_default='success'),  # success, failed
    Column('error_message', Text, nullable=True),
    Column('processed_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('event_id', name='uq_webhook_events_event_id'),
    Index('idx_webhook_events_status_processed', 'status', 'processed_at'),
    Index('idx_webhook_events_event_type', 'event_type'),
)

# Audit trail for entitlement-affecting actions
audit_events = Table(
    'audit_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('ts', DateTime(timezone=True), nullable=False),
    Column('user_id', String(100), nullable=True),
    Column('action', String(100), nullable=False),
    Column('event_id', String(255), nullable=True),
    Column('request_id', String(100), nullable=True),
    Column('metadata', JSON, nullable=True),
    Index('idx_audit_events_user_ts', 'user_id', 'ts'),
    Index('idx_audit_events_event_id', 'event_id'),
    Index('idx_audit_events_action', 'action'),
)

# Usage events: counted against the free plan quota
usage_events = Table(
    'usage_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('usage_key', String(100), nullable=False),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    Column('metadata', JSON, nullable=True),
    Index('idx_usage_events_user_key_occurred', 'user_id', 'usage_key', 'occurred_at'),
)
