"""
Engine lifecycle, sessions and the table definitions.

Postgres in deployment; tests and local runs can point DATABASE_URL (or
TEST_DATABASE_URL) at SQLite, which gets a single shared connection so an
in-memory database lives as long as the engine.
"""
from typing import Optional
from contextlib import contextmanager
import logging
import os

from sqlalchemy import create_engine, MetaData, Table, Column, String, DateTime, Boolean, Text, Index, false, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func

from reflect_backend.core.config import settings

logger = logging.getLogger("reflect")

metadata = MetaData()

POSTGRES_POOL = dict(pool_size=5, max_overflow=10, pool_timeout=30, pool_recycle=1800, pool_pre_ping=True)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_database_url() -> Optional[str]:
    return os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None) -> Engine:
    """(Re)bind the module engine. Raises ValueError when no URL is configured."""
    global _engine, _session_factory

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured")

    if url.startswith("sqlite"):
        engine = create_engine(url, poolclass=StaticPool, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(url, **POSTGRES_POOL)

    _engine = engine
    _session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine


def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


@contextmanager
def get_db_session():
    """Unit of work: commits on clean exit, rolls back on any exception."""
    if _session_factory is None:
        init_engine()
    session = _session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables() -> None:
    metadata.create_all(bind=get_engine())


def check_connection() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, ValueError) as e:
        logger.warning("database.unreachable", extra={"error": str(e)})
        return False
    return True


# Local user directory, mirrored from the auth provider
profiles = Table(
    'profiles',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('email', String(320), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_profiles_email', 'email'),
)

# Subscription snapshots: at most one row per user, overwritten by the ingestor
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('tier', String(100), nullable=False),
    Column('status', String(50), nullable=False),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('trial_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default=false()),
    Column('price_id', String(100), nullable=True),
    Column('product_id', String(100), nullable=True),
    Column('subscription_id', String(100), nullable=True),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Index('idx_subscriptions_status', 'status'),
    Index('idx_subscriptions_subscription_id', 'subscription_id'),
)

# Journals (reflection sessions); only saved rows count toward the free tier
reflections = Table(
    'reflections',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('summary', Text, nullable=False),
    Column('reflection_type', String(20), nullable=False),
    Column('saved', Boolean, nullable=False, server_default=false()),
    Column('title', Text, nullable=True),
    Column('generated_title', Text, nullable=True),
    Column('title_source', String(20), nullable=True),  # ai, default, manual
    Column('title_model', String(100), nullable=True),
    Column('title_generated_at', DateTime(timezone=True), nullable=True),
    Column('title_manual_override', Boolean, nullable=False, server_default=false()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('completed_at', DateTime(timezone=True), nullable=True),
    # Composite index for the free-tier count: (user_id, saved)
    Index('idx_reflections_user_saved', 'user_id', 'saved'),
    Index('idx_reflections_user_created', 'user_id', 'created_at'),
)
