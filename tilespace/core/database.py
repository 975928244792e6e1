"""
Durable storage for members: engine, sessions and table definitions.

Guests never reach these tables; their data lives in the guest workspace
cache until a paid checkout and migration copy it here. TEST_DATABASE_URL
wins over DATABASE_URL so tests can point at in-memory SQLite.
"""
from contextlib import contextmanager
import logging
import os
from typing import Iterator, Optional

from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    JSON,
    Text,
    Index,
    ForeignKey,
    UniqueConstraint,
    text,
    false,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func

from tilespace.core.config import settings


logger = logging.getLogger("tilespace")

metadata = MetaData()

POSTGRES_POOL_OPTIONS = {
    "poolclass": QueuePool,
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 3600,
    "pool_pre_ping": True,
}

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_database_url() -> Optional[str]:
    return os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL or settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None) -> Engine:
    """(Re)build the engine and session factory for database_url."""
    global _engine, _session_factory

    url = database_url or get_database_url()
    if not url:
        raise RuntimeError("DATABASE_URL is not configured")

    if url.startswith("sqlite"):
        # One shared connection, otherwise every session sees a new empty :memory: db
        _engine = create_engine(url, poolclass=StaticPool, connect_args={"check_same_thread": False})
    else:
        _engine = create_engine(url, **POSTGRES_POOL_OPTIONS)
    _session_factory = sessionmaker(bind=_engine, autoflush=False)
    return _engine


def get_engine() -> Engine:
    return _engine if _engine is not None else init_engine()


@contextmanager
def get_db_session() -> Iterator[Session]:
    """Session scope: commit when the block finishes, roll back if it raises."""
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


def reset_database() -> None:
    """Drop and recreate every table. Tests only."""
    engine = get_engine()
    metadata.drop_all(bind=engine)
    metadata.create_all(bind=engine)


def check_connection() -> bool:
    """Return True when a trivial query succeeds."""
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("database.check_failed", extra={"error_code": type(e).__name__})
        return False


# Accounts (members). Plan and billing state live on the account row.
accounts = Table(
    'accounts',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(320), nullable=True, unique=True),
    Column('plan', String(50), nullable=False, server_default='member'),
    Column('is_member', Boolean, nullable=False, default=False, server_default=false()),
    Column('stripe_customer_id', String(100), nullable=True, index=True),
    Column('subscription_id', String(100), nullable=True, index=True),
    Column('subscription_status', String(50), nullable=True),
    Column('membership_started_at', DateTime(timezone=True), nullable=True),
    Column('migration_needed', Boolean, nullable=False, default=False, server_default=false()),
    Column('migrated_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_accounts_created_at', 'created_at'),
)

# Plans
plans = Table(
    'plans',
    metadata,
    Column('plan_id', String(50), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('is_default', Boolean, nullable=False, default=False, server_default=false()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Per-plan ceilings, one row per quota kind
plan_limits = Table(
    'plan_limits',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('plan_id', String(50), ForeignKey('plans.plan_id'), nullable=False),
    Column('quota_kind', String(50), nullable=False),
    Column('value', JSON, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('plan_id', 'quota_kind', name='uq_plan_limits_plan_kind'),
    Index('idx_plan_limits_plan_id', 'plan_id'),
)

workspaces = Table(
    'workspaces',
    metadata,
    Column('pk', Integer, primary_key=True, autoincrement=True),
    Column('id', String(100), nullable=False),
    Column('user_id', String(100), nullable=False, index=True),
    Column('name', Text, nullable=False),
    Column('website', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('user_id', 'id', name='uq_workspaces_user_id'),
)

dashboards = Table(
    'dashboards',
    metadata,
    Column('pk', Integer, primary_key=True, autoincrement=True),
    Column('id', String(100), nullable=False),
    Column('user_id', String(100), nullable=False, index=True),
    Column('workspace_id', String(100), nullable=False),
    Column('name', Text, nullable=False),
    Column('bg_color', String(50), nullable=True),
    Column('template_id', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('user_id', 'id', name='uq_dashboards_user_id'),
    Index('idx_dashboards_user_workspace', 'user_id', 'workspace_id'),
)

tiles = Table(
    'tiles',
    metadata,
    Column('pk', Integer, primary_key=True, autoincrement=True),
    Column('id', String(100), nullable=False),
    Column('user_id', String(100), nullable=False),
    Column('workspace_id', String(100), nullable=False),
    Column('dashboard_id', String(100), nullable=False),
    Column('title', Text, nullable=False),
    Column('content', Text, nullable=False),
    Column('prompt', Text, nullable=False, server_default=''),
    Column('category', String(100), nullable=True),
    Column('model', String(100), nullable=True),
    Column('order_index', Integer, nullable=False, server_default='0'),
    Column('total_tokens', Integer, nullable=True),
    Column('attempts', Integer, nullable=False, server_default='0'),
    Column('history', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('user_id', 'dashboard_id', 'id', name='uq_tiles_user_dashboard_id'),
    Index('idx_tiles_user_dashboard_order', 'user_id', 'dashboard_id', 'order_index'),
)

contacts = Table(
    'contacts',
    metadata,
    Column('pk', Integer, primary_key=True, autoincrement=True),
    Column('id', String(100), nullable=False),
    Column('user_id', String(100), nullable=False),
    Column('workspace_id', String(100), nullable=False),
    Column('dashboard_id', String(100), nullable=False),
    Column('name', Text, nullable=False),
    Column('job_title', Text, nullable=True),
    Column('email', String(320), nullable=True),
    Column('phone', String(50), nullable=True),
    Column('company', Text, nullable=True),
    Column('linkedin_url', Text, nullable=True),
    Column('notes', Text, nullable=True),
    Column('history', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('user_id', 'dashboard_id', 'id', name='uq_contacts_user_dashboard_id'),
    Index('idx_contacts_user_dashboard', 'user_id', 'dashboard_id'),
)

notes = Table(
    'notes',
    metadata,
    Column('pk', Integer, primary_key=True, autoincrement=True),
    Column('id', String(100), nullable=False),
    Column('user_id', String(100), nullable=False),
    Column('workspace_id', String(100), nullable=False),
    Column('dashboard_id', String(100), nullable=False),
    Column('title', Text, nullable=False),
    Column('content', Text, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('user_id', 'dashboard_id', 'id', name='uq_notes_user_dashboard_id'),
    Index('idx_notes_user_dashboard', 'user_id', 'dashboard_id'),
)

# Purchase ledger, one row per provider checkout session
purchases = Table(
    'purchases',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('stripe_session_id', String(255), nullable=False),
    Column('stripe_customer_id', String(100), nullable=True),
    Column('subscription_id', String(100), nullable=True),
    Column('amount', Integer, nullable=False, server_default='0'),  # minor units
    Column('currency', String(10), nullable=False, server_default='usd'),
    Column('plan', String(50), nullable=True),
    Column('status', String(50), nullable=False, server_default='completed'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('stripe_session_id', name='uq_purchases_stripe_session_id'),
    Index('idx_purchases_user_created', 'user_id', 'created_at'),
)

# Webhook idempotency
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of raw body
    Column('processed', Boolean, nullable=False, default=False, server_default=false()),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('stripe_event_id', name='uq_billing_events_stripe_id'),
    Index('idx_billing_events_received_at', 'received_at'),
)
