"""
Member account persistence.

Accounts are created lazily on first authenticated write and updated by
checkout reconciliation and subscription webhooks.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from tilespace.core.database import get_db_session, accounts
from tilespace.models.account import Account


def _to_account(row) -> Account:
    return Account(
        user_id=row.user_id,
        email=row.email,
        plan=row.plan,
        is_member=bool(row.is_member),
        stripe_customer_id=row.stripe_customer_id,
        subscription_id=row.subscription_id,
        subscription_status=row.subscription_status,
        membership_started_at=row.membership_started_at,
        migration_needed=bool(row.migration_needed),
        migrated_at=row.migrated_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def get_account(user_id: str) -> Optional[Account]:
    with get_db_session() as session:
        row = session.execute(
            select(accounts).where(accounts.c.user_id == user_id)
        ).first()
        return _to_account(row) if row else None


def get_account_by_email(email: str) -> Optional[Account]:
    if not email:
        return None
    with get_db_session() as session:
        row = session.execute(
            select(accounts).where(accounts.c.email == email)
        ).first()
        return _to_account(row) if row else None


def get_or_create_account(user_id: str, email: Optional[str] = None) -> Account:
    """Return the account for user_id, inserting a default row if absent."""
    existing = get_account(user_id)
    if existing:
        return existing

    now = datetime.now(timezone.utc)
    try:
        with get_db_session() as session:
            session.execute(
                insert(accounts).values(
                    user_id=user_id,
                    email=email,
                    plan="member",
                    is_member=False,
                    migration_needed=False,
                    created_at=now,
                    updated_at=now,
                )
            )
    except IntegrityError:
        # Concurrent insert, or the email already belongs to another account
        existing = get_account(user_id)
        if existing:
            return existing
        with get_db_session() as session:
            session.execute(
                insert(accounts).values(
                    user_id=user_id,
                    plan="member",
                    is_member=False,
                    migration_needed=False,
                    created_at=now,
                    updated_at=now,
                )
            )

    return get_account(user_id)


def set_migration_needed(user_id: str, needed: bool) -> None:
    with get_db_session() as session:
        session.execute(
            update(accounts)
            .where(accounts.c.user_id == user_id)
            .values(migration_needed=needed, updated_at=datetime.now(timezone.utc))
        )


def mark_migrated(user_id: str) -> None:
    """Clear migration_needed and stamp the completed migration."""
    now = datetime.now(timezone.utc)
    with get_db_session() as session:
        session.execute(
            update(accounts)
            .where(accounts.c.user_id == user_id)
            .values(migration_needed=False, migrated_at=now, updated_at=now)
        )
