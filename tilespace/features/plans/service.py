"""
Plan registry.

Handles:
- Plan seeding (guest, member, business)
- Per-plan quota ceilings, with built-in defaults for unseeded plans
- Plan resolution for a request identity
"""

from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy import select, insert

from tilespace.core.database import get_db_session, plans, plan_limits
from tilespace.core.errors import AppError
from tilespace.core.identity import GuestIdentity, Identity
from tilespace.features.accounts.service import get_account
from tilespace.models.plan import Plan, QUOTA_KINDS


class PlanConfigurationError(AppError):
    code = "plan_configuration_error"
    status_code = 500


def _limits(*values: int) -> Dict[str, int]:
    return dict(zip(QUOTA_KINDS, values))


DEFAULT_PLANS = {
    "guest": {
        "name": "Guest",
        "is_default": False,
        "limits": _limits(3, 5, 20, 30, 20, 20, 10, 0, 3000),
    },
    "member": {
        "name": "Member",
        "is_default": True,
        "limits": _limits(100, 1000, 2000, 2000, 5000, 5000, 2000, 10000, 1_000_000),
    },
    "business": {
        "name": "Business",
        "is_default": False,
        "limits": _limits(10000, 100000, 100000, 100000, 100000, 100000, 100000, 100000, 100_000_000),
    },
}

DEFAULT_MEMBER_PLAN = "member"
GUEST_PLAN = "guest"


def seed_plans() -> None:
    """
    Seed default plans and their ceilings (idempotent).

    Existing plans and limit rows are left untouched; missing limit rows are
    added so new quota kinds reach already-seeded databases.
    """
    now = datetime.now(timezone.utc)

    with get_db_session() as session:
        for plan_id, config in DEFAULT_PLANS.items():
            existing = session.execute(
                select(plans).where(plans.c.plan_id == plan_id)
            ).first()
            if not existing:
                session.execute(
                    insert(plans).values(
                        plan_id=plan_id,
                        name=config["name"],
                        is_default=config["is_default"],
                        created_at=now,
                    )
                )

            seeded_kinds = {
                row.quota_kind
                for row in session.execute(
                    select(plan_limits.c.quota_kind).where(plan_limits.c.plan_id == plan_id)
                )
            }
            for kind, value in config["limits"].items():
                if kind in seeded_kinds:
                    continue
                session.execute(
                    insert(plan_limits).values(
                        plan_id=plan_id,
                        quota_kind=kind,
                        value=value,
                        created_at=now,
                    )
                )


def _coerce_limit(plan_id: str, kind: str, value) -> int:
    # bool is an int subclass; a persisted true/false is not a ceiling
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise PlanConfigurationError(f"Plan {plan_id} has malformed limit for {kind}: {value!r}")
    return value


def limits_for(plan_id: str) -> Dict[str, int]:
    """
    Return the ceiling for every quota kind of plan_id.

    Raises:
        PlanConfigurationError: unknown plan, or a persisted value that is not
        a non-negative integer.
    """
    with get_db_session() as session:
        plan_row = session.execute(
            select(plans.c.plan_id).where(plans.c.plan_id == plan_id)
        ).first()
        rows = session.execute(
            select(plan_limits.c.quota_kind, plan_limits.c.value).where(plan_limits.c.plan_id == plan_id)
        ).all()

    defaults = DEFAULT_PLANS.get(plan_id, {}).get("limits")
    if not plan_row and defaults is None:
        raise PlanConfigurationError(f"Unknown plan: {plan_id}")

    persisted = {row.quota_kind: row.value for row in rows}
    limits: Dict[str, int] = {}
    for kind in QUOTA_KINDS:
        if kind in persisted:
            limits[kind] = _coerce_limit(plan_id, kind, persisted[kind])
        elif defaults is not None:
            limits[kind] = defaults[kind]
        else:
            raise PlanConfigurationError(f"Plan {plan_id} has no limit for {kind}")
    return limits


def get_plan(plan_id: str) -> Optional[Plan]:
    """Get a seeded plan with its limits."""
    with get_db_session() as session:
        row = session.execute(
            select(plans).where(plans.c.plan_id == plan_id)
        ).first()

    if not row:
        return None

    return Plan(
        plan_id=row.plan_id,
        name=row.name,
        is_default=bool(row.is_default),
        limits=limits_for(plan_id),
        created_at=row.created_at,
    )


def is_known_plan(plan_id: Optional[str]) -> bool:
    if not plan_id:
        return False
    if plan_id in DEFAULT_PLANS:
        return True
    return get_plan(plan_id) is not None


def plan_for(identity: Identity) -> str:
    """Guests are always on the guest plan; members use their persisted plan."""
    if isinstance(identity, GuestIdentity):
        return GUEST_PLAN
    account = get_account(identity.member_id)
    if account and account.plan:
        return account.plan
    return DEFAULT_MEMBER_PLAN


def limits_for_identity(identity: Identity) -> Dict[str, int]:
    # Guest ceilings never touch the durable store
    if isinstance(identity, GuestIdentity):
        return dict(DEFAULT_PLANS[GUEST_PLAN]["limits"])
    return limits_for(plan_for(identity))
