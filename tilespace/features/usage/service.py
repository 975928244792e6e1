"""
Usage enforcement gate.

Two ways to consume quota:
- check_limit() before a fallible action (e.g. an LLM call), then
  increment_usage() once it succeeded. Concurrent requests from one subject
  can both pass the check; overshoot is bounded by the request concurrency.
- reserve_usage() for cheap mutations: an atomic conditional increment in the
  counter store, rolled back with release_usage() if the write fails.

Guest usage is tracked under both the cookie id and the client IP, and the
effective usage is the larger of the two so clearing cookies does not reset it.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from tilespace.core.config import settings
from tilespace.core.errors import LimitExceededError, ValidationError
from tilespace.core.identity import GuestIdentity, Identity, MemberIdentity
from tilespace.core.logging import log_event
from tilespace.core.metrics import quota_checks_total, quota_store_errors_total
from tilespace.features.plans.service import (
    DEFAULT_PLANS,
    GUEST_PLAN,
    limits_for_identity,
    plan_for,
)
from tilespace.features.usage.store import QuotaStore, QuotaStoreUnavailable, get_quota_store
from tilespace.models.plan import QUOTA_KINDS


@dataclass(frozen=True)
class LimitDecision:
    allowed: bool
    reason: Optional[str]
    current: int
    requested: int
    maximum: int
    plan_id: str

    @property
    def remaining(self) -> int:
        return max(self.maximum - self.current, 0)


def guest_key(guest_id: str, kind: str) -> str:
    return f"guest:{guest_id}:usage:{kind}"


def guest_ip_key(ip: str, kind: str) -> str:
    return f"guest_ip:{ip}:usage:{kind}"


def member_key(member_id: str, kind: str) -> str:
    return f"member:{member_id}:usage:{kind}"


def limit_reason(kind: str, current: int, requested: int, maximum: int) -> str:
    return f"Limit reached for {kind} (used: {current}, requested: {requested}, maximum: {maximum})"


def _validate(kind: str, amount: int) -> None:
    if kind not in QUOTA_KINDS:
        raise ValidationError(f"Unknown quota kind: {kind}")
    if amount < 0:
        raise ValidationError("Requested amount must be non-negative")


def _fail_open(identity: Identity) -> bool:
    if isinstance(identity, GuestIdentity):
        return settings.QUOTA_FAIL_OPEN_GUESTS
    return settings.QUOTA_FAIL_OPEN_MEMBERS


def _store_failure(identity: Identity, kind: str, action: str, exc: Exception) -> None:
    quota_store_errors_total.inc(labels={"tier": identity.tier})
    log_event(
        "error",
        "quota.store_unavailable",
        user_id=identity.subject,
        error_code="quota_store_unavailable",
        extra={"tier": identity.tier, "quota_kind": kind, "action": action, "error": exc},
    )


def _degraded_decision(identity: Identity, kind: str, requested: int, maximum: int, plan_id: str) -> LimitDecision:
    if _fail_open(identity):
        return LimitDecision(True, None, 0, requested, maximum, plan_id)
    return LimitDecision(False, "Usage limits are temporarily unavailable", 0, requested, maximum, plan_id)


def _decide(identity: Identity, kind: str, current: int, requested: int, maximum: int, plan_id: str) -> LimitDecision:
    allowed = current + requested <= maximum
    reason = None if allowed else limit_reason(kind, current, requested, maximum)
    quota_checks_total.inc(labels={
        "tier": identity.tier,
        "kind": kind,
        "outcome": "allowed" if allowed else "denied",
    })
    return LimitDecision(allowed, reason, current, requested, maximum, plan_id)


def _guest_usage(store: QuotaStore, guest_id: str, ip: str, kind: str) -> int:
    return max(store.get(guest_key(guest_id, kind)), store.get(guest_ip_key(ip, kind)))


def check_guest_limit(
    identity: GuestIdentity,
    kind: str,
    max_limit: Optional[int] = None,
    requested: int = 1,
    store: Optional[QuotaStore] = None,
) -> LimitDecision:
    """
    Check the dual cookie/IP counters against a guest ceiling.

    max_limit overrides the seeded guest ceiling; requested lets batch
    operations pre-check a bulk increment in one call. A newly minted guest
    cookie travels on the identity and is attached by the response layer.
    """
    _validate(kind, requested)
    store = store or get_quota_store()
    maximum = max_limit if max_limit is not None else DEFAULT_PLANS[GUEST_PLAN]["limits"][kind]
    try:
        current = _guest_usage(store, identity.guest_id, identity.ip, kind)
    except QuotaStoreUnavailable as exc:
        _store_failure(identity, kind, "check", exc)
        return _degraded_decision(identity, kind, requested, maximum, GUEST_PLAN)
    return _decide(identity, kind, current, requested, maximum, GUEST_PLAN)


def increment_guest_usage(
    guest_id: str,
    ip: str,
    kind: str,
    amount: int = 1,
    store: Optional[QuotaStore] = None,
) -> None:
    """Increment both guest counters and refresh their window TTL."""
    store = store or get_quota_store()
    ttl = settings.GUEST_LIMIT_WINDOW_SECONDS
    for key in (guest_key(guest_id, kind), guest_ip_key(ip, kind)):
        store.increment(key, amount, ttl_seconds=ttl)


def check_limit(
    identity: Identity,
    kind: str,
    requested: int = 1,
    store: Optional[QuotaStore] = None,
) -> LimitDecision:
    _validate(kind, requested)
    if isinstance(identity, GuestIdentity):
        return check_guest_limit(identity, kind, requested=requested, store=store)

    store = store or get_quota_store()
    plan_id = plan_for(identity)
    maximum = limits_for_identity(identity)[kind]
    try:
        current = store.get(member_key(identity.member_id, kind))
    except QuotaStoreUnavailable as exc:
        _store_failure(identity, kind, "check", exc)
        return _degraded_decision(identity, kind, requested, maximum, plan_id)
    return _decide(identity, kind, current, requested, maximum, plan_id)


def increment_usage(
    identity: Identity,
    kind: str,
    amount: int = 1,
    store: Optional[QuotaStore] = None,
) -> None:
    """Record usage after the downstream action succeeded.

    A store outage here is logged, not raised: the action already happened.
    """
    _validate(kind, amount)
    if amount == 0:
        return
    store = store or get_quota_store()
    try:
        if isinstance(identity, GuestIdentity):
            increment_guest_usage(identity.guest_id, identity.ip, kind, amount, store=store)
        else:
            store.increment(member_key(identity.member_id, kind), amount)
    except QuotaStoreUnavailable as exc:
        _store_failure(identity, kind, "increment", exc)


def reserve_usage(
    identity: Identity,
    kind: str,
    amount: int = 1,
    store: Optional[QuotaStore] = None,
) -> LimitDecision:
    """Atomically consume amount if it fits under the ceiling."""
    _validate(kind, amount)
    store = store or get_quota_store()
    plan_id = plan_for(identity)
    maximum = limits_for_identity(identity)[kind]

    try:
        if isinstance(identity, MemberIdentity):
            applied, value = store.increment_within(member_key(identity.member_id, kind), amount, maximum)
            current = value - amount if applied else value
            return _decide(identity, kind, current, amount, maximum, plan_id)

        ttl = settings.GUEST_LIMIT_WINDOW_SECONDS
        cookie_key = guest_key(identity.guest_id, kind)
        ip_key = guest_ip_key(identity.ip, kind)
        applied, cookie_value = store.increment_within(cookie_key, amount, maximum, ttl)
        if not applied:
            current = max(cookie_value, store.get(ip_key))
            return _decide(identity, kind, current, amount, maximum, plan_id)
        ip_applied, ip_value = store.increment_within(ip_key, amount, maximum, ttl)
        if not ip_applied:
            # Roll the cookie counter back to its previous value
            store.decrement(cookie_key, amount)
            current = max(cookie_value - amount, ip_value)
            return _decide(identity, kind, current, amount, maximum, plan_id)
        current = max(cookie_value, ip_value) - amount
        return _decide(identity, kind, current, amount, maximum, plan_id)
    except QuotaStoreUnavailable as exc:
        _store_failure(identity, kind, "reserve", exc)
        return _degraded_decision(identity, kind, amount, maximum, plan_id)


def release_usage(
    identity: Identity,
    kind: str,
    amount: int = 1,
    store: Optional[QuotaStore] = None,
) -> None:
    """Undo a reservation whose mutation failed."""
    store = store or get_quota_store()
    try:
        if isinstance(identity, GuestIdentity):
            store.decrement(guest_key(identity.guest_id, kind), amount)
            store.decrement(guest_ip_key(identity.ip, kind), amount)
        else:
            store.decrement(member_key(identity.member_id, kind), amount)
    except QuotaStoreUnavailable as exc:
        _store_failure(identity, kind, "release", exc)


def get_usage(identity: Identity, store: Optional[QuotaStore] = None) -> Dict[str, int]:
    """Current effective usage for every quota kind (zeros if the store is down)."""
    store = store or get_quota_store()
    usage: Dict[str, int] = {}
    try:
        for kind in QUOTA_KINDS:
            if isinstance(identity, GuestIdentity):
                usage[kind] = _guest_usage(store, identity.guest_id, identity.ip, kind)
            else:
                usage[kind] = store.get(member_key(identity.member_id, kind))
    except QuotaStoreUnavailable as exc:
        _store_failure(identity, "*", "read", exc)
        return {kind: 0 for kind in QUOTA_KINDS}
    return usage


def enforce(decision: LimitDecision) -> LimitDecision:
    """Raise LimitExceededError (HTTP 429) for a denied decision."""
    if not decision.allowed:
        raise LimitExceededError(
            decision.reason or "Limit reached",
            details={
                "used": decision.current,
                "requested": decision.requested,
                "maximum": decision.maximum,
                "plan": decision.plan_id,
            },
        )
    return decision
