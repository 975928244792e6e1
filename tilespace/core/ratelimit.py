"""
Fixed-window request rate limiter.

Counters live in the quota counter store (Redis, or process memory when
QUOTA_BACKEND=memory), keyed by tier, client and window number:

    rate_limit:{tier}:{user:<id>|ip:<addr>}:{window}

so every worker shares one count per client and window.
"""

import math
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

from tilespace.core.config import Settings, settings
from tilespace.features.usage.store import QuotaStore, get_quota_store

WINDOW_SECONDS = 60

PUBLIC = "public"
AUTHENTICATED = "authenticated"
CRITICAL = "critical"

TIER_MESSAGES = {
    PUBLIC: "Too many requests. Please try again later.",
    AUTHENTICATED: "Rate limit exceeded. Please slow down.",
    CRITICAL: "Rate limit exceeded for this operation. Please wait before trying again.",
}

# Model calls and payment flows
_CRITICAL_ROUTES = (
    re.compile(r"^/api/workspace/tiles$"),
    re.compile(r"^/api/workspace/tiles/[^/]+/(chat|regenerate)$"),
    re.compile(r"^/api/workspace/contacts/[^/]+/chat$"),
    re.compile(r"^/api/stripe/checkout$"),
    re.compile(r"^/api/create-account$"),
)

# Signed by the payment provider and retried by it; never throttled
_EXEMPT_PATHS = frozenset({"/api/webhooks/stripe"})

_MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


@dataclass
class RateLimitConfig:
    enabled: bool = True
    public_per_minute: int = 10
    authenticated_per_minute: int = 100
    critical_per_minute: int = 5

    def limit_for(self, tier: str) -> int:
        return {
            PUBLIC: self.public_per_minute,
            AUTHENTICATED: self.authenticated_per_minute,
            CRITICAL: self.critical_per_minute,
        }[tier]


def build_rate_limit_config(cfg: Optional[Settings] = None) -> RateLimitConfig:
    cfg = cfg or settings
    return RateLimitConfig(
        enabled=cfg.RATE_LIMIT_ENABLED,
        public_per_minute=max(1, cfg.RATE_LIMIT_PUBLIC_PER_MINUTE),
        authenticated_per_minute=max(1, cfg.RATE_LIMIT_AUTHENTICATED_PER_MINUTE),
        critical_per_minute=max(1, cfg.RATE_LIMIT_CRITICAL_PER_MINUTE),
    )


def tier_for(method: str, path: str, is_member: bool) -> Optional[str]:
    """Pick the tier for a request, or None when it is not limited.

    Only mutations under /api are limited; reads stay free.
    """
    if method.upper() not in _MUTATING_METHODS or not path.startswith("/api/") or path in _EXEMPT_PATHS:
        return None
    if any(pattern.match(path) for pattern in _CRITICAL_ROUTES):
        return CRITICAL
    return AUTHENTICATED if is_member else PUBLIC


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


class FixedWindowRateLimiter:
    def __init__(
        self,
        config: RateLimitConfig,
        store: Optional[QuotaStore] = None,
        time_fn: Callable[[], float] = time.time,
    ):
        self.config = config
        self._store = store
        self.time_fn = time_fn

    @property
    def store(self) -> QuotaStore:
        return self._store or get_quota_store()

    def hit(self, tier: str, client_key: str) -> RateLimitDecision:
        """Count one request; QuotaStoreUnavailable propagates to the caller."""
        limit = self.config.limit_for(tier)
        now = self.time_fn()
        window = int(now // WINDOW_SECONDS)
        reset_seconds = max(1, math.ceil((window + 1) * WINDOW_SECONDS - now))

        count = self.store.increment(f"rate_limit:{tier}:{client_key}:{window}", 1, ttl_seconds=WINDOW_SECONDS)
        return RateLimitDecision(
            allowed=count <= limit,
            limit=limit,
            remaining=max(0, limit - count),
            reset_seconds=reset_seconds,
        )
