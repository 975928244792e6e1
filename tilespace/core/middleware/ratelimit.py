import logging
import time
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from tilespace.core.errors import RateLimitError, app_error_handler
from tilespace.core.identity import MemberIdentity, current_identity
from tilespace.core.logging import LOGGER_NAME, get_request_id
from tilespace.core.metrics import quota_store_errors_total, ratelimit_block_total
from tilespace.core.ratelimit import (
    TIER_MESSAGES,
    FixedWindowRateLimiter,
    RateLimitConfig,
    build_rate_limit_config,
    tier_for,
)
from tilespace.features.usage.store import QuotaStore, QuotaStoreUnavailable

logger = logging.getLogger(LOGGER_NAME)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-client request limits on /api mutations; fails open when the store is down."""

    def __init__(
        self,
        app,
        *,
        config: Optional[RateLimitConfig] = None,
        store: Optional[QuotaStore] = None,
        time_fn: Optional[Callable[[], float]] = None,
    ):
        super().__init__(app)
        self.config = config or build_rate_limit_config()
        self.limiter = FixedWindowRateLimiter(self.config, store=store, time_fn=time_fn or time.time)

    async def dispatch(self, request: Request, call_next):
        if not self.config.enabled:
            return await call_next(request)

        # Shared with the route through request.state
        identity = current_identity(request)
        is_member = isinstance(identity, MemberIdentity)
        tier = tier_for(request.method, request.url.path, is_member)
        if tier is None:
            return await call_next(request)

        client_key = f"user:{identity.member_id}" if is_member else f"ip:{identity.ip}"
        try:
            decision = self.limiter.hit(tier, client_key)
        except QuotaStoreUnavailable as exc:
            quota_store_errors_total.inc(labels={"tier": "ratelimit"})
            logger.warning("ratelimit.store_unavailable", extra={"error_code": type(exc).__name__})
            return await call_next(request)

        headers = {
            "X-RateLimit-Limit": str(decision.limit),
            "X-RateLimit-Remaining": str(decision.remaining),
            "X-RateLimit-Reset": str(decision.reset_seconds),
        }
        if decision.allowed:
            response = await call_next(request)
            response.headers.update(headers)
            return response

        rid = getattr(request.state, "request_id", None) or get_request_id()
        ratelimit_block_total.inc(labels={"tier": tier})
        response = await app_error_handler(
            request,
            RateLimitError(
                TIER_MESSAGES[tier],
                request_id=rid,
                details={"tier": tier, "limit": decision.limit, "retryAfter": decision.reset_seconds},
            ),
        )
        response.headers.update(headers)
        response.headers["Retry-After"] = str(decision.reset_seconds)
        return response
