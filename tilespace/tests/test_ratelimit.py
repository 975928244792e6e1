from fastapi import FastAPI
from fastapi.testclient import TestClient

from tilespace.core.metrics import ratelimit_block_total
from tilespace.core.middleware.ratelimit import RateLimitMiddleware
from tilespace.core.middleware.request_id import RequestIdMiddleware
from tilespace.core.ratelimit import (
    AUTHENTICATED,
    CRITICAL,
    PUBLIC,
    FixedWindowRateLimiter,
    RateLimitConfig,
    tier_for,
)
from tilespace.features.usage.store import InMemoryQuotaStore, QuotaStoreUnavailable


class FakeClock:
    def __init__(self, now=1_000_040.0):
        self.now = now

    def __call__(self):
        return self.now


class DownStore:
    def increment(self, *args, **kwargs):
        raise QuotaStoreUnavailable("redis down")


def _make_app(config, store=None, clock=None):
    app = FastAPI()
    app.add_middleware(RateLimitMiddleware, config=config, store=store or InMemoryQuotaStore(), time_fn=clock or FakeClock())
    app.add_middleware(RequestIdMiddleware)

    @app.post("/api/workspace/notes")
    async def create_note():
        return {"ok": True}

    @app.get("/api/workspace")
    async def read_workspaces():
        return {"ok": True}

    @app.post("/api/workspace/tiles")
    async def create_tile():
        return {"ok": True}

    @app.post("/api/webhooks/stripe")
    async def webhook():
        return {"ok": True}

    return app


def test_disabled_limiter_lets_everything_through():
    client = TestClient(_make_app(RateLimitConfig(enabled=False, public_per_minute=1)))

    for _ in range(3):
        assert client.post("/api/workspace/notes").status_code == 200


def test_guest_blocked_after_public_limit():
    client = TestClient(_make_app(RateLimitConfig(public_per_minute=2), clock=FakeClock()))

    assert client.post("/api/workspace/notes").status_code == 200
    second = client.post("/api/workspace/notes")
    assert second.headers["X-RateLimit-Remaining"] == "0"

    third = client.post("/api/workspace/notes")
    assert third.status_code == 429
    error = third.json()["error"]
    assert error["code"] == "rate_limited"
    assert error["details"]["tier"] == "public"
    assert third.headers["Retry-After"] == "40"
    assert third.headers["X-RateLimit-Limit"] == "2"
    assert third.headers["X-RateLimit-Reset"] == "40"
    assert third.headers["x-request-id"] == error["request_id"]
    assert ratelimit_block_total.value({"tier": "public"}) == 1


def test_members_get_the_authenticated_limit():
    client = TestClient(_make_app(RateLimitConfig(public_per_minute=1, authenticated_per_minute=3)))
    headers = {"X-User-Id": "user_busy"}

    statuses = [client.post("/api/workspace/notes", headers=headers).status_code for _ in range(4)]

    assert statuses == [200, 200, 200, 429]


def test_members_are_counted_separately():
    client = TestClient(_make_app(RateLimitConfig(authenticated_per_minute=1)))

    assert client.post("/api/workspace/notes", headers={"X-User-Id": "user_a"}).status_code == 200
    assert client.post("/api/workspace/notes", headers={"X-User-Id": "user_b"}).status_code == 200
    assert client.post("/api/workspace/notes", headers={"X-User-Id": "user_a"}).status_code == 429


def test_generation_routes_use_critical_limit():
    client = TestClient(_make_app(RateLimitConfig(authenticated_per_minute=100, critical_per_minute=1)))
    headers = {"X-User-Id": "user_ai"}

    assert client.post("/api/workspace/tiles", headers=headers).status_code == 200
    blocked = client.post("/api/workspace/tiles", headers=headers)

    assert blocked.status_code == 429
    assert blocked.json()["error"]["details"]["tier"] == "critical"
    assert client.post("/api/workspace/notes", headers=headers).status_code == 200


def test_reads_and_webhooks_are_not_limited():
    client = TestClient(_make_app(RateLimitConfig(public_per_minute=1)))

    for _ in range(3):
        assert client.get("/api/workspace").status_code == 200
        assert client.post("/api/webhooks/stripe").status_code == 200


def test_window_rolls_over():
    clock = FakeClock()
    client = TestClient(_make_app(RateLimitConfig(public_per_minute=1), clock=clock))

    assert client.post("/api/workspace/notes").status_code == 200
    assert client.post("/api/workspace/notes").status_code == 429

    clock.now += 40
    assert client.post("/api/workspace/notes").status_code == 200


def test_store_outage_fails_open():
    client = TestClient(_make_app(RateLimitConfig(public_per_minute=1), store=DownStore()))

    for _ in range(3):
        assert client.post("/api/workspace/notes").status_code == 200


def test_limiter_counts_in_shared_store():
    store = InMemoryQuotaStore()
    clock = FakeClock()
    first_worker = FixedWindowRateLimiter(RateLimitConfig(critical_per_minute=2), store=store, time_fn=clock)
    second_worker = FixedWindowRateLimiter(RateLimitConfig(critical_per_minute=2), store=store, time_fn=clock)

    assert first_worker.hit(CRITICAL, "ip:203.0.113.7").allowed
    assert second_worker.hit(CRITICAL, "ip:203.0.113.7").allowed
    assert first_worker.hit(CRITICAL, "ip:203.0.113.7").allowed is False
    assert store.get("rate_limit:critical:ip:203.0.113.7:16667") == 3


def test_tier_for_routes():
    assert tier_for("POST", "/api/workspace/tiles/tile_1/chat", False) == CRITICAL
    assert tier_for("POST", "/api/workspace/tiles/tile_1/regenerate", True) == CRITICAL
    assert tier_for("POST", "/api/workspace/contacts/contact_1/chat", True) == CRITICAL
    assert tier_for("POST", "/api/stripe/checkout", True) == CRITICAL
    assert tier_for("POST", "/api/create-account", False) == CRITICAL
    assert tier_for("POST", "/api/workspace/contacts", False) == PUBLIC
    assert tier_for("POST", "/api/migrate-guest-data", True) == AUTHENTICATED
    assert tier_for("GET", "/api/usage", True) is None
    assert tier_for("POST", "/api/webhooks/stripe", False) is None
    assert tier_for("POST", "/healthz", False) is None


def test_app_limits_guest_mutations_when_enabled(monkeypatch):
    from tilespace.core.config import settings
    from tilespace.main import create_app

    monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", True)
    monkeypatch.setattr(settings, "RATE_LIMIT_PUBLIC_PER_MINUTE", 2)
    client = TestClient(create_app())

    statuses = [client.post("/api/workspace/notes", json={}).status_code for _ in range(3)]

    assert statuses == [400, 400, 429]
