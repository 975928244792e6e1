# tilespace/conftest.py
import os
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

# Settings are read at import time; point everything at in-process backends first.
os.environ["ENV"] = "test"
os.environ["TEST_DATABASE_URL"] = "sqlite://"
os.environ["QUOTA_BACKEND"] = "memory"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ.setdefault("GUEST_TOKEN_SECRET", "test-guest-secret")
os.environ.setdefault("CLERK_SECRET_KEY", "test-clerk-secret")
os.environ.pop("STRIPE_SECRET_KEY", None)


def ai_response(content="Generated insight", total_tokens=42):
    """Shape of a groq chat completion, as far as the AI service reads it."""
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(total_tokens=total_tokens),
    )


@pytest.fixture(autouse=True)
def fresh_state():
    """
    Reset database, quota counters and metrics before each test.

    Yields the in-memory quota store used by the gate for this test.
    """
    from tilespace.core.database import reset_database
    from tilespace.core.metrics import METRICS
    from tilespace.features.plans.service import seed_plans
    from tilespace.features.usage.store import InMemoryQuotaStore, set_quota_store

    reset_database()
    seed_plans()
    store = InMemoryQuotaStore()
    set_quota_store(store)
    METRICS.reset()
    yield store
    set_quota_store(None)


@pytest.fixture
def quota_store(fresh_state):
    return fresh_state


@pytest.fixture
def fake_ai():
    client = MagicMock()
    client.chat.completions.create.return_value = ai_response()
    return client


@pytest.fixture
def app(fake_ai):
    from tilespace.api.workspaces import get_ai_client
    from tilespace.core.config import settings
    from tilespace.features.workspaces.guest_store import GuestWorkspaceCache
    from tilespace.main import app as tilespace_app

    tilespace_app.state.guest_cache = GuestWorkspaceCache(ttl_seconds=settings.GUEST_CACHE_TTL_SECONDS)
    tilespace_app.dependency_overrides[get_ai_client] = lambda: fake_ai
    yield tilespace_app
    tilespace_app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    return TestClient(app)


@pytest.fixture
def member_headers():
    return {"X-User-Id": "user_member_1"}
