"""Quota counter stores: in-memory semantics and the Redis adapter."""
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tilespace.features.usage.store import (
    InMemoryQuotaStore,
    QuotaStoreUnavailable,
    RedisQuotaStore,
)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_increment_returns_new_value():
    store = InMemoryQuotaStore()
    assert store.increment("k") == 1
    assert store.increment("k", 4) == 5
    assert store.get("k") == 5
    assert store.get("missing") == 0


def test_increment_within_rejects_over_ceiling():
    store = InMemoryQuotaStore()
    store.increment("k", 4)

    assert store.increment_within("k", 1, 5) == (True, 5)
    assert store.increment_within("k", 1, 5) == (False, 5)
    assert store.get("k") == 5


def test_increment_within_bulk_amount_is_all_or_nothing():
    store = InMemoryQuotaStore()
    store.increment("k", 3)

    applied, value = store.increment_within("k", 3, 5)

    assert applied is False
    assert value == 3


def test_expire_drops_counter_after_ttl():
    clock = FakeClock()
    store = InMemoryQuotaStore(time_fn=clock)
    store.increment("k", 2)
    store.expire("k", 60)

    clock.now += 59
    assert store.get("k") == 2
    clock.now += 1
    assert store.get("k") == 0


def test_increment_within_sets_ttl():
    clock = FakeClock()
    store = InMemoryQuotaStore(time_fn=clock)
    store.increment_within("k", 1, 10, ttl_seconds=30)

    clock.now += 31
    assert store.get("k") == 0


def test_decrement_restores_previous_value():
    store = InMemoryQuotaStore()
    store.increment("k", 3)
    assert store.decrement("k") == 2


def test_redis_store_runs_lua_increment():
    client = MagicMock()
    client.eval.return_value = [1, 7]
    store = RedisQuotaStore(client)

    assert store.increment_within("member:u1:usage:tilesCount", 1, 10, 60) == (True, 7)
    args = client.eval.call_args[0]
    assert args[1:] == (1, "member:u1:usage:tilesCount", 1, 10, 60)


def test_redis_store_rejection_is_reported():
    client = MagicMock()
    client.eval.return_value = [0, 10]
    store = RedisQuotaStore(client)

    assert store.increment_within("k", 1, 10) == (False, 10)


def test_redis_store_get_parses_bytes():
    client = MagicMock()
    client.get.side_effect = [b"12", None]
    store = RedisQuotaStore(client)

    assert store.get("a") == 12
    assert store.get("b") == 0


@pytest.mark.parametrize("method,args", [
    ("get", ("k",)),
    ("increment", ("k", 1)),
    ("expire", ("k", 10)),
    ("increment_within", ("k", 1, 5)),
    ("decrement", ("k", 1)),
])
def test_redis_errors_become_store_unavailable(method, args):
    client = MagicMock()
    for name in ("get", "incrby", "expire", "eval", "decrby"):
        getattr(client, name).side_effect = RedisConnectionError("connection refused")
    store = RedisQuotaStore(client)

    with pytest.raises(QuotaStoreUnavailable):
        getattr(store, method)(*args)


def test_increment_with_ttl_expires_counter():
    clock = FakeClock()
    store = InMemoryQuotaStore(time_fn=clock)
    store.increment("k", 2, ttl_seconds=60)

    clock.now += 60
    assert store.get("k") == 0


def test_redis_increment_with_ttl_is_one_transaction():
    client = MagicMock()
    pipe = client.pipeline.return_value
    pipe.execute.return_value = [3, True]
    store = RedisQuotaStore(client)

    assert store.increment("guest:g1:usage:notesCount", 2, 60) == 3
    client.pipeline.assert_called_once_with(transaction=True)
    pipe.incrby.assert_called_once_with("guest:g1:usage:notesCount", 2)
    pipe.expire.assert_called_once_with("guest:g1:usage:notesCount", 60)
    client.incrby.assert_not_called()
    client.expire.assert_not_called()


def test_redis_increment_without_ttl_skips_pipeline():
    client = MagicMock()
    client.incrby.return_value = 4
    store = RedisQuotaStore(client)

    assert store.increment("k", 1) == 4
    client.pipeline.assert_not_called()
