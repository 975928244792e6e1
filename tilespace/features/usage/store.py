"""
Quota counter stores.

Two backends implement the same protocol:
- RedisQuotaStore: shared counters for multi-process deployments.
- InMemoryQuotaStore: single-process counters for tests and local runs.

Counters are integers keyed by string. `increment_within` is the atomic
conditional increment used to reserve usage without a check/increment race.
"""
import logging
import threading
import time
from functools import lru_cache
from typing import Callable, Dict, Optional, Protocol, Tuple

from redis import Redis
from redis.exceptions import RedisError

from tilespace.core.config import settings

logger = logging.getLogger("tilespace")


class QuotaStoreUnavailable(RuntimeError):
    """Raised when the counter store cannot be reached."""


class QuotaStore(Protocol):
    def get(self, key: str) -> int:
        ...

    def increment(self, key: str, amount: int = 1, ttl_seconds: Optional[int] = None) -> int:
        """Add amount; with ttl_seconds the window is refreshed in the same step."""
        ...

    def expire(self, key: str, ttl_seconds: int) -> None:
        ...

    def increment_within(self, key: str, amount: int, ceiling: int, ttl_seconds: Optional[int] = None) -> Tuple[bool, int]:
        """Add amount only if the result stays <= ceiling.

        Returns (applied, value) where value is the counter after the call.
        """
        ...

    def decrement(self, key: str, amount: int = 1) -> int:
        ...


# KEYS[1] counter; ARGV: amount, ceiling, ttl (0 = keep current ttl)
_LUA_INCREMENT_WITHIN = r"""
local key = KEYS[1]
local amount = tonumber(ARGV[1])
local ceiling = tonumber(ARGV[2])
local ttl = tonumber(ARGV[3])

local value = redis.call('INCRBY', key, amount)
if value > ceiling then
  value = redis.call('DECRBY', key, amount)
  return {0, value}
end
if ttl > 0 then
  redis.call('EXPIRE', key, ttl)
end
return {1, value}
"""


class RedisQuotaStore:
    def __init__(self, client: Redis):
        self.r = client

    @classmethod
    def from_url(cls, url: str) -> "RedisQuotaStore":
        return cls(Redis.from_url(url, socket_timeout=2, socket_connect_timeout=2))

    def get(self, key: str) -> int:
        try:
            raw = self.r.get(key)
        except RedisError as exc:
            raise QuotaStoreUnavailable(str(exc)) from exc
        return int(raw) if raw is not None else 0

    def increment(self, key: str, amount: int = 1, ttl_seconds: Optional[int] = None) -> int:
        try:
            if not ttl_seconds:
                return int(self.r.incrby(key, amount))
            # MULTI/EXEC so a counter never outlives a failed EXPIRE
            pipe = self.r.pipeline(transaction=True)
            pipe.incrby(key, amount)
            pipe.expire(key, ttl_seconds)
            value, _ = pipe.execute()
            return int(value)
        except RedisError as exc:
            raise QuotaStoreUnavailable(str(exc)) from exc

    def expire(self, key: str, ttl_seconds: int) -> None:
        try:
            self.r.expire(key, ttl_seconds)
        except RedisError as exc:
            raise QuotaStoreUnavailable(str(exc)) from exc

    def increment_within(self, key: str, amount: int, ceiling: int, ttl_seconds: Optional[int] = None) -> Tuple[bool, int]:
        try:
            applied, value = self.r.eval(_LUA_INCREMENT_WITHIN, 1, key, int(amount), int(ceiling), int(ttl_seconds or 0))
        except RedisError as exc:
            raise QuotaStoreUnavailable(str(exc)) from exc
        return bool(int(applied)), int(value)

    def decrement(self, key: str, amount: int = 1) -> int:
        try:
            return int(self.r.decrby(key, amount))
        except RedisError as exc:
            raise QuotaStoreUnavailable(str(exc)) from exc


class InMemoryQuotaStore:
    """Process-local store with the same semantics as the Redis backend."""

    def __init__(self, time_fn: Callable[[], float] = time.monotonic):
        self._values: Dict[str, int] = {}
        self._expires_at: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._time = time_fn

    def _purge_if_expired(self, key: str) -> None:
        deadline = self._expires_at.get(key)
        if deadline is not None and self._time() >= deadline:
            self._values.pop(key, None)
            self._expires_at.pop(key, None)

    def get(self, key: str) -> int:
        with self._lock:
            self._purge_if_expired(key)
            return self._values.get(key, 0)

    def increment(self, key: str, amount: int = 1, ttl_seconds: Optional[int] = None) -> int:
        with self._lock:
            self._purge_if_expired(key)
            self._values[key] = self._values.get(key, 0) + amount
            if ttl_seconds:
                self._expires_at[key] = self._time() + ttl_seconds
            return self._values[key]

    def expire(self, key: str, ttl_seconds: int) -> None:
        with self._lock:
            if key in self._values:
                self._expires_at[key] = self._time() + ttl_seconds

    def increment_within(self, key: str, amount: int, ceiling: int, ttl_seconds: Optional[int] = None) -> Tuple[bool, int]:
        with self._lock:
            self._purge_if_expired(key)
            current = self._values.get(key, 0)
            if current + amount > ceiling:
                return False, current
            self._values[key] = current + amount
            if ttl_seconds:
                self._expires_at[key] = self._time() + ttl_seconds
            return True, self._values[key]

    def decrement(self, key: str, amount: int = 1) -> int:
        with self._lock:
            self._purge_if_expired(key)
            self._values[key] = self._values.get(key, 0) - amount
            return self._values[key]

    def clear(self) -> None:
        with self._lock:
            self._values.clear()
            self._expires_at.clear()


_store_override: Optional[QuotaStore] = None


def set_quota_store(store: Optional[QuotaStore]) -> None:
    """Swap the process-wide store (tests)."""
    global _store_override
    _store_override = store


@lru_cache(maxsize=1)
def _default_store() -> QuotaStore:
    backend = (settings.QUOTA_BACKEND or "redis").lower()
    if backend == "memory":
        logger.info("quota.store.memory")
        return InMemoryQuotaStore()
    return RedisQuotaStore.from_url(settings.REDIS_URL)


def get_quota_store() -> QuotaStore:
    return _store_override or _default_store()
