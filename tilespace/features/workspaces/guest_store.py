"""
Ephemeral guest workspace storage.

Guests never touch the durable tables. Their workspaces live in a
GuestWorkspaceCache keyed by guest id with a sliding TTL. The app creates
one instance at startup and hands it to request handlers, so tests can pass
a cache with a fake clock and production can swap in a shared backend.

Stored workspaces use the same camelCase shape as the migration payload, so
a guest's cache entry can be exported directly as a migration snapshot.
"""

import copy
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from tilespace.core.metrics import guest_cache_entries

WorkspaceList = List[Dict[str, Any]]


class GuestWorkspaceCache:
    def __init__(self, ttl_seconds: int, time_fn: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._time = time_fn
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def _fresh(self, guest_id: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(guest_id)
        if entry is None:
            return None
        now = self._time()
        if now - entry["updated_at"] > self.ttl_seconds:
            del self._entries[guest_id]
            return None
        entry["updated_at"] = now
        return entry

    def get(self, guest_id: str) -> Optional[WorkspaceList]:
        with self._lock:
            entry = self._fresh(guest_id)
            return copy.deepcopy(entry["workspaces"]) if entry else None

    def put(self, guest_id: str, workspaces: WorkspaceList) -> None:
        with self._lock:
            self._entries[guest_id] = {
                "workspaces": copy.deepcopy(workspaces),
                "updated_at": self._time(),
            }
            guest_cache_entries.set(len(self._entries))

    def update(self, guest_id: str, mutate: Callable[[WorkspaceList], Any]) -> Any:
        """Apply mutate to the guest's workspaces under the cache lock.

        The mutation runs on a copy; if it raises, the stored entry is unchanged.
        """
        with self._lock:
            entry = self._fresh(guest_id)
            workspaces = copy.deepcopy(entry["workspaces"]) if entry else []
            result = mutate(workspaces)
            self._entries[guest_id] = {"workspaces": workspaces, "updated_at": self._time()}
            guest_cache_entries.set(len(self._entries))
            return copy.deepcopy(result)

    def delete(self, guest_id: str) -> None:
        with self._lock:
            self._entries.pop(guest_id, None)
            guest_cache_entries.set(len(self._entries))

    def sweep(self) -> int:
        """Drop expired entries; returns how many were removed."""
        with self._lock:
            now = self._time()
            expired = [gid for gid, e in self._entries.items() if now - e["updated_at"] > self.ttl_seconds]
            for gid in expired:
                del self._entries[gid]
            guest_cache_entries.set(len(self._entries))
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
