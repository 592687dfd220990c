"""Short-lived read caches in front of the key-value store."""

from __future__ import annotations

import copy
import threading
import time
from dataclasses import dataclass, fields
from typing import Any, Callable, Dict, Hashable, Optional

from cachetools import TTLCache


@dataclass(frozen=True)
class CacheTTLs:
    """Time-to-live, in seconds, of each cache namespace."""

    match: float = 18.0
    player_index: float = 30.0
    active_index: float = 15.0
    active_data: float = 10.0
    pending_ids: float = 10.0
    player_results: float = 5.0
    available: float = 5.0


class RepositoryCache:
    """Named TTL caches shared by every repository call in one process.

    Each namespace is invalidated explicitly by the repository when the match
    data behind it changes. :meth:`invalidate_player` is the one broad helper,
    used right before per-player limit checks so counts are read from the store.
    Values are deep-copied in and out so callers never share cached objects.
    """

    def __init__(
        self,
        ttls: Optional[CacheTTLs] = None,
        clock: Callable[[], float] = time.monotonic,
        maxsize: int = 4096,
    ) -> None:
        self.ttls = ttls or CacheTTLs()
        self._lock = threading.RLock()
        self._caches: Dict[str, TTLCache] = {}
        for f in fields(self.ttls):
            ttl = float(getattr(self.ttls, f.name))
            # A non-positive TTL disables the namespace.
            if ttl > 0:
                self._caches[f.name] = TTLCache(maxsize=maxsize, ttl=ttl, timer=clock)

    def _cache(self, namespace: str) -> Optional[TTLCache]:
        if namespace not in self._caches and not hasattr(self.ttls, namespace):
            raise KeyError(f"Unknown cache namespace: {namespace}")
        return self._caches.get(namespace)

    def get(self, namespace: str, key: Hashable) -> Any:
        """Return the cached value or ``None`` when missing or expired."""

        with self._lock:
            cache = self._cache(namespace)
            if cache is None:
                return None
            cache.expire()
            value = cache.get(key)
            return copy.deepcopy(value) if value is not None else None

    def set(self, namespace: str, key: Hashable, value: Any) -> None:
        with self._lock:
            cache = self._cache(namespace)
            if cache is not None:
                cache[key] = copy.deepcopy(value)

    def invalidate(self, namespace: str, key: Hashable) -> None:
        with self._lock:
            cache = self._cache(namespace)
            if cache is not None:
                cache.pop(key, None)

    def invalidate_namespace(self, namespace: str) -> None:
        with self._lock:
            cache = self._cache(namespace)
            if cache is not None:
                cache.clear()

    def invalidate_player(self, fid: int) -> None:
        with self._lock:
            for namespace in ("player_index", "active_index", "active_data"):
                self.invalidate(namespace, fid)
            for include_finished in (False, True):
                self.invalidate("player_results", (fid, include_finished))
            self.invalidate_namespace("available")
