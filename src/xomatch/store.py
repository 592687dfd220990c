"""Key-value store adapters used by the match repository.

The repository only needs a handful of Redis-style primitives: plain values,
sets and hashes. :class:`RedisStore` talks to a real server, :class:`MemoryStore`
keeps the same data in process, and :class:`FallbackStore` switches from the
first to the second for good once the server misbehaves.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Dict, List, Optional, Set

import redis

from .config import Settings

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Interface shared by every store implementation."""

    name = "abstract"

    def get(self, key: str) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def sadd(self, key: str, *members: str) -> int:
        raise NotImplementedError

    def srem(self, key: str, *members: str) -> int:
        raise NotImplementedError

    def smembers(self, key: str) -> List[str]:
        raise NotImplementedError

    def hincrby(self, key: str, field: str, delta: int) -> int:
        raise NotImplementedError

    def hgetall(self, key: str) -> Dict[str, int]:
        raise NotImplementedError

    def scan_keys(self, prefix: str) -> List[str]:
        raise NotImplementedError


# ---------- In-memory ----------


class MemoryStore(KeyValueStore):
    """Process-local store; only consistent within one running instance."""

    name = "memory"

    def __init__(self) -> None:
        self._values: Dict[str, str] = {}
        self._sets: Dict[str, Set[str]] = {}
        self._hashes: Dict[str, Dict[str, int]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            raw = self._values.get(key)
        # Stored encoded so callers never share mutable state with the store.
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any) -> None:
        encoded = json.dumps(value)
        with self._lock:
            self._values[key] = encoded

    def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)
            self._sets.pop(key, None)
            self._hashes.pop(key, None)

    def sadd(self, key: str, *members: str) -> int:
        with self._lock:
            bucket = self._sets.setdefault(key, set())
            before = len(bucket)
            bucket.update(str(m) for m in members)
            return len(bucket) - before

    def srem(self, key: str, *members: str) -> int:
        with self._lock:
            bucket = self._sets.get(key)
            if not bucket:
                return 0
            before = len(bucket)
            bucket.difference_update(str(m) for m in members)
            if not bucket:
                del self._sets[key]
            return before - len(bucket)

    def smembers(self, key: str) -> List[str]:
        with self._lock:
            return sorted(self._sets.get(key, ()))

    def hincrby(self, key: str, field: str, delta: int) -> int:
        with self._lock:
            bucket = self._hashes.setdefault(key, {})
            bucket[field] = bucket.get(field, 0) + int(delta)
            return bucket[field]

    def hgetall(self, key: str) -> Dict[str, int]:
        with self._lock:
            return dict(self._hashes.get(key, {}))

    def scan_keys(self, prefix: str) -> List[str]:
        with self._lock:
            keys = set(self._values) | set(self._sets) | set(self._hashes)
        return sorted(k for k in keys if k.startswith(prefix))


# ---------- Redis ----------


class RedisStore(KeyValueStore):
    name = "redis"

    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(redis.Redis.from_url(url, decode_responses=True, socket_timeout=5))

    def get(self, key: str) -> Any:
        raw = self.client.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any) -> None:
        self.client.set(key, json.dumps(value))

    def delete(self, key: str) -> None:
        self.client.delete(key)

    def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(self.client.sadd(key, *members))

    def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(self.client.srem(key, *members))

    def smembers(self, key: str) -> List[str]:
        return sorted(self.client.smembers(key) or ())

    def hincrby(self, key: str, field: str, delta: int) -> int:
        return int(self.client.hincrby(key, field, delta))

    def hgetall(self, key: str) -> Dict[str, int]:
        return {k: int(v) for k, v in (self.client.hgetall(key) or {}).items()}

    def scan_keys(self, prefix: str) -> List[str]:
        return sorted(self.client.scan_iter(match=f"{prefix}*"))


# ---------- Fallback ----------


class FallbackStore(KeyValueStore):
    """Use ``primary`` until it fails once, then ``fallback`` for the process lifetime.

    Degradation is persistent rather than per call: after the first
    :class:`redis.RedisError` or :class:`OSError` every later operation goes to
    the fallback, and the failed call is replayed there. Errors raised by the
    fallback itself propagate to the caller.
    """

    def __init__(self, primary: KeyValueStore, fallback: KeyValueStore) -> None:
        self.primary = primary
        self.fallback = fallback
        self.degraded = False
        self._lock = threading.Lock()

    @property
    def name(self) -> str:  # type: ignore[override]
        active = self.fallback if self.degraded else self.primary
        return active.name

    def _call(self, method: str, *args: Any) -> Any:
        if not self.degraded:
            try:
                return getattr(self.primary, method)(*args)
            except (redis.RedisError, OSError) as exc:
                with self._lock:
                    if not self.degraded:
                        logger.warning(
                            "Key-value store failed during %s (%s); using in-memory fallback from now on",
                            method,
                            exc,
                        )
                        self.degraded = True
        return getattr(self.fallback, method)(*args)

    def get(self, key: str) -> Any:
        return self._call("get", key)

    def set(self, key: str, value: Any) -> None:
        self._call("set", key, value)

    def delete(self, key: str) -> None:
        self._call("delete", key)

    def sadd(self, key: str, *members: str) -> int:
        return self._call("sadd", key, *members)

    def srem(self, key: str, *members: str) -> int:
        return self._call("srem", key, *members)

    def smembers(self, key: str) -> List[str]:
        return self._call("smembers", key)

    def hincrby(self, key: str, field: str, delta: int) -> int:
        return self._call("hincrby", key, field, delta)

    def hgetall(self, key: str) -> Dict[str, int]:
        return self._call("hgetall", key)

    def scan_keys(self, prefix: str) -> List[str]:
        return self._call("scan_keys", prefix)


def create_store(settings: Optional[Settings] = None) -> KeyValueStore:
    settings = settings or Settings.from_env()
    if not settings.kv_url:
        logger.info("No key-value store configured; keeping matches in memory")
        return MemoryStore()
    logger.info("Using Redis key-value store with in-memory fallback")
    return FallbackStore(RedisStore.from_url(settings.kv_url), MemoryStore())
