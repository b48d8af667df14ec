"""Cache backends for rolling aggregates.

Both backends expose the same read and atomic read-modify-write surface.
Updates for one key are serialized: a key-scoped mutex in memory, an
optimistic WATCH/MULTI transaction on Redis. Plain get-then-set from
callers is never needed.
"""

import json
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import redis
from loguru import logger

CACHE_KEY_PREFIX = "cache:"

# Redis socket timeouts keep every cache call a bounded single round trip
REDIS_SOCKET_TIMEOUT_SECONDS = 2.0

Updater = Callable[[dict[str, Any] | None], dict[str, Any]]


class CacheConflictError(RuntimeError):
    """Raised when an optimistic update keeps losing to concurrent writers."""


def create_redis_client(redis_url: str) -> redis.Redis:
    """Get Redis client instance.

    Returns:
        Redis client with string decoding enabled
    """
    return redis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
        socket_connect_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
    )


class CacheBackend(ABC):
    """JSON document cache with TTL and per-key atomic updates."""

    @abstractmethod
    def get_json(self, key: str) -> dict[str, Any] | None:
        """Return the cached document or None if absent/expired."""

    @abstractmethod
    def update_json(self, key: str, updater: Updater, ttl_seconds: int) -> dict[str, Any]:
        """Atomically replace the document with updater(current).

        The TTL is refreshed on every write. Concurrent updates for the
        same key never interleave their read and write.
        """

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def ping(self) -> bool:
        """Return True if the backend answers."""

    def sweep(self) -> int:
        """Evict expired entries. Backends with native expiry do nothing."""
        return 0


class InMemoryCache(CacheBackend):
    """Process-local cache. Adequate for a single instance and for tests."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[dict[str, Any], float]] = {}
        self._entries_lock = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()

    def _key_lock(self, key: str) -> threading.Lock:
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def _read(self, key: str) -> dict[str, Any] | None:
        with self._entries_lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return dict(value)

    def get_json(self, key: str) -> dict[str, Any] | None:
        return self._read(key)

    def update_json(self, key: str, updater: Updater, ttl_seconds: int) -> dict[str, Any]:
        with self._key_lock(key):
            updated = updater(self._read(key))
            with self._entries_lock:
                self._entries[key] = (dict(updated), self._clock() + ttl_seconds)
            return updated

    def delete(self, key: str) -> None:
        with self._entries_lock:
            self._entries.pop(key, None)

    def ping(self) -> bool:
        return True

    def sweep(self) -> int:
        """Evict expired entries.

        The scan runs on a snapshot; the lock is only re-taken per evicted
        key, so request-path reads and writes are never stalled by a sweep.
        """
        with self._entries_lock:
            snapshot = [(key, expires_at) for key, (_, expires_at) in self._entries.items()]

        now = self._clock()
        evicted = 0
        for key, expires_at in snapshot:
            if expires_at > now:
                continue
            with self._entries_lock:
                entry = self._entries.get(key)
                # Re-check: the key may have been rewritten since the snapshot
                if entry is not None and entry[1] <= now:
                    del self._entries[key]
                    evicted += 1

        if evicted:
            logger.debug(f"[CACHE] Swept {evicted} expired entries")
        return evicted


class RedisCache(CacheBackend):
    """Redis-backed cache shared across workers and instances."""

    MAX_UPDATE_ATTEMPTS = 10

    def __init__(self, client: redis.Redis) -> None:
        self.redis = client

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisCache":
        return cls(create_redis_client(redis_url))

    @staticmethod
    def _key(key: str) -> str:
        return f"{CACHE_KEY_PREFIX}{key}"

    def get_json(self, key: str) -> dict[str, Any] | None:
        raw = self.redis.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    def update_json(self, key: str, updater: Updater, ttl_seconds: int) -> dict[str, Any]:
        redis_key = self._key(key)
        with self.redis.pipeline() as pipe:
            for attempt in range(1, self.MAX_UPDATE_ATTEMPTS + 1):
                try:
                    pipe.watch(redis_key)
                    raw = pipe.get(redis_key)
                    current = json.loads(raw) if raw is not None else None
                    updated = updater(current)
                    pipe.multi()
                    pipe.set(redis_key, json.dumps(updated), ex=int(ttl_seconds))
                    pipe.execute()
                except redis.WatchError:
                    logger.bind(key=redis_key, attempt=attempt).debug("Concurrent cache write, retrying")
                    continue
                else:
                    return updated
        raise CacheConflictError(f"Gave up updating {redis_key} after {self.MAX_UPDATE_ATTEMPTS} attempts")

    def delete(self, key: str) -> None:
        self.redis.delete(self._key(key))

    def ping(self) -> bool:
        return bool(self.redis.ping())
