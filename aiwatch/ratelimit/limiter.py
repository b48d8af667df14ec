"""Tiered fixed-window rate limiting.

A counter is created on the first hit inside a window and dies with the
window. Across a window boundary a client can get up to twice the limit in
quick succession; that is accepted.

Store errors fail open: the request is admitted and the error logged.
"""

from __future__ import annotations

import math
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

import redis
from loguru import logger

from aiwatch.cache.backend import create_redis_client

RATE_LIMIT_KEY_PREFIX = "rate_limit:"
USER_AGENT_PREFIX_LENGTH = 50


class RateLimitTier(StrEnum):
    API = "api"
    AUTH = "auth"
    AI = "ai"


@dataclass(frozen=True)
class TierPolicy:
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one admission check."""

    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int
    retry_after: int | None = None


class CounterStore(ABC):
    """Atomic increment-and-read of windowed counters."""

    @abstractmethod
    def hit(self, key: str, window_seconds: int) -> tuple[int, int]:
        """Increment the counter for key.

        Returns:
            (count after increment, seconds until the window resets)
        """

    def sweep(self) -> int:
        return 0


class InMemoryCounterStore(CounterStore):
    """Process-local counters behind one lock."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._counters: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, window_seconds: int) -> tuple[int, int]:
        with self._lock:
            now = self._clock()
            entry = self._counters.get(key)
            if entry is None or entry[1] <= now:
                count, expires_at = 1, now + window_seconds
            else:
                count, expires_at = entry[0] + 1, entry[1]
            self._counters[key] = (count, expires_at)
        return count, max(0, math.ceil(expires_at - now))

    def sweep(self) -> int:
        """Drop expired counters.

        The scan works on a snapshot; each eviction re-checks the entry
        under the lock in case it was renewed meanwhile.
        """
        with self._lock:
            snapshot = list(self._counters.items())

        now = self._clock()
        evicted = 0
        for key, (_, expires_at) in snapshot:
            if expires_at > now:
                continue
            with self._lock:
                entry = self._counters.get(key)
                if entry is not None and entry[1] <= now:
                    del self._counters[key]
                    evicted += 1
        return evicted

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)


class RedisCounterStore(CounterStore):
    """Counters shared across instances.

    INCR and TTL go out in one MULTI round trip. A key with no expiry (the
    first hit of a window, or a window whose EXPIRE never landed) gets one
    on the spot, so the window never outlives window_seconds.
    """

    def __init__(self, client: redis.Redis) -> None:
        self.redis = client

    @classmethod
    def from_url(cls, redis_url: str) -> RedisCounterStore:
        return cls(create_redis_client(redis_url))

    def hit(self, key: str, window_seconds: int) -> tuple[int, int]:
        redis_key = f"{RATE_LIMIT_KEY_PREFIX}{key}"
        with self.redis.pipeline(transaction=True) as pipe:
            pipe.incr(redis_key)
            pipe.ttl(redis_key)
            count, ttl = pipe.execute()
        ttl = int(ttl)
        # -1: no expiry yet, -2: key vanished after INCR
        if ttl == -1:
            self.redis.expire(redis_key, window_seconds)
        reset = ttl if ttl >= 0 else window_seconds
        return int(count), reset


class RateLimiter:
    """Fixed-window limiter with named tiers."""

    def __init__(self, store: CounterStore, policies: dict[RateLimitTier, TierPolicy]) -> None:
        self.store = store
        self.policies = policies

    @classmethod
    def from_settings(cls, settings, store: CounterStore) -> RateLimiter:
        window = settings.rate_limit_window_seconds
        return cls(
            store,
            {
                RateLimitTier.API: TierPolicy(settings.rate_limit_requests_per_minute, window),
                RateLimitTier.AUTH: TierPolicy(settings.auth_rate_limit_per_minute, window),
                RateLimitTier.AI: TierPolicy(settings.ai_rate_limit_per_minute, window),
            },
        )

    def check(self, identifier: str, limit: int, window_seconds: int) -> RateLimitResult:
        """Count one request against identifier's current window.

        Args:
            identifier: Counter key (already namespaced by the caller if needed)
            limit: Maximum requests per window
            window_seconds: Window length

        Returns:
            RateLimitResult; allowed when count <= limit
        """
        try:
            count, reset_seconds = self.store.hit(identifier, window_seconds)
        except Exception as e:
            logger.bind(identifier=identifier).error(f"[RATE_LIMIT] Counter store unavailable, failing open: {e}")
            return RateLimitResult(allowed=True, limit=limit, remaining=limit, reset_seconds=window_seconds)

        allowed = count <= limit
        return RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset_seconds=reset_seconds,
            retry_after=None if allowed else reset_seconds,
        )

    def check_tier(self, tier: RateLimitTier | str, identifier: str) -> RateLimitResult:
        policy = self.policies[RateLimitTier(tier)]
        return self.check(f"{RateLimitTier(tier).value}:{identifier}", policy.limit, policy.window_seconds)

    def sweep(self) -> int:
        evicted = self.store.sweep()
        if evicted:
            logger.debug(f"[RATE_LIMIT] Swept {evicted} expired counters")
        return evicted


def client_identifier(headers, peer_host: str | None = None, user_agent_length: int = USER_AGENT_PREFIX_LENGTH) -> str:
    """Build the per-client counter identifier from request headers.

    Args:
        headers: Case-insensitive header mapping
        peer_host: Socket peer address, used when no proxy header is present
        user_agent_length: Number of User-Agent characters to include

    Returns:
        "<ip>:<user-agent prefix>"
    """
    forwarded = headers.get("x-forwarded-for")
    ip = forwarded.split(",")[0].strip() if forwarded else None
    ip = ip or headers.get("x-real-ip") or headers.get("cf-connecting-ip") or peer_host or "unknown"
    user_agent = (headers.get("user-agent") or "")[:user_agent_length]
    return f"{ip}:{user_agent}"
