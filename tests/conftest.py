"""Root conftest for all tests.

This file makes shared fixtures available across all test modules. Every
test gets its own in-memory database, cache and metrics registry, so no
state leaks between tests.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add project root to path
_project_root = Path(__file__).parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

from aiwatch.cache.backend import InMemoryCache
from aiwatch.config.settings import Settings
from aiwatch.db.session import Database
from aiwatch.monitoring.aggregator import MetricsAggregator
from aiwatch.monitoring.alerts import AlertEngine
from aiwatch.monitoring.prometheus import MetricsRegistry
from aiwatch.monitoring.repository import MonitoringRepository
from aiwatch.monitoring.tracker import RequestTracker


class FixedClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, minutes: float = 0) -> None:
        self.now += timedelta(seconds=seconds, minutes=minutes)


class MonotonicClock:
    """Manually advanced monotonic clock for TTL-based stores."""

    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def monotonic() -> MonotonicClock:
    return MonotonicClock()


@pytest.fixture
def database():
    """Isolated in-memory SQLite database with monitoring tables created."""
    db = Database.in_memory()
    yield db
    db.dispose()


@pytest.fixture
def repository(database: Database) -> MonitoringRepository:
    return MonitoringRepository(database)


@pytest.fixture
def cache(monotonic: MonotonicClock) -> InMemoryCache:
    return InMemoryCache(clock=monotonic)


@pytest.fixture
def metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def aggregator(cache, repository, metrics, clock) -> MetricsAggregator:
    return MetricsAggregator(cache, repository=repository, metrics=metrics, clock=clock)


@pytest.fixture
def alerts(repository, metrics, clock) -> AlertEngine:
    return AlertEngine(repository=repository, metrics=metrics, clock=clock)


@pytest.fixture
def tracker(repository, aggregator, alerts, metrics, clock) -> RequestTracker:
    return RequestTracker(repository=repository, aggregator=aggregator, alerts=alerts, metrics=metrics, clock=clock)


@pytest.fixture
def settings() -> Settings:
    """Settings for an all-in-memory deployment (no Redis, no scheduler)."""
    return Settings(
        DATABASE_URL="sqlite://",
        CACHE_BACKEND="memory",
        RATE_LIMIT_BACKEND="memory",
        SCHEDULER_ENABLED=False,
        AUTH_RATE_LIMIT_PER_MINUTE=5,
        AI_RATE_LIMIT_PER_MINUTE=3,
    )
