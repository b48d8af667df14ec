"""Service wiring.

Every stateful component is built here from Settings and handed to the app
through app.state.services. Tests build their own container with in-memory
backends instead of patching module globals.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from aiwatch.cache.backend import CacheBackend, InMemoryCache, RedisCache, create_redis_client
from aiwatch.config.settings import Settings
from aiwatch.db.session import Database
from aiwatch.health.aggregator import HealthAggregator
from aiwatch.monitoring.aggregator import MetricsAggregator
from aiwatch.monitoring.alerts import AlertEngine, AlertThresholds
from aiwatch.monitoring.prometheus import MetricsRegistry
from aiwatch.monitoring.repository import MonitoringRepository
from aiwatch.monitoring.tracker import RequestTracker
from aiwatch.ratelimit.limiter import CounterStore, InMemoryCounterStore, RateLimiter, RedisCounterStore


@dataclass
class MonitoringServices:
    settings: Settings
    database: Database
    cache: CacheBackend
    metrics: MetricsRegistry
    repository: MonitoringRepository
    aggregator: MetricsAggregator
    alerts: AlertEngine
    tracker: RequestTracker
    rate_limiter: RateLimiter
    health: HealthAggregator

    def close(self) -> None:
        self.database.dispose()


def build_services(
    settings: Settings,
    database: Database | None = None,
    cache: CacheBackend | None = None,
    counter_store: CounterStore | None = None,
    metrics: MetricsRegistry | None = None,
) -> MonitoringServices:
    """Construct the full service graph.

    Explicit collaborators win over settings, so tests can inject in-memory
    backends and failing doubles.
    """
    database = database or Database(settings.database_url)
    redis_client = None

    if cache is None:
        if settings.cache_backend == "redis":
            redis_client = create_redis_client(settings.redis_url)
            cache = RedisCache(redis_client)
        else:
            cache = InMemoryCache()

    if counter_store is None:
        if settings.rate_limit_backend == "redis":
            counter_store = RedisCounterStore(redis_client or create_redis_client(settings.redis_url))
        else:
            counter_store = InMemoryCounterStore()

    metrics = metrics or MetricsRegistry()
    repository = MonitoringRepository(database)
    aggregator = MetricsAggregator(
        cache,
        repository=repository,
        metrics=metrics,
        ttl_seconds=settings.realtime_cache_ttl_seconds,
    )
    alerts = AlertEngine(repository=repository, thresholds=AlertThresholds.from_settings(settings), metrics=metrics)
    tracker = RequestTracker(repository=repository, aggregator=aggregator, alerts=alerts, metrics=metrics)
    rate_limiter = RateLimiter.from_settings(settings, counter_store)

    health = HealthAggregator(
        database_probe=database.ping,
        cache_probe=cache.ping,
        timeout_seconds=settings.health_check_timeout_seconds,
        version=settings.app_version,
        instance_id=settings.instance_id,
        environment=settings.environment,
        memory_limit_mb=settings.memory_limit_mb,
        details_provider=lambda: {
            "active_ai_requests": tracker.active_count_by_service(),
            "database_pool": database.pool_status(),
        },
    )

    logger.info(
        f"Monitoring services ready (cache={type(cache).__name__}, rate_limit_store={type(counter_store).__name__})"
    )
    return MonitoringServices(
        settings=settings,
        database=database,
        cache=cache,
        metrics=metrics,
        repository=repository,
        aggregator=aggregator,
        alerts=alerts,
        tracker=tracker,
        rate_limiter=rate_limiter,
        health=health,
    )
