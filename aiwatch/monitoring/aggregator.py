"""Rolling and windowed statistics for AI requests.

Two views:
- Real-time: a per-service-type running aggregate in the cache (TTL bound,
  best-effort, cheap to read on dashboards).
- Summary: exact counts and percentiles from the durable store for a fixed
  timeframe.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from aiwatch.cache.backend import CacheBackend
from aiwatch.monitoring.prometheus import MetricsRegistry
from aiwatch.monitoring.repository import MonitoringRepository
from aiwatch.monitoring.types import (
    TIMEFRAME_WINDOWS,
    PerformanceSummary,
    RequestMetric,
    RequestStatus,
    RollingAggregate,
    ServiceType,
)

REALTIME_KEY_PREFIX = "ai_metrics:realtime:"
DEFAULT_REALTIME_TTL_SECONDS = 300


def realtime_key(service_type: str) -> str:
    return f"{REALTIME_KEY_PREFIX}{service_type}"


def percentile_cont(sorted_values: list[float], fraction: float) -> float | None:
    """Continuous percentile with linear interpolation.

    Matches SQL PERCENTILE_CONT: position = fraction * (n - 1), interpolated
    between the two surrounding values.

    Args:
        sorted_values: Values in ascending order
        fraction: Percentile as a fraction in [0, 1]

    Returns:
        Interpolated percentile, or None for an empty input
    """
    if not sorted_values:
        return None
    if not 0.0 <= fraction <= 1.0:
        raise ValueError(f"Percentile fraction must be in [0, 1], got {fraction}")

    position = fraction * (len(sorted_values) - 1)
    lower = math.floor(position)
    upper = math.ceil(position)
    if lower == upper:
        return float(sorted_values[lower])
    weight = position - lower
    return sorted_values[lower] + (sorted_values[upper] - sorted_values[lower]) * weight


def apply_completion(current: dict[str, Any] | None, metric: RequestMetric, now: float) -> dict[str, Any]:
    """Fold one completion into a cached aggregate document.

    Running means use the post-increment count: avg' = (avg * (n - 1) + x) / n.
    Accuracy is averaged over successful completions that report it.
    """
    aggregate = RollingAggregate.from_dict(current) if current else RollingAggregate()

    aggregate.total_requests += 1
    if metric.duration is not None:
        n = aggregate.total_requests
        aggregate.average_response_time = (aggregate.average_response_time * (n - 1) + metric.duration) / n

    if metric.status is RequestStatus.SUCCESS:
        aggregate.successful_requests += 1
        if metric.accuracy is not None:
            n = aggregate.successful_requests
            aggregate.average_accuracy = (aggregate.average_accuracy * (n - 1) + metric.accuracy) / n

    aggregate.last_updated = now
    return aggregate.to_dict()


class MetricsAggregator:
    """Maintains real-time aggregates and answers summary queries."""

    def __init__(
        self,
        cache: CacheBackend,
        repository: MonitoringRepository | None = None,
        metrics: MetricsRegistry | None = None,
        ttl_seconds: int = DEFAULT_REALTIME_TTL_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.cache = cache
        self.repository = repository
        self.metrics = metrics
        self.ttl_seconds = ttl_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def update_real_time(self, metric: RequestMetric) -> None:
        """Fold a terminal record into its service type's rolling aggregate.

        Cache failures are logged and swallowed; the aggregate is best-effort.
        """
        key = realtime_key(metric.service_type.value)
        try:
            self.cache.update_json(
                key,
                lambda current: apply_completion(current, metric, time.time()),
                self.ttl_seconds,
            )
        except Exception as e:
            logger.bind(key=key, request_id=metric.request_id).warning(f"[AGGREGATOR] Real-time update skipped: {e}")
            if self.metrics is not None:
                self.metrics.track_error("cache_update", "aggregator", "low")

    def get_real_time(self, service_type: ServiceType | str) -> RollingAggregate | None:
        """Current rolling aggregate, or None when absent or the cache is down."""
        key = realtime_key(ServiceType(service_type).value)
        try:
            document = self.cache.get_json(key)
        except Exception as e:
            logger.warning(f"[AGGREGATOR] Real-time read failed for {key}: {e}")
            return None

        if self.metrics is not None:
            self.metrics.track_cache(hit=document is not None, cache_type="ai_realtime")
        if document is None:
            return None
        return RollingAggregate.from_dict(document)

    def get_all_real_time(self) -> dict[str, RollingAggregate | None]:
        return {service_type.value: self.get_real_time(service_type) for service_type in ServiceType}

    def get_summary(
        self,
        service_type: ServiceType | str | None = None,
        jurisdiction: str | None = None,
        timeframe: str = "24h",
    ) -> PerformanceSummary:
        """Windowed summary from the durable store.

        Args:
            service_type: Optional service type filter
            jurisdiction: Optional jurisdiction filter
            timeframe: One of 1h, 24h, 7d, 30d

        Returns:
            PerformanceSummary for the window ending now

        Raises:
            ValueError: If the timeframe is unknown or no repository is configured
        """
        window = TIMEFRAME_WINDOWS.get(timeframe)
        if window is None:
            raise ValueError(f"Unknown timeframe {timeframe!r}; expected one of {', '.join(TIMEFRAME_WINDOWS)}")
        if self.repository is None:
            raise ValueError("Summary queries require a monitoring repository")

        service_filter = ServiceType(service_type).value if service_type else None
        now = self._clock()
        since = now - window

        aggregates = self.repository.aggregate_window(since, service_filter, jurisdiction)
        durations = self.repository.fetch_durations_ms(since, service_filter, jurisdiction)
        token_totals = self.repository.fetch_token_totals(since, service_filter, jurisdiction)

        total = aggregates.total_requests
        success_rate = (aggregates.successful_requests / total * 100) if total else 0.0
        p95 = percentile_cont(durations, 0.95)

        return PerformanceSummary(
            total_requests=total,
            successful_requests=aggregates.successful_requests,
            failed_requests=aggregates.failed_requests,
            timeout_requests=aggregates.timeout_requests,
            success_rate=success_rate,
            average_duration_ms=aggregates.avg_duration_ms or 0.0,
            p95_duration_ms=p95 or 0.0,
            average_accuracy=aggregates.avg_accuracy or 0.0,
            average_confidence=aggregates.avg_confidence or 0.0,
            total_tokens=sum(token_totals),
            timeframe=timeframe,
            service_type=service_filter,
            jurisdiction=jurisdiction,
            generated_at=now,
        )
