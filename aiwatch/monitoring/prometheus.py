"""Prometheus metrics for aiwatch.

Each MetricsRegistry owns its own CollectorRegistry, so test cases and
multiple app instances in one process never share counters.
"""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    GCCollector,
    Histogram,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)

from aiwatch.monitoring.types import RequestMetric, ServiceType

EXPOSITION_CONTENT_TYPE = CONTENT_TYPE_LATEST


class MetricsRegistry:
    """HTTP, AI request, cache, error and rate-limit metrics."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()

        # Process CPU, memory, fds plus interpreter and GC stats
        ProcessCollector(registry=self.registry)
        PlatformCollector(registry=self.registry)
        GCCollector(registry=self.registry)

        # ----------------------------
        # HTTP request metrics
        # ----------------------------
        self.http_requests_total = Counter(
            "http_requests_total",
            "Total number of HTTP requests",
            ["method", "route", "status_code"],
            registry=self.registry,
        )
        self.http_request_duration = Histogram(
            "http_request_duration_seconds",
            "Duration of HTTP requests in seconds",
            ["method", "route", "status_code"],
            buckets=[0.1, 0.5, 1, 2, 5, 10],
            registry=self.registry,
        )

        # ----------------------------
        # AI service metrics
        # ----------------------------
        self.ai_requests_total = Counter(
            "ai_requests_total",
            "Total number of AI service requests",
            ["service_type", "status", "jurisdiction"],
            registry=self.registry,
        )
        self.ai_request_duration = Histogram(
            "ai_request_duration_seconds",
            "Duration of AI service requests in seconds",
            ["service_type", "jurisdiction"],
            buckets=[1, 5, 10, 30, 60, 120],
            registry=self.registry,
        )
        self.ai_accuracy = Histogram(
            "ai_guidance_accuracy_score",
            "AI response accuracy scores",
            ["jurisdiction", "category"],
            buckets=[0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0],
            registry=self.registry,
        )
        self.ai_active_requests = Gauge(
            "ai_active_requests",
            "AI requests currently in flight",
            ["service_type"],
            registry=self.registry,
        )
        self.ai_alerts_total = Counter(
            "ai_performance_alerts_total",
            "AI performance alerts raised",
            ["alert_type", "severity"],
            registry=self.registry,
        )

        # ----------------------------
        # Cache metrics
        # ----------------------------
        self.cache_hits = Counter(
            "cache_hits_total",
            "Total number of cache hits",
            ["cache_type"],
            registry=self.registry,
        )
        self.cache_misses = Counter(
            "cache_misses_total",
            "Total number of cache misses",
            ["cache_type"],
            registry=self.registry,
        )

        # ----------------------------
        # Errors and admission control
        # ----------------------------
        self.errors_total = Counter(
            "errors_total",
            "Total number of errors",
            ["error_type", "service", "severity"],
            registry=self.registry,
        )
        self.rate_limit_hits = Counter(
            "rate_limit_hits_total",
            "Total number of rate limit rejections",
            ["tier"],
            registry=self.registry,
        )

        # Initialize in-flight gauges to 0 for dashboard visibility
        for service_type in ServiceType:
            self.ai_active_requests.labels(service_type.value).set(0)

    def track_http(self, method: str, route: str, status_code: int, duration_seconds: float) -> None:
        status = str(status_code)
        self.http_requests_total.labels(method, route, status).inc()
        self.http_request_duration.labels(method, route, status).observe(duration_seconds)

    def track_ai_request(self, metric: RequestMetric) -> None:
        """Record a terminal AI request."""
        service_type = metric.service_type.value
        self.ai_requests_total.labels(service_type, metric.status.value, metric.jurisdiction).inc()
        if metric.duration is not None:
            self.ai_request_duration.labels(service_type, metric.jurisdiction).observe(metric.duration)
        if metric.accuracy is not None:
            self.ai_accuracy.labels(metric.jurisdiction, service_type).observe(metric.accuracy)

    def set_active_requests(self, counts: dict[str, int]) -> None:
        for service_type in ServiceType:
            self.ai_active_requests.labels(service_type.value).set(counts.get(service_type.value, 0))

    def track_alert(self, alert_type: str, severity: str) -> None:
        self.ai_alerts_total.labels(alert_type, severity).inc()

    def track_cache(self, hit: bool, cache_type: str) -> None:
        if hit:
            self.cache_hits.labels(cache_type).inc()
        else:
            self.cache_misses.labels(cache_type).inc()

    def track_error(self, error_type: str, service: str, severity: str = "medium") -> None:
        self.errors_total.labels(error_type, service, severity).inc()

    def track_rate_limit_hit(self, tier: str) -> None:
        self.rate_limit_hits.labels(tier).inc()

    def render(self) -> bytes:
        """Text exposition for the scraper."""
        return generate_latest(self.registry)
