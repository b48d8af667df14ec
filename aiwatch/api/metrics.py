"""Metrics exposition and AI performance read endpoints."""

import time
from dataclasses import asdict

from fastapi import APIRouter, HTTPException, Query, Request, Response
from loguru import logger

from aiwatch.monitoring.prometheus import EXPOSITION_CONTENT_TYPE
from aiwatch.monitoring.types import ServiceType

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
def metrics(request: Request) -> Response:
    """Prometheus text exposition."""
    registry = request.app.state.services.metrics
    return Response(content=registry.render(), media_type=EXPOSITION_CONTENT_TYPE)


@router.get("/internal/ai/summary")
def ai_summary(
    request: Request,
    service_type: ServiceType | None = None,
    jurisdiction: str | None = None,
    timeframe: str = Query(default="24h"),
) -> dict:
    """Windowed performance summary from the durable store.

    Args:
        service_type: Optional service type filter
        jurisdiction: Optional jurisdiction filter
        timeframe: 1h, 24h, 7d or 30d

    Raises:
        HTTPException: 400 on an unknown timeframe
    """
    aggregator = request.app.state.services.aggregator
    try:
        summary = aggregator.get_summary(service_type=service_type, jurisdiction=jurisdiction, timeframe=timeframe)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    body = asdict(summary)
    body["generated_at"] = summary.generated_at.isoformat() if summary.generated_at else None
    return body


@router.get("/internal/ai/realtime")
def ai_realtime(request: Request) -> dict:
    """Rolling per-service aggregates plus in-flight counts."""
    services = request.app.state.services
    aggregates = services.aggregator.get_all_real_time()
    return {
        "services": {name: aggregate.to_dict() if aggregate else None for name, aggregate in aggregates.items()},
        "active_requests": services.tracker.active_count_by_service(),
        "total_active_requests": services.tracker.active_count(),
    }


async def http_metrics_middleware(request: Request, call_next):
    """Record request count and latency per matched route."""
    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        route = request.scope.get("route")
        # Unmatched paths share one label to keep cardinality bounded
        route_label = getattr(route, "path", None) or "unmatched"
        duration = time.perf_counter() - started
        try:
            request.app.state.services.metrics.track_http(request.method, route_label, status_code, duration)
        except Exception as e:
            logger.debug(f"Failed to record HTTP metrics: {e}")
        logger.debug(f"Response: {status_code} for {request.method} {request.url.path}")
