"""Durable storage for AI request logs and performance alerts.

Append-only: rows are inserted once and never updated by the monitor.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import case, func, select

from aiwatch.db.models import AIPerformanceAlert, AIRequestLog
from aiwatch.db.session import Database
from aiwatch.monitoring.types import AlertRecord, RequestMetric, RequestStatus


def _naive_utc(value: datetime) -> datetime:
    """Normalize to naive UTC (columns are TIMESTAMP WITHOUT TIME ZONE)."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class WindowAggregates:
    total_requests: int
    successful_requests: int
    failed_requests: int
    timeout_requests: int
    avg_duration_ms: float | None
    avg_accuracy: float | None
    avg_confidence: float | None


class MonitoringRepository:
    """Repository for AI request logs and alerts."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def save_request(self, metric: RequestMetric) -> None:
        """Insert a terminal request record.

        Raises:
            ValueError: If the metric is still pending
            sqlalchemy.exc.SQLAlchemyError: On write failure (e.g. duplicate request_id)
        """
        if not metric.status.is_terminal:
            raise ValueError(f"Refusing to persist non-terminal request {metric.request_id}")

        row = AIRequestLog(
            request_id=metric.request_id,
            service_type=metric.service_type.value,
            jurisdiction=metric.jurisdiction,
            start_time=_naive_utc(metric.start_time),
            end_time=_naive_utc(metric.end_time) if metric.end_time else None,
            duration_ms=metric.duration_ms,
            status=metric.status.value,
            accuracy=metric.accuracy,
            confidence=metric.confidence,
            token_usage=metric.token_usage.to_dict() if metric.token_usage else None,
            error_details=metric.error_details,
            request_metadata=metric.metadata,
            created_at=_naive_utc(metric.end_time or metric.start_time),
        )
        with self.database.session() as session:
            session.add(row)

    def save_alert(self, alert: AlertRecord) -> None:
        row = AIPerformanceAlert(
            alert_type=alert.alert_type,
            severity=alert.severity,
            details=alert.details,
            created_at=_naive_utc(alert.created_at),
        )
        with self.database.session() as session:
            session.add(row)

    def _window_filters(self, since: datetime, service_type: str | None, jurisdiction: str | None) -> list:
        filters = [AIRequestLog.created_at >= _naive_utc(since)]
        if service_type:
            filters.append(AIRequestLog.service_type == service_type)
        if jurisdiction:
            filters.append(AIRequestLog.jurisdiction == jurisdiction)
        return filters

    def aggregate_window(
        self,
        since: datetime,
        service_type: str | None = None,
        jurisdiction: str | None = None,
    ) -> WindowAggregates:
        """Counts by status and null-ignoring averages for the window."""
        filters = self._window_filters(since, service_type, jurisdiction)

        def _count_status(status: RequestStatus):
            return func.coalesce(func.sum(case((AIRequestLog.status == status.value, 1), else_=0)), 0)

        query = select(
            func.count(AIRequestLog.id),
            _count_status(RequestStatus.SUCCESS),
            _count_status(RequestStatus.ERROR),
            _count_status(RequestStatus.TIMEOUT),
            func.avg(AIRequestLog.duration_ms),
            func.avg(AIRequestLog.accuracy),
            func.avg(AIRequestLog.confidence),
        ).where(*filters)

        with self.database.session() as session:
            row = session.execute(query).one()

        return WindowAggregates(
            total_requests=int(row[0] or 0),
            successful_requests=int(row[1] or 0),
            failed_requests=int(row[2] or 0),
            timeout_requests=int(row[3] or 0),
            avg_duration_ms=float(row[4]) if row[4] is not None else None,
            avg_accuracy=float(row[5]) if row[5] is not None else None,
            avg_confidence=float(row[6]) if row[6] is not None else None,
        )

    def fetch_durations_ms(
        self,
        since: datetime,
        service_type: str | None = None,
        jurisdiction: str | None = None,
    ) -> list[int]:
        """Sorted non-null durations for percentile computation."""
        filters = self._window_filters(since, service_type, jurisdiction)
        query = (
            select(AIRequestLog.duration_ms)
            .where(*filters, AIRequestLog.duration_ms.is_not(None))
            .order_by(AIRequestLog.duration_ms)
        )
        with self.database.session() as session:
            return [int(value) for value in session.scalars(query).all()]

    def fetch_token_totals(
        self,
        since: datetime,
        service_type: str | None = None,
        jurisdiction: str | None = None,
    ) -> list[int]:
        filters = self._window_filters(since, service_type, jurisdiction)
        query = select(AIRequestLog.token_usage).where(*filters, AIRequestLog.token_usage.is_not(None))
        with self.database.session() as session:
            usages = session.scalars(query).all()
        return [int(usage.get("total", 0)) for usage in usages if isinstance(usage, dict)]

    def get_request(self, request_id: str) -> AIRequestLog | None:
        with self.database.session() as session:
            row = session.scalars(select(AIRequestLog).where(AIRequestLog.request_id == request_id)).first()
            if row is not None:
                session.expunge(row)
            return row

    def list_alerts(self, since: datetime | None = None, limit: int = 100) -> list[AIPerformanceAlert]:
        query = select(AIPerformanceAlert).order_by(AIPerformanceAlert.created_at.desc()).limit(limit)
        if since is not None:
            query = query.where(AIPerformanceAlert.created_at >= _naive_utc(since))
        with self.database.session() as session:
            rows = list(session.scalars(query).all())
            for row in rows:
                session.expunge(row)
            return rows
