"""Threshold alerts for completed AI requests.

Rules are evaluated independently against one terminal record. Every rule that
fires yields its own alert; there is no deduplication window.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from loguru import logger

from aiwatch.monitoring.prometheus import MetricsRegistry
from aiwatch.monitoring.repository import MonitoringRepository
from aiwatch.monitoring.types import AlertRecord, RequestMetric, RequestStatus

AI_RESPONSE_TIME_CRITICAL = "AI_RESPONSE_TIME_CRITICAL"
AI_RESPONSE_TIME_WARNING = "AI_RESPONSE_TIME_WARNING"
AI_ACCURACY_CRITICAL = "AI_ACCURACY_CRITICAL"
AI_ACCURACY_WARNING = "AI_ACCURACY_WARNING"
AI_REQUEST_FAILED = "AI_REQUEST_FAILED"


@dataclass(frozen=True)
class AlertThresholds:
    response_time_warning_seconds: float = 10.0
    response_time_critical_seconds: float = 30.0
    accuracy_warning: float = 0.7
    accuracy_critical: float = 0.5

    @classmethod
    def from_settings(cls, settings) -> AlertThresholds:
        return cls(
            response_time_warning_seconds=settings.alert_response_time_warning_seconds,
            response_time_critical_seconds=settings.alert_response_time_critical_seconds,
            accuracy_warning=settings.alert_accuracy_warning,
            accuracy_critical=settings.alert_accuracy_critical,
        )


class AlertEngine:
    """Evaluates terminal records and persists the alerts they trigger."""

    def __init__(
        self,
        repository: MonitoringRepository | None = None,
        thresholds: AlertThresholds | None = None,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.thresholds = thresholds or AlertThresholds()
        self.metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def check_rules(self, metric: RequestMetric) -> list[AlertRecord]:
        """Pure rule evaluation. No side effects.

        Args:
            metric: Terminal request record

        Returns:
            One AlertRecord per rule that fired
        """
        thresholds = self.thresholds
        now = self._clock()
        base = {
            "service_type": metric.service_type.value,
            "jurisdiction": metric.jurisdiction,
            "request_id": metric.request_id,
        }
        alerts: list[AlertRecord] = []

        if metric.duration is not None:
            if metric.duration > thresholds.response_time_critical_seconds:
                alerts.append(
                    AlertRecord(
                        alert_type=AI_RESPONSE_TIME_CRITICAL,
                        severity="critical",
                        details={
                            **base,
                            "duration": metric.duration,
                            "threshold": thresholds.response_time_critical_seconds,
                        },
                        created_at=now,
                    )
                )
            elif metric.duration > thresholds.response_time_warning_seconds:
                alerts.append(
                    AlertRecord(
                        alert_type=AI_RESPONSE_TIME_WARNING,
                        severity="warning",
                        details={
                            **base,
                            "duration": metric.duration,
                            "threshold": thresholds.response_time_warning_seconds,
                        },
                        created_at=now,
                    )
                )

        if metric.accuracy is not None:
            if metric.accuracy < thresholds.accuracy_critical:
                alerts.append(
                    AlertRecord(
                        alert_type=AI_ACCURACY_CRITICAL,
                        severity="critical",
                        details={**base, "accuracy": metric.accuracy, "threshold": thresholds.accuracy_critical},
                        created_at=now,
                    )
                )
            elif metric.accuracy < thresholds.accuracy_warning:
                alerts.append(
                    AlertRecord(
                        alert_type=AI_ACCURACY_WARNING,
                        severity="warning",
                        details={**base, "accuracy": metric.accuracy, "threshold": thresholds.accuracy_warning},
                        created_at=now,
                    )
                )

        if metric.status in {RequestStatus.ERROR, RequestStatus.TIMEOUT}:
            alerts.append(
                AlertRecord(
                    alert_type=AI_REQUEST_FAILED,
                    severity="warning",
                    details={**base, "status": metric.status.value, "error_details": metric.error_details},
                    created_at=now,
                )
            )

        return alerts

    def evaluate(self, metric: RequestMetric) -> list[AlertRecord]:
        """Evaluate rules, then log and persist every fired alert.

        Delivery failures are logged per alert and never raised.
        """
        alerts = self.check_rules(metric)
        for alert in alerts:
            self._emit(alert)
        return alerts

    def _emit(self, alert: AlertRecord) -> None:
        logger.bind(
            alert_type=alert.alert_type,
            severity=alert.severity,
            request_id=alert.details.get("request_id"),
        ).warning(f"[ALERT] {alert.severity.upper()} {alert.alert_type}: {alert.details}")

        if self.metrics is not None:
            self.metrics.track_alert(alert.alert_type, alert.severity)

        if self.repository is None:
            return
        try:
            self.repository.save_alert(alert)
        except Exception as e:
            logger.error(f"[ALERT] Failed to persist {alert.alert_type}: {e}")
            if self.metrics is not None:
                self.metrics.track_error("alert_persist", "alerts")
