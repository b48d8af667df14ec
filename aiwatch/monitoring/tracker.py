"""In-flight AI request tracking.

Lifecycle:
1. start_request registers a PENDING record in the active set
2. complete_request (or the stale sweep) claims the record under the lock
3. The claimed record becomes a frozen terminal copy and runs the
   completion pipeline: persist -> prometheus -> aggregator -> alerts

The pop under the lock is what makes completion exactly-once: whichever
caller removes the entry owns the transition, everyone else gets None.
"""

from __future__ import annotations

import threading
from collections import Counter
from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any

from loguru import logger

from aiwatch.monitoring.aggregator import MetricsAggregator
from aiwatch.monitoring.alerts import AlertEngine
from aiwatch.monitoring.prometheus import MetricsRegistry
from aiwatch.monitoring.repository import MonitoringRepository
from aiwatch.monitoring.types import RequestMetric, RequestStatus, ServiceType, TokenUsage

STALE_ERROR_DETAILS = "Request timed out"


@dataclass
class TrackedCall:
    """Mutable handle yielded by RequestTracker.track.

    The wrapped code fills in whatever quality signals it has; they are
    applied when the block exits.
    """

    request_id: str
    accuracy: float | None = None
    confidence: float | None = None
    token_usage: TokenUsage | None = None
    result: RequestMetric | None = None


class RequestTracker:
    """Owns the active set of in-flight AI requests."""

    def __init__(
        self,
        repository: MonitoringRepository | None = None,
        aggregator: MetricsAggregator | None = None,
        alerts: AlertEngine | None = None,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.aggregator = aggregator
        self.alerts = alerts
        self.metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._active: dict[str, RequestMetric] = {}
        self._lock = threading.Lock()

    def start_request(
        self,
        request_id: str,
        service_type: ServiceType | str,
        jurisdiction: str,
        metadata: dict[str, Any] | None = None,
    ) -> RequestMetric:
        """Register a PENDING request.

        Reusing an id that is still in flight overwrites the earlier slot.
        """
        metric = RequestMetric(
            request_id=request_id,
            service_type=ServiceType(service_type),
            jurisdiction=jurisdiction,
            start_time=self._clock(),
            metadata=metadata,
        )
        with self._lock:
            replaced = self._active.get(request_id)
            self._active[request_id] = metric
            self._publish_active_locked()

        if replaced is not None:
            logger.bind(request_id=request_id).warning(f"[TRACKER] Request {request_id} restarted while in flight")
        else:
            logger.bind(request_id=request_id, service_type=metric.service_type.value).debug(
                f"[TRACKER] Started {metric.service_type.value} request {request_id}"
            )
        return metric

    def complete_request(
        self,
        request_id: str,
        status: RequestStatus | str,
        accuracy: float | None = None,
        confidence: float | None = None,
        token_usage: TokenUsage | None = None,
        error_details: str | None = None,
    ) -> RequestMetric | None:
        """Transition an in-flight request to a terminal status.

        Args:
            request_id: ID passed to start_request
            status: success, error or timeout
            accuracy: Optional accuracy score in [0, 1]
            confidence: Optional confidence score in [0, 1]
            token_usage: Optional token counts
            error_details: Optional error message

        Returns:
            The terminal record, or None if the request is unknown or was
            already completed

        Raises:
            ValueError: If status is not terminal
        """
        terminal_status = RequestStatus(status)
        if not terminal_status.is_terminal:
            raise ValueError(f"Cannot complete request {request_id} with non-terminal status {terminal_status}")

        claimed = self._claim(request_id)
        if claimed is None:
            logger.bind(request_id=request_id).warning(f"[TRACKER] Request {request_id} not found in active requests")
            return None

        return self._finalize(
            claimed,
            terminal_status,
            accuracy=accuracy,
            confidence=confidence,
            token_usage=token_usage,
            error_details=error_details,
        )

    def cleanup_stale(self, max_age_minutes: float = 10) -> list[str]:
        """Time out every request older than max_age_minutes.

        Does not cancel the outbound call; a late complete_request for a
        timed-out id is a no-op.

        Returns:
            IDs that were transitioned to timeout by this sweep
        """
        cutoff = self._clock() - timedelta(minutes=max_age_minutes)
        with self._lock:
            candidates = [request_id for request_id, metric in self._active.items() if metric.start_time < cutoff]

        timed_out: list[str] = []
        for request_id in candidates:
            claimed = self._claim(request_id, started_before=cutoff)
            # Completed or restarted between snapshot and claim
            if claimed is None:
                continue
            self._finalize(claimed, RequestStatus.TIMEOUT, error_details=STALE_ERROR_DETAILS)
            timed_out.append(request_id)

        if timed_out:
            logger.warning(f"[TRACKER] Timed out {len(timed_out)} stale request(s)")
        return timed_out

    @contextmanager
    def track(
        self,
        request_id: str,
        service_type: ServiceType | str,
        jurisdiction: str,
        metadata: dict[str, Any] | None = None,
    ) -> Generator[TrackedCall, None, None]:
        """Wrap an AI call in start/complete.

        Completes with success on normal exit and with error when the block
        raises; the caller's exception is re-raised unchanged.
        """
        self.start_request(request_id, service_type, jurisdiction, metadata)
        handle = TrackedCall(request_id=request_id)
        try:
            yield handle
        except Exception as e:
            handle.result = self.complete_request(
                request_id,
                RequestStatus.ERROR,
                accuracy=handle.accuracy,
                confidence=handle.confidence,
                token_usage=handle.token_usage,
                error_details=str(e) or type(e).__name__,
            )
            raise
        handle.result = self.complete_request(
            request_id,
            RequestStatus.SUCCESS,
            accuracy=handle.accuracy,
            confidence=handle.confidence,
            token_usage=handle.token_usage,
        )

    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def active_count_by_service(self) -> dict[str, int]:
        with self._lock:
            return self._counts_locked()

    def get_active(self, request_id: str) -> RequestMetric | None:
        with self._lock:
            return self._active.get(request_id)

    def _counts_locked(self) -> dict[str, int]:
        return dict(Counter(metric.service_type.value for metric in self._active.values()))

    def _claim(self, request_id: str, started_before: datetime | None = None) -> RequestMetric | None:
        with self._lock:
            metric = self._active.get(request_id)
            if metric is None:
                return None
            if started_before is not None and metric.start_time >= started_before:
                return None
            del self._active[request_id]
            self._publish_active_locked()
            return metric

    def _finalize(
        self,
        claimed: RequestMetric,
        status: RequestStatus,
        accuracy: float | None = None,
        confidence: float | None = None,
        token_usage: TokenUsage | None = None,
        error_details: str | None = None,
    ) -> RequestMetric:
        """Single terminal transition shared by completion and the stale sweep."""
        end_time = self._clock()
        terminal = replace(
            claimed,
            status=status,
            end_time=end_time,
            duration=(end_time - claimed.start_time).total_seconds(),
            accuracy=accuracy,
            confidence=confidence,
            token_usage=token_usage,
            error_details=error_details,
        )

        logger.bind(
            request_id=terminal.request_id,
            service_type=terminal.service_type.value,
            status=terminal.status.value,
            duration=terminal.duration,
        ).info(f"[TRACKER] {terminal.service_type.value} request {terminal.request_id} -> {terminal.status.value}")

        self._run_step("persist", terminal, self._persist)
        if self.metrics is not None:
            self._run_step("prometheus", terminal, self.metrics.track_ai_request)
        if self.aggregator is not None:
            self._run_step("aggregate", terminal, self.aggregator.update_real_time)
        if self.alerts is not None:
            self._run_step("alerts", terminal, self.alerts.evaluate)

        return terminal

    def _persist(self, terminal: RequestMetric) -> None:
        if self.repository is not None:
            self.repository.save_request(terminal)

    def _run_step(self, step: str, terminal: RequestMetric, func: Callable[[RequestMetric], Any]) -> None:
        try:
            func(terminal)
        except Exception as e:
            logger.bind(request_id=terminal.request_id, step=step).error(
                f"[TRACKER] Completion step '{step}' failed for {terminal.request_id}: {e}"
            )
            if self.metrics is not None:
                try:
                    self.metrics.track_error(f"tracker_{step}", "tracker", "high")
                except Exception as metrics_error:
                    logger.debug(f"[TRACKER] Could not record error metric: {metrics_error}")

    def _publish_active_locked(self) -> None:
        # Caller holds self._lock so gauge updates land in transition order
        if self.metrics is None:
            return
        try:
            self.metrics.set_active_requests(self._counts_locked())
        except Exception as e:
            logger.debug(f"[TRACKER] Could not publish active gauge: {e}")
