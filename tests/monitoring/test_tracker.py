"""Tests for the in-flight request tracker.

Covers:
- Exactly-once completion (sequential, after the stale sweep, and racing threads)
- Duration from the injected clock
- Stale sweep routing through the normal terminal transition
- Isolation of failing completion steps
- The track() context manager
"""

import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from aiwatch.monitoring.tracker import STALE_ERROR_DETAILS, RequestTracker
from aiwatch.monitoring.types import RequestStatus, ServiceType, TokenUsage


def _ai_count(metrics, service_type: str, status: str, jurisdiction: str) -> float:
    value = metrics.registry.get_sample_value(
        "ai_requests_total",
        {"service_type": service_type, "status": status, "jurisdiction": jurisdiction},
    )
    return value or 0.0


def test_start_request_registers_pending_entry(tracker: RequestTracker) -> None:
    metric = tracker.start_request("r1", "guidance", "US", metadata={"user": "u1"})

    assert metric.status is RequestStatus.PENDING
    assert metric.service_type is ServiceType.GUIDANCE
    assert tracker.active_count() == 1
    assert tracker.get_active("r1") == metric
    assert tracker.active_count_by_service() == {"guidance": 1}


def test_complete_request_computes_duration_and_persists(tracker, repository, clock) -> None:
    tracker.start_request("r1", ServiceType.TRANSLATION, "CA")
    clock.advance(seconds=2.5)

    result = tracker.complete_request(
        "r1",
        "success",
        accuracy=0.9,
        confidence=0.8,
        token_usage=TokenUsage.from_counts(100, 50),
    )

    assert result is not None
    assert result.status is RequestStatus.SUCCESS
    assert result.duration == pytest.approx(2.5)
    assert result.end_time == clock.now
    assert tracker.active_count() == 0

    row = repository.get_request("r1")
    assert row is not None
    assert row.status == "success"
    assert row.duration_ms == 2500
    assert row.token_usage == {"prompt": 100, "completion": 50, "total": 150}
    assert row.accuracy == pytest.approx(0.9)


def test_second_completion_is_a_no_op(tracker, metrics, aggregator) -> None:
    tracker.start_request("r1", "guidance", "US")

    first = tracker.complete_request("r1", "success")
    second = tracker.complete_request("r1", "error", error_details="late")

    assert first is not None
    assert second is None
    assert _ai_count(metrics, "guidance", "success", "US") == 1.0
    assert _ai_count(metrics, "guidance", "error", "US") == 0.0
    assert aggregator.get_real_time("guidance").total_requests == 1


def test_complete_unknown_request_returns_none(tracker) -> None:
    assert tracker.complete_request("never-started", "success") is None


def test_complete_with_pending_status_raises(tracker) -> None:
    tracker.start_request("r1", "guidance", "US")

    with pytest.raises(ValueError):
        tracker.complete_request("r1", RequestStatus.PENDING)

    # The request is still in flight
    assert tracker.get_active("r1") is not None


def test_restarting_in_flight_request_overwrites_slot(tracker, clock) -> None:
    tracker.start_request("r1", "guidance", "US")
    clock.advance(seconds=5)
    tracker.start_request("r1", "mediation", "UK")

    assert tracker.active_count() == 1
    assert tracker.get_active("r1").service_type is ServiceType.MEDIATION

    result = tracker.complete_request("r1", "success")
    assert result.duration == pytest.approx(0.0)


def test_concurrent_completion_of_same_request_has_one_winner(tracker, repository) -> None:
    tracker.start_request("r1", "guidance", "US")
    barrier = threading.Barrier(8)
    results = []
    results_lock = threading.Lock()

    def _complete() -> None:
        barrier.wait()
        outcome = tracker.complete_request("r1", "success")
        with results_lock:
            results.append(outcome)

    threads = [threading.Thread(target=_complete) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for outcome in results if outcome is not None) == 1
    assert repository.get_request("r1") is not None


def test_cleanup_stale_times_out_old_requests_only(tracker, repository, alerts, clock) -> None:
    tracker.start_request("old", "guidance", "US")
    clock.advance(minutes=11)
    tracker.start_request("fresh", "guidance", "US")

    timed_out = tracker.cleanup_stale(max_age_minutes=10)

    assert timed_out == ["old"]
    assert tracker.get_active("old") is None
    assert tracker.get_active("fresh") is not None

    row = repository.get_request("old")
    assert row.status == "timeout"
    assert row.error_details == STALE_ERROR_DETAILS
    assert row.duration_ms == 11 * 60 * 1000

    alert_types = {alert.alert_type for alert in repository.list_alerts()}
    assert "AI_REQUEST_FAILED" in alert_types
    assert "AI_RESPONSE_TIME_CRITICAL" in alert_types


def test_completion_after_stale_sweep_is_a_no_op(tracker, metrics, clock) -> None:
    tracker.start_request("r1", "guidance", "US")
    clock.advance(minutes=15)
    tracker.cleanup_stale()

    assert tracker.complete_request("r1", "success", accuracy=0.99) is None
    assert _ai_count(metrics, "guidance", "timeout", "US") == 1.0
    assert _ai_count(metrics, "guidance", "success", "US") == 0.0


def test_cleanup_stale_skips_request_restarted_after_snapshot(tracker, repository, clock, monkeypatch) -> None:
    tracker.start_request("r1", "guidance", "US")
    clock.advance(minutes=11)

    claim = tracker._claim
    restarted = {}

    def restart_then_claim(request_id, **kwargs):
        restarted[request_id] = tracker.start_request(request_id, "guidance", "US")
        return claim(request_id, **kwargs)

    monkeypatch.setattr(tracker, "_claim", restart_then_claim)

    assert tracker.cleanup_stale(max_age_minutes=10) == []
    assert tracker.get_active("r1") is restarted["r1"]
    assert repository.get_request("r1") is None

    monkeypatch.setattr(tracker, "_claim", claim)
    assert tracker.complete_request("r1", "success") is not None


def test_conditional_claim_leaves_fresh_entry_in_place(tracker, clock) -> None:
    metric = tracker.start_request("r1", "guidance", "US")

    assert tracker._claim("r1", started_before=metric.start_time) is None
    assert tracker.get_active("r1") is metric
    assert tracker._claim("r1", started_before=metric.start_time + timedelta(seconds=1)) is metric
    assert tracker.get_active("r1") is None


def test_cleanup_stale_with_nothing_to_do(tracker) -> None:
    tracker.start_request("r1", "guidance", "US")
    assert tracker.cleanup_stale() == []
    assert tracker.active_count() == 1


def test_persistence_failure_does_not_stop_side_effects(aggregator, alerts, metrics, clock) -> None:
    repository = MagicMock()
    repository.save_request.side_effect = RuntimeError("database is down")
    tracker = RequestTracker(repository=repository, aggregator=aggregator, alerts=alerts, metrics=metrics, clock=clock)

    tracker.start_request("r1", "guidance", "US")
    result = tracker.complete_request("r1", "success", accuracy=0.95)

    assert result is not None
    assert tracker.active_count() == 0
    assert _ai_count(metrics, "guidance", "success", "US") == 1.0
    assert aggregator.get_real_time("guidance").total_requests == 1
    errors = metrics.registry.get_sample_value(
        "errors_total", {"error_type": "tracker_persist", "service": "tracker", "severity": "high"}
    )
    assert errors == 1.0


def test_failing_aggregator_and_alerts_never_reach_caller(repository, metrics, clock) -> None:
    aggregator = MagicMock()
    aggregator.update_real_time.side_effect = ConnectionError("cache unreachable")
    alerts = MagicMock()
    alerts.evaluate.side_effect = RuntimeError("alert sink down")
    tracker = RequestTracker(repository=repository, aggregator=aggregator, alerts=alerts, metrics=metrics, clock=clock)

    tracker.start_request("r1", "guidance", "US")
    result = tracker.complete_request("r1", "error", error_details="upstream 500")

    assert result.status is RequestStatus.ERROR
    assert repository.get_request("r1").error_details == "upstream 500"
    aggregator.update_real_time.assert_called_once_with(result)
    alerts.evaluate.assert_called_once_with(result)


def test_track_context_manager_success(tracker, repository, clock) -> None:
    with tracker.track("r1", "cultural-adaptation", "MX") as call:
        clock.advance(seconds=3)
        call.accuracy = 0.88
        call.token_usage = TokenUsage.from_counts(10, 20)

    assert call.result.status is RequestStatus.SUCCESS
    assert call.result.duration == pytest.approx(3.0)
    row = repository.get_request("r1")
    assert row.accuracy == pytest.approx(0.88)
    assert row.token_usage["total"] == 30


def test_track_context_manager_records_error_and_reraises(tracker, repository) -> None:
    with pytest.raises(TimeoutError):
        with tracker.track("r1", "guidance", "US") as call:
            raise TimeoutError("provider did not answer")

    assert call.result.status is RequestStatus.ERROR
    assert repository.get_request("r1").error_details == "provider did not answer"
    assert tracker.active_count() == 0


def test_active_gauge_follows_in_flight_requests(tracker, metrics) -> None:
    tracker.start_request("r1", "guidance", "US")
    tracker.start_request("r2", "guidance", "US")
    tracker.start_request("r3", "translation", "US")

    gauge = metrics.registry.get_sample_value("ai_active_requests", {"service_type": "guidance"})
    assert gauge == 2.0

    tracker.complete_request("r1", "success")
    gauge = metrics.registry.get_sample_value("ai_active_requests", {"service_type": "guidance"})
    assert gauge == 1.0


def test_active_gauge_is_published_under_the_tracker_lock(clock) -> None:
    metrics = MagicMock()
    tracker = RequestTracker(metrics=metrics, clock=clock)
    published = []

    def record(counts):
        published.append((tracker._lock.locked(), dict(counts)))

    metrics.set_active_requests.side_effect = record

    tracker.start_request("r1", "guidance", "US")
    tracker.start_request("r2", "translation", "US")
    tracker.complete_request("r1", "success")

    assert all(held for held, _ in published)
    assert [counts for _, counts in published] == [
        {"guidance": 1},
        {"guidance": 1, "translation": 1},
        {"translation": 1},
    ]
