"""Tests for rolling aggregates and windowed summaries."""

import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from aiwatch.monitoring.aggregator import MetricsAggregator, apply_completion, percentile_cont, realtime_key
from aiwatch.monitoring.types import RequestMetric, RequestStatus, ServiceType, TokenUsage


def _terminal(clock, request_id="r1", status=RequestStatus.SUCCESS, duration=1.0, accuracy=None, **kwargs) -> RequestMetric:
    return RequestMetric(
        request_id=request_id,
        service_type=kwargs.pop("service_type", ServiceType.GUIDANCE),
        jurisdiction=kwargs.pop("jurisdiction", "US"),
        start_time=clock.now - timedelta(seconds=duration),
        end_time=clock.now,
        duration=duration,
        status=status,
        accuracy=accuracy,
        **kwargs,
    )


def test_apply_completion_running_means(clock) -> None:
    document = apply_completion(None, _terminal(clock, duration=2.0, accuracy=0.8), now=1.0)
    document = apply_completion(document, _terminal(clock, duration=4.0, accuracy=0.6), now=2.0)

    assert document["total_requests"] == 2
    assert document["successful_requests"] == 2
    assert document["average_response_time"] == pytest.approx(3.0)
    assert document["average_accuracy"] == pytest.approx(0.7)
    assert document["last_updated"] == 2.0


def test_apply_completion_failures_do_not_touch_accuracy(clock) -> None:
    document = apply_completion(None, _terminal(clock, duration=1.0, accuracy=0.9), now=1.0)
    document = apply_completion(
        document, _terminal(clock, status=RequestStatus.ERROR, duration=3.0, accuracy=0.1), now=2.0
    )

    assert document["total_requests"] == 2
    assert document["successful_requests"] == 1
    assert document["average_response_time"] == pytest.approx(2.0)
    assert document["average_accuracy"] == pytest.approx(0.9)


def test_success_without_accuracy_keeps_average(clock) -> None:
    document = apply_completion(None, _terminal(clock, accuracy=0.5), now=1.0)
    document = apply_completion(document, _terminal(clock, accuracy=None), now=2.0)

    assert document["successful_requests"] == 2
    assert document["average_accuracy"] == pytest.approx(0.5)


def test_concurrent_updates_lose_nothing(aggregator, clock) -> None:
    workers = 16
    per_worker = 25
    barrier = threading.Barrier(workers)

    def _run(worker: int) -> None:
        barrier.wait()
        for i in range(per_worker):
            aggregator.update_real_time(_terminal(clock, request_id=f"w{worker}-{i}", duration=2.0, accuracy=0.5))

    threads = [threading.Thread(target=_run, args=(n,)) for n in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    aggregate = aggregator.get_real_time(ServiceType.GUIDANCE)
    assert aggregate.total_requests == workers * per_worker
    assert aggregate.successful_requests == workers * per_worker
    assert aggregate.average_response_time == pytest.approx(2.0)
    assert aggregate.average_accuracy == pytest.approx(0.5)


def test_aggregates_are_keyed_by_service_type(aggregator, clock) -> None:
    aggregator.update_real_time(_terminal(clock, service_type=ServiceType.MEDIATION))

    assert aggregator.get_real_time("mediation").total_requests == 1
    assert aggregator.get_real_time("guidance") is None


def test_aggregate_expires_with_ttl_and_restarts_fresh(aggregator, monotonic, clock) -> None:
    aggregator.update_real_time(_terminal(clock, request_id="a"))
    aggregator.update_real_time(_terminal(clock, request_id="b"))

    monotonic.advance(301)
    assert aggregator.get_real_time("guidance") is None

    aggregator.update_real_time(_terminal(clock, request_id="c"))
    assert aggregator.get_real_time("guidance").total_requests == 1


def test_each_write_refreshes_ttl(aggregator, monotonic, clock) -> None:
    aggregator.update_real_time(_terminal(clock, request_id="a"))
    monotonic.advance(200)
    aggregator.update_real_time(_terminal(clock, request_id="b"))
    monotonic.advance(200)

    assert aggregator.get_real_time("guidance").total_requests == 2


def test_cache_failure_is_swallowed(metrics, clock) -> None:
    cache = MagicMock()
    cache.update_json.side_effect = ConnectionError("redis down")
    cache.get_json.side_effect = ConnectionError("redis down")
    aggregator = MetricsAggregator(cache, metrics=metrics, clock=clock)

    aggregator.update_real_time(_terminal(clock))

    assert aggregator.get_real_time("guidance") is None
    cache.update_json.assert_called_once()
    assert cache.update_json.call_args.args[0] == realtime_key("guidance")


def test_get_real_time_records_cache_hits_and_misses(aggregator, metrics, clock) -> None:
    aggregator.get_real_time("guidance")
    aggregator.update_real_time(_terminal(clock))
    aggregator.get_real_time("guidance")
    aggregator.get_real_time("guidance")

    assert metrics.registry.get_sample_value("cache_misses_total", {"cache_type": "ai_realtime"}) == 1.0
    assert metrics.registry.get_sample_value("cache_hits_total", {"cache_type": "ai_realtime"}) == 2.0


def test_percentile_cont_interpolates() -> None:
    assert percentile_cont([100, 200, 300, 400, 500], 0.95) == pytest.approx(480.0)
    assert percentile_cont([42], 0.95) == 42.0
    assert percentile_cont([], 0.95) is None
    assert percentile_cont([1, 2, 3], 0.5) == 2.0


def test_percentile_cont_rejects_bad_fraction() -> None:
    with pytest.raises(ValueError):
        percentile_cont([1, 2], 1.5)


def test_accuracy_scenario_end_to_end(tracker, aggregator, repository, clock) -> None:
    """r1 completes 12s after start with accuracy 0.65."""
    tracker.start_request("r1", "guidance", "US")
    clock.advance(seconds=12)
    tracker.complete_request("r1", "success", accuracy=0.65)

    realtime = aggregator.get_real_time("guidance")
    assert realtime.total_requests == 1
    assert realtime.average_accuracy == pytest.approx(0.65)
    assert realtime.average_response_time == pytest.approx(12.0)

    alert_types = sorted(alert.alert_type for alert in repository.list_alerts())
    assert alert_types == ["AI_ACCURACY_WARNING", "AI_RESPONSE_TIME_WARNING"]

    summary = aggregator.get_summary(timeframe="1h")
    assert summary.total_requests == 1
    assert summary.successful_requests == 1
    assert summary.average_accuracy == pytest.approx(0.65)
    assert summary.success_rate == pytest.approx(100.0)
    assert summary.p95_duration_ms == pytest.approx(12000.0)


def test_summary_counts_filters_and_tokens(tracker, aggregator, clock) -> None:
    tracker.start_request("a", "guidance", "US")
    tracker.start_request("b", "guidance", "CA")
    tracker.start_request("c", "translation", "US")
    tracker.start_request("d", "guidance", "US")
    clock.advance(seconds=1)
    tracker.complete_request("a", "success", accuracy=0.9, confidence=0.8, token_usage=TokenUsage.from_counts(10, 5))
    clock.advance(seconds=1)
    tracker.complete_request("b", "error", error_details="boom")
    tracker.complete_request("c", "success", token_usage=TokenUsage.from_counts(100, 100))
    clock.advance(minutes=20)
    tracker.cleanup_stale(max_age_minutes=10)

    overall = aggregator.get_summary(timeframe="24h")
    assert overall.total_requests == 4
    assert overall.successful_requests == 2
    assert overall.failed_requests == 1
    assert overall.timeout_requests == 1
    assert overall.success_rate == pytest.approx(50.0)
    assert overall.total_tokens == 215
    assert overall.average_accuracy == pytest.approx(0.9)
    assert overall.average_confidence == pytest.approx(0.8)

    guidance_us = aggregator.get_summary(service_type="guidance", jurisdiction="US", timeframe="24h")
    assert guidance_us.total_requests == 2
    assert guidance_us.service_type == "guidance"
    assert guidance_us.jurisdiction == "US"


def test_summary_window_excludes_old_records(tracker, aggregator, clock) -> None:
    tracker.start_request("old", "guidance", "US")
    tracker.complete_request("old", "success")
    clock.advance(minutes=90)
    tracker.start_request("new", "guidance", "US")
    tracker.complete_request("new", "success")

    assert aggregator.get_summary(timeframe="1h").total_requests == 1
    assert aggregator.get_summary(timeframe="24h").total_requests == 2


def test_summary_for_empty_window(aggregator) -> None:
    summary = aggregator.get_summary(timeframe="7d")

    assert summary.total_requests == 0
    assert summary.success_rate == 0.0
    assert summary.p95_duration_ms == 0.0
    assert summary.total_tokens == 0


def test_summary_rejects_unknown_timeframe(aggregator) -> None:
    with pytest.raises(ValueError, match="Unknown timeframe"):
        aggregator.get_summary(timeframe="2w")
