from __future__ import annotations

import threading

import pytest

from src.core.stats import KeyedCounters, StatsAggregator, success_rate


def test_success_rate_with_no_traffic_is_100() -> None:
    assert success_rate(0, 0) == 100.0
    assert StatsAggregator().snapshot().success_rate == 100.0


def test_success_rate_formula() -> None:
    stats = StatsAggregator()
    for _ in range(10):
        stats.increment_processed("user-events")
    stats.increment_error("TimeoutError")
    stats.increment_error("TimeoutError")

    snap = stats.snapshot()
    assert snap.total_processed == 10
    assert snap.total_errors == 2
    assert snap.success_rate == pytest.approx(80.0)
    assert snap.error_rate == pytest.approx(20.0)
    assert snap.error_type_counts == {"TimeoutError": 2}


def test_average_latency_is_the_mean_of_samples() -> None:
    stats = StatsAggregator()
    for ms in (10.0, 20.0, 60.0):
        stats.increment_processed("business-events")
        stats.update_latency(ms)
    snap = stats.snapshot()
    assert snap.average_latency_ms == pytest.approx(30.0)
    assert snap.min_latency_ms == 10.0
    assert snap.max_latency_ms == 60.0


def test_concurrent_increments_are_not_lost() -> None:
    stats = StatsAggregator()
    topics = ["user-events", "business-events", "system-events"]
    per_thread = 500
    barrier = threading.Barrier(8)

    def worker(i: int) -> None:
        barrier.wait()
        for _ in range(per_thread):
            stats.increment_processed(topics[i % 3])
            stats.update_latency(1.0)
            if i % 2:
                stats.increment_error("X")

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert stats.total_processed == 8 * per_thread
    assert stats.total_errors == 4 * per_thread
    assert sum(stats.topic_count(t) for t in topics) == 8 * per_thread
    assert stats.topic_count("user-events") == 3 * per_thread
    assert stats.snapshot().average_latency_ms == pytest.approx(1.0)


def test_keyed_counters_first_insert_race() -> None:
    counters = KeyedCounters()
    barrier = threading.Barrier(16)

    def worker() -> None:
        barrier.wait()
        counters.increment("same-key")

    threads = [threading.Thread(target=worker) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert counters.get("same-key") == 16
    assert counters.as_dict() == {"same-key": 16}


def test_restore_and_reset() -> None:
    stats = StatsAggregator("consumer")
    stats.restore(processed=4, errors=1, total_latency_ms=40.0)
    snap = stats.snapshot()
    assert snap.total_processed == 4
    assert snap.average_latency_ms == pytest.approx(10.0)
    assert snap.success_rate == pytest.approx(75.0)

    stats.reset()
    assert stats.total_processed == 0
    assert stats.total_errors == 0
    assert stats.snapshot().topic_counts == {}


def test_snapshot_to_dict_is_json_ready() -> None:
    stats = StatsAggregator()
    stats.increment_processed("system-events")
    d = stats.snapshot().to_dict()
    assert d["topic_counts"] == {"system-events": 1}
    assert d["uptime_seconds"] >= 0
    assert isinstance(d["started_at"], str)
