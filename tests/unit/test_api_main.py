from __future__ import annotations

from fastapi.testclient import TestClient

from src.api.main import create_app
from src.core.audit import AuditRecord, AuditStatus, InMemoryAuditStore
from src.core.stats import StatsAggregator


def test_health_and_stats_endpoints() -> None:
    stats = StatsAggregator("consumer")
    stats.increment_processed("user-events")
    stats.increment_error("RuntimeError")
    client = TestClient(create_app(stats))

    health = client.get("/health")
    assert health.status_code == 200
    assert health.json() == {"status": "ok", "service": "consumer"}

    body = client.get("/stats").json()
    assert body["total_processed"] == 1
    assert body["total_errors"] == 1
    assert body["success_rate"] == 0.0
    assert body["topic_counts"] == {"user-events": 1}


def test_report_requires_an_audit_store() -> None:
    client = TestClient(create_app(StatsAggregator()))
    assert client.get("/stats/report").status_code == 404


def test_report_reads_the_audit_store() -> None:
    store = InMemoryAuditStore()
    store.insert(AuditRecord(message_id="m1", topic="user-events", status=AuditStatus.SUCCESS, processing_time_ms=5.0))
    client = TestClient(create_app(StatsAggregator("producer"), store, topics=["user-events"]))

    body = client.get("/stats/report").json()
    assert body["total_messages"] == 1
    assert body["success_rate"] == 100.0
    assert body["topic_breakdown"] == {"user-events": 1}
