from __future__ import annotations

import logging
import time
from decimal import Decimal

import pytest

from src.contracts import codec
from src.core.audit import AuditFilter, AuditStatus
from src.core.errors import ProcessingError
from src.core.message_bus import InMemoryMessageBus
from src.core.models import BusinessEvent, SystemEvent, UserEvent
from src.core.stats import StatsAggregator
from src.consumer.listener import (
    EventListener,
    ListenerWorker,
    MessageState,
    ack_policy_by_name,
    acknowledge_on_success,
)
from src.consumer.processor import UNKNOWN_EVENT_TYPE, MessageProcessor
from src.consumer.projections import (
    BusinessEventRow,
    InMemoryConsumerRepository,
    SystemEventRow,
    UserEventRow,
)

GROUP = "test-group"


def _send(bus: InMemoryMessageBus, event) -> None:
    bus.send(event.topic, event.routing_key(), codec.encode(event)).result(timeout=5.0)


def _poll_all(listener: EventListener, bus: InMemoryMessageBus, topic: str):
    outcomes = []
    for p in range(bus.partitions):
        outcomes.extend(listener.poll_once(topic=topic, consumer="c1", partition=p))
    return outcomes


@pytest.fixture
def bus():
    b = InMemoryMessageBus(partitions=3)
    yield b
    b.close()


@pytest.fixture
def repo() -> InMemoryConsumerRepository:
    return InMemoryConsumerRepository()


@pytest.fixture
def stats() -> StatsAggregator:
    return StatsAggregator("consumer")


def test_successful_message_is_persisted_projected_and_acked(bus, repo, stats) -> None:
    listener = EventListener(bus, MessageProcessor(repo, stats), group=GROUP)
    ev = BusinessEvent(
        source="checkout",
        order_id="order123",
        customer_id="customer456",
        transaction_type="ORDER_CREATED",
        amount=Decimal("99.99"),
    )
    _send(bus, ev)

    (outcome,) = _poll_all(listener, bus, "business-events")
    assert outcome.states == [
        MessageState.RECEIVED,
        MessageState.PROCESSING,
        MessageState.PERSISTED,
        MessageState.ACKNOWLEDGED,
    ]
    assert outcome.event_id == ev.id

    (record,) = repo.find_by_message_id(ev.id)
    assert record.status == AuditStatus.SUCCESS
    assert record.processing_time_ms is not None
    (row,) = repo.projections(BusinessEventRow)
    assert row.amount == Decimal("99.99")
    assert row.transaction_type == "ORDER_CREATED"
    assert stats.total_processed == 1
    assert stats.topic_count("business-events") == 1
    assert bus.acked_count(group=GROUP, topic="business-events") == 1
    assert bus.pending_count(group=GROUP, topic="business-events") == 0


def test_persistence_failure_writes_one_failed_record_and_still_acks(bus, repo, stats) -> None:
    repo.fail_with = RuntimeError("constraint violation")
    listener = EventListener(bus, MessageProcessor(repo, stats), group=GROUP)
    ev = UserEvent(source="web", user_id="user123", action="LOGIN")
    _send(bus, ev)

    (outcome,) = _poll_all(listener, bus, "user-events")
    assert MessageState.FAILED in outcome.states
    assert outcome.persisted is False
    assert outcome.acknowledged is True
    assert "constraint violation" in outcome.error

    records = repo.find_by_message_id(ev.id)
    assert [r.status for r in records] == [AuditStatus.FAILED]
    assert repo.count_projections() == 0
    assert stats.total_errors == 1
    assert stats.total_processed == 0
    assert bus.acked_count(group=GROUP, topic="user-events") == 1


def test_acknowledge_on_success_leaves_failed_message_pending(bus, repo, stats) -> None:
    repo.fail_with = RuntimeError("db down")
    listener = EventListener(bus, MessageProcessor(repo, stats), group=GROUP, ack_policy=acknowledge_on_success)
    _send(bus, UserEvent(source="web", user_id="user123", action="LOGIN"))

    (outcome,) = _poll_all(listener, bus, "user-events")
    assert outcome.state == MessageState.FAILED
    assert outcome.acknowledged is False
    assert bus.pending_count(group=GROUP, topic="user-events") == 1

    # Redelivery from the pending list succeeds once the store recovers.
    repo.fail_with = None
    redelivered = []
    for p in range(bus.partitions):
        redelivered.extend(listener.poll_once(topic="user-events", consumer="c1", partition=p, pending=True))
    assert len(redelivered) == 1
    assert redelivered[0].acknowledged is True
    assert bus.pending_count(group=GROUP, topic="user-events") == 0
    assert repo.count_projections(UserEventRow) == 1


def test_undecodable_payload_is_audited_and_acked(bus, repo, stats) -> None:
    listener = EventListener(bus, MessageProcessor(repo, stats), group=GROUP)
    bus.send("system-events", None, "{garbage").result(timeout=5.0)

    (outcome,) = listener.poll_once(topic="system-events", consumer="c1", partition=0)
    assert outcome.event_id is None
    assert outcome.states == [MessageState.RECEIVED, MessageState.FAILED, MessageState.ACKNOWLEDGED]

    (record,) = repo.all()
    assert record.status == AuditStatus.FAILED
    assert record.event_type == UNKNOWN_EVENT_TYPE
    assert record.message_id == "system-events:0:0"
    assert stats.total_errors == 1


def test_critical_system_event_is_logged_on_receipt(bus, repo, stats, caplog) -> None:
    listener = EventListener(bus, MessageProcessor(repo, stats), group=GROUP)
    ev = SystemEvent(
        source="payments",
        service_id="payments",
        system_event_type="ALERT",
        severity="CRITICAL",
        message="gateway unreachable",
    )
    _send(bus, ev)

    with caplog.at_level(logging.WARNING, logger="src.consumer.listener"):
        _poll_all(listener, bus, "system-events")

    assert any("CRITICAL SYSTEM EVENT" in r.getMessage() for r in caplog.records)
    assert repo.count_projections(SystemEventRow) == 1


def test_low_severity_system_event_is_not_flagged(bus, repo, stats, caplog) -> None:
    listener = EventListener(bus, MessageProcessor(repo, stats), group=GROUP)
    _send(bus, SystemEvent(service_id="svc", system_event_type="INFO", severity="LOW", message="ok"))

    with caplog.at_level(logging.WARNING, logger="src.consumer.listener"):
        _poll_all(listener, bus, "system-events")

    assert not any("CRITICAL SYSTEM EVENT" in r.getMessage() for r in caplog.records)


def test_processor_raises_processing_error_with_message_id(repo, stats) -> None:
    repo.fail_with = RuntimeError("boom")
    processor = MessageProcessor(repo, stats)
    ev = UserEvent(source="web", user_id="u", action="LOGIN")
    with pytest.raises(ProcessingError) as exc:
        processor.process(ev, topic="user-events")
    assert exc.value.message_id == ev.id
    assert repo.count_by(AuditFilter(status=AuditStatus.FAILED)) == 1


def test_ack_policy_by_name() -> None:
    assert ack_policy_by_name("acknowledge_on_success") is acknowledge_on_success
    with pytest.raises(ValueError):
        ack_policy_by_name("never")


def _wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _deliver_without_ack(bus: InMemoryMessageBus, n: int) -> None:
    for i in range(n):
        bus.send("system-events", None, codec.encode(
            SystemEvent(source="ops", service_id="ops", system_event_type="INFO", severity="INFO", message=f"m{i}")
        )).result(timeout=5.0)
    delivered = bus.poll(topic="system-events", group=GROUP, consumer="crashed", partition=0, count=n)
    assert len(delivered) == n


def test_worker_recovers_pending_backlog_larger_than_one_read(bus, repo, stats) -> None:
    _deliver_without_ack(bus, 15)
    assert bus.pending_count(group=GROUP, topic="system-events") == 15

    listener = EventListener(bus, MessageProcessor(repo, stats), group=GROUP)
    worker = ListenerWorker(listener, topic="system-events", consumer="c1", partitions=3, idle_sleep_seconds=0.01)
    worker.start()
    try:
        assert _wait_until(lambda: bus.pending_count(group=GROUP, topic="system-events") == 0)
    finally:
        worker.stop(timeout=5.0)

    assert bus.acked_count(group=GROUP, topic="system-events") == 15
    assert repo.count_projections(SystemEventRow) == 15


def test_worker_rescans_pending_after_a_batch_fails_midway(repo, stats) -> None:
    class FlakyAckBus(InMemoryMessageBus):
        failed_once = False

        def ack(self, *, group, message):
            if message.offset == "3" and not self.failed_once:
                self.failed_once = True
                raise ConnectionError("ack lost")
            super().ack(group=group, message=message)

    bus = FlakyAckBus(partitions=3)
    try:
        for i in range(15):
            _send(bus, UserEvent(source="web", user_id="user123", action="CLICK", session_id=str(i)))
        listener = EventListener(bus, MessageProcessor(repo, stats), group=GROUP)
        worker = ListenerWorker(
            listener,
            topic="user-events",
            consumer="c1",
            partitions=3,
            idle_sleep_seconds=0.01,
            error_sleep_seconds=0.01,
        )
        worker.start()
        try:
            assert _wait_until(lambda: bus.acked_count(group=GROUP, topic="user-events") == 15)
        finally:
            worker.stop(timeout=5.0)

        assert bus.failed_once is True
        assert bus.pending_count(group=GROUP, topic="user-events") == 0
    finally:
        bus.close()
