from __future__ import annotations

import threading
from decimal import Decimal

import pytest

from src.core.audit import AuditFilter, AuditStatus, InMemoryAuditStore
from src.core.errors import PublishError, SerializationError, ValidationError
from src.core.message_bus import InMemoryMessageBus
from src.core.models import BusinessEvent, SystemEvent, UserEvent
from src.core.stats import StatsAggregator
from src.producer.dispatcher import Dispatcher


def _business(order_id: str = "order123", amount: str = "99.99") -> BusinessEvent:
    return BusinessEvent(
        source="checkout",
        order_id=order_id,
        customer_id="customer456",
        transaction_type="ORDER_CREATED",
        amount=Decimal(amount),
    )


@pytest.fixture
def bus():
    b = InMemoryMessageBus(partitions=3)
    yield b
    b.close()


@pytest.fixture
def store() -> InMemoryAuditStore:
    return InMemoryAuditStore()


@pytest.fixture
def stats() -> StatsAggregator:
    return StatsAggregator("producer")


def test_publish_returns_id_and_records_success(bus, store, stats) -> None:
    d = Dispatcher(bus, store, stats)
    ev = UserEvent(source="web", user_id="user123", action="LOGIN")

    assert d.publish_user_event(ev) == ev.id
    assert d.flush(timeout=5.0) is True

    records = store.find_by_message_id(ev.id)
    assert len(records) == 1
    r = records[0]
    assert r.status == AuditStatus.SUCCESS
    assert r.topic == "user-events"
    assert r.key == "user123"
    assert r.offset == "0"
    assert r.message_size == len(r.payload.encode("utf-8"))
    assert stats.total_processed == 1
    assert stats.topic_count("user-events") == 1
    assert stats.total_errors == 0


def test_same_key_lands_on_one_partition_in_order(bus, store, stats) -> None:
    d = Dispatcher(bus, store, stats)
    ids = [d.publish(_business(amount=str(i + 1))) for i in range(5)]
    d.flush(timeout=5.0)

    partitions = {r.partition for r in store.all()}
    assert len(partitions) == 1
    (p,) = partitions
    assert len(bus.messages("business-events", p)) == 5
    assert sorted(int(r.offset) for r in store.all()) == [0, 1, 2, 3, 4]
    assert {r.message_id for r in store.all()} == set(ids)


def test_invalid_event_is_rejected_before_send(bus, store, stats) -> None:
    d = Dispatcher(bus, store, stats)
    with pytest.raises(ValidationError):
        d.publish(_business(amount="0"))
    d.flush(timeout=5.0)
    assert store.all() == []
    assert stats.total_errors == 0
    assert all(not bus.messages("business-events", p) for p in range(3))


def test_strict_validation_checks_formats(bus, store, stats) -> None:
    d = Dispatcher(bus, store, stats, strict_validation=True)
    with pytest.raises(ValidationError, match="action"):
        d.publish(UserEvent(source="web", user_id="u1", action="DANCE"))
    assert d.publish(UserEvent(source="web", user_id="u1", action="LOGIN"))


def test_async_send_failure_is_recorded_not_raised(store, stats) -> None:
    def fail_business(topic, key, payload):
        return TimeoutError("broker timeout") if topic == "business-events" else None

    bus = InMemoryMessageBus(failure_injector=fail_business)
    try:
        d = Dispatcher(bus, store, stats)
        ev = _business()
        assert d.publish_business_event(ev) == ev.id
        d.flush(timeout=5.0)
    finally:
        bus.close()

    (record,) = store.find_by_message_id(ev.id)
    assert record.status == AuditStatus.FAILED
    assert "broker timeout" in record.error_message
    assert record.partition is None and record.offset is None
    assert stats.total_processed == 0
    assert stats.total_errors == 1
    assert stats.snapshot().error_type_counts == {"TimeoutError": 1}


def test_synchronous_submit_failure_raises_publish_error(store, stats) -> None:
    class RefusingBus(InMemoryMessageBus):
        def send(self, topic, key, payload):
            raise ConnectionError("connection refused")

    bus = RefusingBus()
    try:
        d = Dispatcher(bus, store, stats)
        ev = SystemEvent(service_id="svc", system_event_type="INFO", severity="INFO", message="hello")
        with pytest.raises(PublishError):
            d.publish_system_event(ev)
    finally:
        bus.close()

    assert store.count_by(AuditFilter(status=AuditStatus.FAILED)) == 1
    assert stats.total_errors == 1


def test_batch_partial_success(bus, store, stats) -> None:
    d = Dispatcher(bus, store, stats)
    good = UserEvent(source="web", user_id="user123", action="CLICK")
    bad = BusinessEvent(source="checkout", order_id="o1", customer_id="c1", transaction_type="ORDER_CREATED")

    ids = d.publish_batch([good, bad])
    d.flush(timeout=5.0)

    assert ids == [good.id]
    assert stats.total_errors == 1
    assert stats.total_processed == 1
    assert store.count_by(AuditFilter()) == 1


def test_batch_does_not_double_count_submit_failures(store, stats) -> None:
    class RefusingBus(InMemoryMessageBus):
        def send(self, topic, key, payload):
            raise ConnectionError("down")

    bus = RefusingBus()
    try:
        d = Dispatcher(bus, store, stats)
        ids = d.publish_batch([UserEvent(source="web", user_id="u", action="LOGIN")])
    finally:
        bus.close()
    assert ids == []
    assert stats.total_errors == 1


def test_batch_skips_unknown_objects(bus, store, stats) -> None:
    d = Dispatcher(bus, store, stats)
    ids = d.publish_batch([object(), UserEvent(source="web", user_id="u", action="LOGIN")])
    assert len(ids) == 1
    assert stats.snapshot().error_type_counts.get("UnknownEventType") == 1


def test_audit_store_outage_does_not_break_publish(bus, stats) -> None:
    class BrokenStore(InMemoryAuditStore):
        def insert(self, record):
            raise RuntimeError("db down")

    d = Dispatcher(bus, BrokenStore(), stats)
    d.publish(UserEvent(source="web", user_id="u", action="LOGIN"))
    assert d.flush(timeout=5.0) is True
    assert stats.total_processed == 1


def test_flush_waits_for_slow_completions(store, stats) -> None:
    gate = threading.Event()

    def hold(topic, key, payload):
        gate.wait(5.0)
        return None

    bus = InMemoryMessageBus(failure_injector=hold)
    try:
        d = Dispatcher(bus, store, stats)
        d.publish(UserEvent(source="web", user_id="u", action="LOGIN"))
        assert d.flush(timeout=0.05) is False
        assert d.in_flight == 1
        gate.set()
        assert d.flush(timeout=5.0) is True
        assert d.in_flight == 0
    finally:
        bus.close()
    assert stats.total_processed == 1


def test_serialization_failure_is_audited_counted_and_raised(bus, store, stats) -> None:
    d = Dispatcher(bus, store, stats)
    ev = UserEvent(source="web", user_id="u1", action="LOGIN", metadata={"x": object()})

    with pytest.raises(SerializationError):
        d.publish(ev)
    d.flush(timeout=5.0)

    (record,) = store.find_by_message_id(ev.id)
    assert record.status == AuditStatus.FAILED
    assert record.payload is None
    assert record.error_message
    assert stats.total_errors == 1
    assert stats.snapshot().error_type_counts == {"SerializationError": 1}
    assert all(not bus.messages("user-events", p) for p in range(3))


def test_batch_does_not_double_count_serialization_failures(bus, store, stats) -> None:
    d = Dispatcher(bus, store, stats)
    good = UserEvent(source="web", user_id="u1", action="LOGIN")
    unencodable = UserEvent(source="web", user_id="u2", action="LOGIN", metadata={"x": object()})

    ids = d.publish_batch([good, unencodable])
    d.flush(timeout=5.0)

    assert ids == [good.id]
    assert stats.total_errors == 1
    assert store.count_by(AuditFilter(status=AuditStatus.FAILED)) == 1
