"""Publish path: validate -> serialize -> send -> record the outcome.

`publish` returns the event id as soon as the send is submitted. The outcome
(partition/offset or the transport error) arrives later on the bus's completion
thread, where it is written to the audit store and the stats aggregator. Callers
never see asynchronous failures; they are visible only through those two.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future
from typing import Iterable, Optional

from src.contracts import codec
from src.core.audit import AuditRecord, AuditStatus, AuditStore
from src.core.errors import PublishError, SerializationError, ValidationError
from src.core.message_bus import MessageBus, SendResult
from src.core.models import BaseEvent, BusinessEvent, EventType, SystemEvent, UserEvent
from src.core.stats import StatsAggregator

logger = logging.getLogger(__name__)


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000.0


class Dispatcher:
    """Producer-side publisher."""

    def __init__(
        self,
        bus: MessageBus,
        audit_store: AuditStore,
        stats: StatsAggregator,
        *,
        strict_validation: bool = False,
    ) -> None:
        self._bus = bus
        self._audit = audit_store
        self._stats = stats
        self._strict = strict_validation
        self._in_flight = 0
        self._in_flight_cond = threading.Condition()

    # ------------------------------------------------------------------
    # Typed entry points
    # ------------------------------------------------------------------

    def publish_user_event(self, event: UserEvent) -> str:
        return self.publish(event)

    def publish_business_event(self, event: BusinessEvent) -> str:
        return self.publish(event)

    def publish_system_event(self, event: SystemEvent) -> str:
        return self.publish(event)

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    def validate(self, event: BaseEvent) -> None:
        if not event.is_valid():
            raise ValidationError(f"Invalid event: {event.describe()}")
        if self._strict:
            errors = event.validation_errors()
            if errors:
                raise ValidationError(f"Invalid event {event.id}: {'; '.join(errors)}")

    def publish(self, event: BaseEvent) -> str:
        """Submit one event and return its id without waiting for delivery.

        Raises ValidationError before anything is sent or recorded. Raises
        SerializationError if the valid event cannot be encoded, and PublishError
        if the bus refuses the submission outright; both attempts are audited and
        counted first.
        """
        self.validate(event)

        topic = event.topic
        key = event.routing_key()
        start = time.monotonic()
        try:
            payload = codec.encode(event)
        except SerializationError as e:
            self._record_failure(event, topic, key, None, _elapsed_ms(start), e)
            logger.error(f"Failed to serialize message: {event.id} for topic {topic}: {e}")
            raise

        try:
            future = self._bus.send(topic, key, payload)
        except Exception as e:
            self._record_failure(event, topic, key, payload, _elapsed_ms(start), e)
            logger.error(f"Exception sending message: {event.id} to topic {topic}: {e}")
            raise PublishError(f"Failed to send message {event.id}: {e}") from e

        self._track(future, event, topic, key, payload, start)
        return event.id

    def publish_batch(self, events: Iterable[BaseEvent]) -> list[str]:
        """Publish each event independently; partial success is the normal outcome."""
        handlers = {
            EventType.USER_EVENT.value: self.publish_user_event,
            EventType.BUSINESS_EVENT.value: self.publish_business_event,
            EventType.SYSTEM_EVENT.value: self.publish_system_event,
        }
        message_ids: list[str] = []
        for event in events:
            handler = handlers.get(getattr(event, "event_type", None))
            if handler is None:
                logger.warning(f"Unknown event type in batch: {type(event).__name__}")
                self._stats.increment_error("UnknownEventType")
                continue
            try:
                message_ids.append(handler(event))
            except (PublishError, SerializationError):
                # Already audited and counted by publish().
                logger.error(f"Failed to send event in batch: {event.id}")
            except Exception as e:
                logger.error(f"Failed to send event in batch: {event.id}: {e}")
                self._stats.increment_error(type(e).__name__)
        return message_ids

    # ------------------------------------------------------------------
    # Completion continuation
    # ------------------------------------------------------------------

    def _track(
        self,
        future: "Future[SendResult]",
        event: BaseEvent,
        topic: str,
        key: Optional[str],
        payload: str,
        start: float,
    ) -> None:
        with self._in_flight_cond:
            self._in_flight += 1

        def on_complete(f: "Future[SendResult]") -> None:
            try:
                self._on_send_complete(f, event, topic, key, payload, start)
            finally:
                with self._in_flight_cond:
                    self._in_flight -= 1
                    self._in_flight_cond.notify_all()

        future.add_done_callback(on_complete)

    def _on_send_complete(
        self,
        future: "Future[SendResult]",
        event: BaseEvent,
        topic: str,
        key: Optional[str],
        payload: str,
        start: float,
    ) -> None:
        elapsed = _elapsed_ms(start)
        error = future.exception()
        if error is None:
            result = future.result()
            self._write_audit(
                AuditRecord(
                    message_id=event.id,
                    topic=topic,
                    status=AuditStatus.SUCCESS,
                    event_type=event.event_type,
                    key=key,
                    partition=result.partition,
                    offset=result.offset,
                    payload=payload,
                    message_size=result.size,
                    processing_time_ms=elapsed,
                )
            )
            self._stats.increment_processed(topic)
            self._stats.update_latency(elapsed)
            logger.info(
                f"Message sent successfully: {event.id} to topic {topic} "
                f"(partition: {result.partition}, offset: {result.offset})"
            )
        else:
            self._record_failure(event, topic, key, payload, elapsed, error)
            logger.error(f"Failed to send message: {event.id} to topic {topic}: {error}")

    def _record_failure(
        self,
        event: BaseEvent,
        topic: str,
        key: Optional[str],
        payload: Optional[str],
        elapsed: float,
        error: BaseException,
    ) -> None:
        self._write_audit(
            AuditRecord(
                message_id=event.id,
                topic=topic,
                status=AuditStatus.FAILED,
                event_type=event.event_type,
                key=key,
                payload=payload,
                processing_time_ms=elapsed,
                error_message=str(error) or type(error).__name__,
            )
        )
        self._stats.increment_error(type(error).__name__)

    def _write_audit(self, record: AuditRecord) -> None:
        # The audit write must not break the continuation or the caller.
        try:
            self._audit.insert(record)
        except Exception:
            logger.exception(f"Failed to log message sending attempt: {record.message_id}")

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every submitted publish has run its continuation."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._in_flight_cond:
            while self._in_flight > 0:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._in_flight_cond.wait(remaining)
        return True

    @property
    def in_flight(self) -> int:
        return self._in_flight
