"""Consume path: receive -> process -> persist -> acknowledge.

Per message: RECEIVED -> PROCESSING -> {PERSISTED, FAILED} -> ACKNOWLEDGED.
There is no retry state. Whether a FAILED message is acknowledged is decided
by the ack policy; the default acknowledges it so a poison message is not
redelivered forever. That drops deterministic failures without a replay path
other than the FAILED audit record.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from src.contracts import codec
from src.core.errors import ProcessingError, SerializationError
from src.core.message_bus import MessageBus, ReceivedMessage
from src.core.models import SystemEvent

from .processor import MessageProcessor

logger = logging.getLogger(__name__)


class MessageState(str, Enum):
    RECEIVED = "RECEIVED"
    PROCESSING = "PROCESSING"
    PERSISTED = "PERSISTED"
    FAILED = "FAILED"
    ACKNOWLEDGED = "ACKNOWLEDGED"


@dataclass
class ProcessingOutcome:
    message: ReceivedMessage
    event_id: Optional[str] = None
    states: list[MessageState] = field(default_factory=list)
    error: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def state(self) -> MessageState:
        return self.states[-1]

    @property
    def persisted(self) -> bool:
        return MessageState.PERSISTED in self.states

    @property
    def acknowledged(self) -> bool:
        return self.state == MessageState.ACKNOWLEDGED


# Decides whether a message that ended in FAILED is acknowledged.
AckPolicy = Callable[[ReceivedMessage, Exception], bool]


def acknowledge_always(message: ReceivedMessage, error: Exception) -> bool:
    """At-most-once on failure: acknowledge so the message is never redelivered."""
    return True


def acknowledge_on_success(message: ReceivedMessage, error: Exception) -> bool:
    """Leave failed messages pending; the log redelivers them."""
    return False


ACK_POLICIES: dict[str, AckPolicy] = {
    "acknowledge_always": acknowledge_always,
    "acknowledge_on_success": acknowledge_on_success,
}


def ack_policy_by_name(name: str) -> AckPolicy:
    try:
        return ACK_POLICIES[name]
    except KeyError:
        raise ValueError(f"unknown ack policy: {name} (expected one of {sorted(ACK_POLICIES)})") from None


class EventListener:
    """Drives one message through the state machine and acknowledges it."""

    def __init__(
        self,
        bus: MessageBus,
        processor: MessageProcessor,
        *,
        group: str,
        ack_policy: AckPolicy = acknowledge_always,
    ) -> None:
        self._bus = bus
        self._processor = processor
        self._group = group
        self._ack_policy = ack_policy

    @property
    def group(self) -> str:
        return self._group

    def on_message(self, message: ReceivedMessage) -> ProcessingOutcome:
        start = time.monotonic()
        outcome = ProcessingOutcome(message=message, states=[MessageState.RECEIVED])
        failure: Optional[Exception] = None

        try:
            event = codec.decode(message.payload)
        except SerializationError as e:
            self._processor.record_undecodable(message, e)
            outcome.states.append(MessageState.FAILED)
            failure = e
        else:
            outcome.event_id = event.id
            logger.info(
                f"Received {event.event_type}: {event.describe()} "
                f"from partition {message.partition} at offset {message.offset}"
            )
            if isinstance(event, SystemEvent) and event.is_critical():
                # Alerting hook; does not change persistence or acknowledgment.
                logger.warning(f"CRITICAL SYSTEM EVENT: {event.describe()}")

            outcome.states.append(MessageState.PROCESSING)
            try:
                self._processor.process(
                    event,
                    topic=message.topic,
                    partition=message.partition,
                    offset=message.offset,
                    key=message.key,
                    payload=message.payload,
                )
                outcome.states.append(MessageState.PERSISTED)
            except ProcessingError as e:
                outcome.states.append(MessageState.FAILED)
                failure = e

        if failure is None or self._ack_policy(message, failure):
            self._bus.ack(group=self._group, message=message)
            outcome.states.append(MessageState.ACKNOWLEDGED)

        outcome.error = str(failure) if failure is not None else None
        outcome.duration_ms = (time.monotonic() - start) * 1000.0
        if failure is None:
            logger.info(f"Successfully processed {outcome.event_id} in {outcome.duration_ms:.1f}ms")
        else:
            logger.error(
                f"Failed to process message from {message.topic} partition {message.partition} "
                f"at offset {message.offset}: {failure} (acknowledged={outcome.acknowledged})"
            )
        return outcome

    def poll_once(
        self,
        *,
        topic: str,
        consumer: str,
        partition: int,
        pending: bool = False,
        after: Optional[str] = None,
    ) -> list[ProcessingOutcome]:
        batch = self._bus.poll(
            topic=topic, group=self._group, consumer=consumer, partition=partition, pending=pending, after=after
        )
        return [self.on_message(msg) for msg in batch]


class ListenerWorker:
    """One polling thread per partition of a topic."""

    def __init__(
        self,
        listener: EventListener,
        *,
        topic: str,
        consumer: str,
        partitions: int,
        idle_sleep_seconds: float = 0.05,
        error_sleep_seconds: float = 1.0,
    ) -> None:
        self._listener = listener
        self._topic = topic
        self._consumer = consumer
        self._partitions = partitions
        self._idle_sleep = idle_sleep_seconds
        self._error_sleep = error_sleep_seconds
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._processed = 0
        self._processed_lock = threading.Lock()

    @property
    def processed(self) -> int:
        return self._processed

    def _run_partition(self, partition: int, stop_after_messages: Optional[int]) -> None:
        consumer = f"{self._consumer}-p{partition}"
        # Recover this consumer's own unacknowledged deliveries first, one full
        # pass over the pending list, then switch to new messages.
        pending = True
        after: Optional[str] = None
        while not self._stop.is_set():
            try:
                outcomes = self._listener.poll_once(
                    topic=self._topic, consumer=consumer, partition=partition, pending=pending, after=after
                )
            except Exception:
                logger.exception(f"Polling {self._topic} partition {partition} failed")
                # The rest of the failed batch is delivered but unacknowledged; rescan it.
                pending, after = True, None
                self._stop.wait(self._error_sleep)
                continue
            if pending:
                if outcomes:
                    after = outcomes[-1].message.offset
                else:
                    pending, after = False, None
                    logger.debug(f"Pending entries on {self._topic} partition {partition} recovered")
            if not outcomes:
                self._stop.wait(self._idle_sleep)
                continue
            with self._processed_lock:
                self._processed += len(outcomes)
                if stop_after_messages is not None and self._processed >= stop_after_messages:
                    self._stop.set()

    def start(self, *, stop_after_messages: Optional[int] = None) -> None:
        for partition in range(self._partitions):
            t = threading.Thread(
                target=self._run_partition,
                args=(partition, stop_after_messages),
                daemon=True,
                name=f"listener-{self._topic}-p{partition}",
            )
            t.start()
            self._threads.append(t)
        logger.info(f"Listening on {self._topic} ({self._partitions} partitions, group {self._listener.group})")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        self.join(timeout)

    def join(self, timeout: Optional[float] = None) -> None:
        for t in self._threads:
            t.join(timeout)


def run_worker(
    listener: EventListener,
    *,
    topic: str,
    consumer: str,
    partitions: int,
    stop_after_messages: Optional[int] = None,
) -> ListenerWorker:
    """Start a worker for `topic` and block until it stops."""
    worker = ListenerWorker(listener, topic=topic, consumer=consumer, partitions=partitions)
    worker.start(stop_after_messages=stop_after_messages)
    worker.join()
    return worker
