"""Persistence step of the consume path.

For one received event: the SUCCESS audit record and the typed projection are
written in one unit of work. After commit the processing time is backfilled and
the consumer-side stats are updated. On failure the unit of work is abandoned,
a single FAILED audit record is written instead and ProcessingError is raised.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from src.contracts import codec
from src.core.audit import AuditRecord, AuditStatus
from src.core.errors import ProcessingError
from src.core.message_bus import ReceivedMessage
from src.core.models import BaseEvent
from src.core.stats import StatsAggregator

from .projections import ConsumerRepository, project

logger = logging.getLogger(__name__)

UNKNOWN_EVENT_TYPE = "UNKNOWN"


class MessageProcessor:
    def __init__(self, repository: ConsumerRepository, stats: StatsAggregator) -> None:
        self._repository = repository
        self._stats = stats

    def process(
        self,
        event: BaseEvent,
        *,
        topic: str,
        partition: Optional[int] = None,
        offset: Optional[str] = None,
        key: Optional[str] = None,
        payload: Optional[str] = None,
    ) -> AuditRecord:
        """Persist one event. Returns the SUCCESS audit record."""
        start = time.monotonic()
        if payload is None:
            payload = codec.encode(event)

        try:
            record = AuditRecord(
                message_id=event.id,
                topic=topic,
                status=AuditStatus.SUCCESS,
                event_type=event.event_type,
                key=key,
                partition=partition,
                offset=offset,
                payload=payload,
                message_size=len(payload.encode("utf-8")),
            )
            with self._repository.unit_of_work() as uow:
                uow.add_audit(record)
                uow.add_projection(project(event))
        except Exception as e:
            logger.error(f"Failed to process {event.event_type} {event.id}: {e}")
            self._record_failure(
                message_id=event.id,
                topic=topic,
                partition=partition,
                offset=offset,
                key=key,
                event_type=event.event_type,
                payload=payload,
                error=e,
            )
            raise ProcessingError(f"Failed to process {event.event_type} {event.id}: {e}", message_id=event.id) from e

        elapsed = (time.monotonic() - start) * 1000.0
        try:
            self._repository.update_duration(record.record_id, elapsed)
            record.processing_time_ms = elapsed
        except Exception as e:
            # The event is persisted; a missing duration is not worth a FAILED record.
            logger.warning(f"Could not backfill processing time for {event.id}: {e}")

        self._stats.increment_processed(topic)
        self._stats.update_latency(elapsed)
        logger.debug(f"{event.event_type} processed and stored: {event.id}")
        return record

    def record_undecodable(self, message: ReceivedMessage, error: Exception) -> None:
        """A payload that could not be turned into an event is a failed attempt too."""
        logger.error(
            f"Undecodable message on {message.topic} partition {message.partition} "
            f"offset {message.offset}: {error}"
        )
        self._record_failure(
            message_id=f"{message.topic}:{message.partition}:{message.offset}",
            topic=message.topic,
            partition=message.partition,
            offset=message.offset,
            key=message.key,
            event_type=UNKNOWN_EVENT_TYPE,
            payload=message.payload,
            error=error,
        )

    def _record_failure(
        self,
        *,
        message_id: str,
        topic: str,
        partition: Optional[int],
        offset: Optional[str],
        key: Optional[str],
        event_type: str,
        payload: Optional[str],
        error: BaseException,
    ) -> None:
        try:
            self._repository.insert(
                AuditRecord(
                    message_id=message_id,
                    topic=topic,
                    status=AuditStatus.FAILED,
                    event_type=event_type,
                    key=key,
                    partition=partition,
                    offset=offset,
                    payload=payload,
                    error_message=str(error) or type(error).__name__,
                )
            )
        except Exception:
            logger.exception(f"Failed to create failed processing record for {message_id}")
        self._stats.increment_error(type(error).__name__)
