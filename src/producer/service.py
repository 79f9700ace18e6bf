"""Producer service - publishes events and exposes producer-side stats.

This service:
1. Builds the dispatcher over Redis Streams
2. Records every publish outcome to the `message_log` audit table
3. Announces itself with a SERVICE_START system event
4. Serves /health and /stats over HTTP
"""

from __future__ import annotations

import logging
import os
import socket

from src.api.main import create_app, serve
from src.contracts.topics import ALL_TOPICS
from src.core.audit import AuditStore, InMemoryAuditStore, PostgresAuditStore
from src.core.logging_setup import configure_logging
from src.core.message_bus import RedisStreamBus
from src.core.models import Environment, Severity, SystemEvent, SystemEventType
from src.core.reporting import restore_from_store
from src.core.settings import Settings, load_settings
from src.core.stats import StatsAggregator

from .dispatcher import Dispatcher

logger = logging.getLogger(__name__)

SERVICE_ID = "producer-service"


def create_audit_store(s: Settings) -> AuditStore:
    """Create the appropriate audit store based on configuration."""
    if s.postgres_dsn:
        logger.info("Using PostgreSQL audit store")
        store = PostgresAuditStore(s.postgres_dsn, table="message_log")
        store.ensure_schema()
        return store
    logger.info("Using in-memory audit store (dev mode)")
    return InMemoryAuditStore()


def build_dispatcher(s: Settings) -> tuple[Dispatcher, StatsAggregator, AuditStore, RedisStreamBus]:
    bus = RedisStreamBus(
        s.redis_url,
        partitions=s.partitions,
        socket_timeout_seconds=s.publish_timeout_seconds,
        completion_workers=s.completion_workers,
        max_stream_length=s.max_stream_length,
    )
    store = create_audit_store(s)
    stats = StatsAggregator("producer")
    restore_from_store(stats, store)
    dispatcher = Dispatcher(bus, store, stats, strict_validation=s.strict_validation)
    return dispatcher, stats, store, bus


def main() -> None:
    s = load_settings(os.getenv("EVENTFLOW_SETTINGS", "config/settings.yaml"))
    configure_logging(s.log_level)

    logger.info("Starting producer service...")
    logger.info(f"Redis URL: {s.redis_url}")

    dispatcher, stats, store, bus = build_dispatcher(s)

    env = s.env.upper() if s.env.upper() in Environment.__members__ else None
    dispatcher.publish_system_event(
        SystemEvent(
            source=SERVICE_ID,
            service_id=SERVICE_ID,
            system_event_type=SystemEventType.SERVICE_START,
            severity=Severity.INFO,
            message="producer service started",
            environment=env,
            host_id=socket.gethostname(),
            process_id=str(os.getpid()),
        )
    )

    try:
        serve(create_app(stats, store, topics=ALL_TOPICS, title="Eventflow Producer"), host=s.api_host, port=s.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down producer service...")
    finally:
        dispatcher.flush(timeout=s.publish_timeout_seconds)
        bus.close()


if __name__ == "__main__":
    main()
