"""Consumer service - subscribes to all event topics and persists them.

This service:
1. Runs one listener thread per partition of user-, business- and system-events
2. Writes an audit record plus a typed projection per processed event
3. Acknowledges according to the configured ack policy
4. Serves /health and /stats over HTTP

Consumer Group: from settings (default `eventflow`)
"""

from __future__ import annotations

import logging
import os

from src.api.main import create_app, serve
from src.contracts.topics import ALL_TOPICS
from src.core.logging_setup import configure_logging
from src.core.message_bus import RedisStreamBus
from src.core.settings import Settings, load_settings
from src.core.stats import StatsAggregator

from .listener import EventListener, ListenerWorker, ack_policy_by_name
from .processor import MessageProcessor
from .projections import ConsumerRepository, InMemoryConsumerRepository, PostgresConsumerRepository

logger = logging.getLogger(__name__)


def create_repository(s: Settings) -> ConsumerRepository:
    """Create the appropriate repository based on configuration."""
    if s.postgres_dsn:
        logger.info("Using PostgreSQL repository")
        repo = PostgresConsumerRepository(s.postgres_dsn)
        repo.ensure_schema()
        return repo
    logger.info("Using in-memory repository (dev mode)")
    return InMemoryConsumerRepository()


def main() -> None:
    s = load_settings(os.getenv("EVENTFLOW_SETTINGS", "config/settings.yaml"))
    configure_logging(s.log_level)

    logger.info("Starting consumer service...")
    logger.info(f"Redis URL: {s.redis_url}")

    bus = RedisStreamBus(s.redis_url, partitions=s.partitions, block_ms=s.block_ms, read_count=s.read_count)
    repository = create_repository(s)
    stats = StatsAggregator("consumer")
    listener = EventListener(
        bus,
        MessageProcessor(repository, stats),
        group=s.consumer_group,
        ack_policy=ack_policy_by_name(s.ack_policy),
    )

    consumer = os.getenv("HOSTNAME", "consumer-1")
    workers = [
        ListenerWorker(listener, topic=topic, consumer=consumer, partitions=s.partitions)
        for topic in ALL_TOPICS
    ]
    logger.info(f"Subscribing to topics: {list(ALL_TOPICS)}")
    for w in workers:
        w.start()

    try:
        serve(create_app(stats, repository, topics=ALL_TOPICS, title="Eventflow Consumer"), host=s.api_host, port=s.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down consumer service...")
    finally:
        for w in workers:
            w.stop(timeout=5.0)
        bus.close()


if __name__ == "__main__":
    main()
