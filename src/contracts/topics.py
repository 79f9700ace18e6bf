from __future__ import annotations

import zlib

# Topic names (one per event variant).

USER_EVENTS = "user-events"
BUSINESS_EVENTS = "business-events"
SYSTEM_EVENTS = "system-events"

ALL_TOPICS = (USER_EVENTS, BUSINESS_EVENTS, SYSTEM_EVENTS)

DEFAULT_PARTITIONS = 3


def partition_for(key: str | None, partitions: int) -> int:
    """Stable key -> partition mapping. Same key always lands on the same partition."""
    if partitions <= 0:
        raise ValueError("partitions must be > 0")
    if not key:
        return 0
    return zlib.crc32(key.encode("utf-8")) % partitions


def partition_stream(topic: str, partition: int) -> str:
    return f"{topic}.p{partition}"
