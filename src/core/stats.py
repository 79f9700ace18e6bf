"""Concurrent statistics aggregator.

One instance lives on each side of the pipeline (producer, consumer). Counters
are updated from dispatch-completion and listener threads at the same time, so
each counter owns its own lock and the keyed maps only lock when a new key is
first seen. Derived rates are computed when a snapshot is taken.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class AtomicCounter:
    """Integer counter safe for concurrent increments."""

    def __init__(self, value: int = 0) -> None:
        self._value = value
        self._lock = threading.Lock()

    def add(self, n: int = 1) -> int:
        with self._lock:
            self._value += n
            return self._value

    def set(self, value: int) -> None:
        with self._lock:
            self._value = value

    @property
    def value(self) -> int:
        return self._value


class LatencyTracker:
    """Sum, min and max of latency samples in milliseconds."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._total_ms = 0.0
        self._min_ms: Optional[float] = None
        self._max_ms: Optional[float] = None

    def record(self, ms: float) -> None:
        with self._lock:
            self._total_ms += ms
            if self._min_ms is None or ms < self._min_ms:
                self._min_ms = ms
            if self._max_ms is None or ms > self._max_ms:
                self._max_ms = ms

    def restore(self, total_ms: float) -> None:
        with self._lock:
            self._total_ms = total_ms

    def read(self) -> tuple[float, float, float]:
        with self._lock:
            return self._total_ms, self._min_ms or 0.0, self._max_ms or 0.0


class KeyedCounters:
    """Map of name -> AtomicCounter. Structural changes lock, increments don't block other keys."""

    def __init__(self) -> None:
        self._counters: Dict[str, AtomicCounter] = {}
        self._lock = threading.Lock()

    def increment(self, key: str, n: int = 1) -> int:
        counter = self._counters.get(key)
        if counter is None:
            with self._lock:
                counter = self._counters.get(key)
                if counter is None:
                    counter = AtomicCounter()
                    self._counters[key] = counter
        return counter.add(n)

    def get(self, key: str) -> int:
        counter = self._counters.get(key)
        return counter.value if counter is not None else 0

    def as_dict(self) -> Dict[str, int]:
        with self._lock:
            items = list(self._counters.items())
        return {k: c.value for k, c in items}


@dataclass(frozen=True)
class StatsSnapshot:
    total_processed: int
    total_errors: int
    success_rate: float
    error_rate: float
    average_latency_ms: float
    min_latency_ms: float
    max_latency_ms: float
    messages_per_second: float
    topic_counts: Dict[str, int] = field(default_factory=dict)
    error_type_counts: Dict[str, int] = field(default_factory=dict)
    uptime_seconds: int = 0
    started_at: Optional[datetime] = None
    taken_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "total_errors": self.total_errors,
            "success_rate": round(self.success_rate, 2),
            "error_rate": round(self.error_rate, 2),
            "average_latency_ms": round(self.average_latency_ms, 2),
            "min_latency_ms": round(self.min_latency_ms, 2),
            "max_latency_ms": round(self.max_latency_ms, 2),
            "messages_per_second": round(self.messages_per_second, 4),
            "topic_counts": dict(self.topic_counts),
            "error_type_counts": dict(self.error_type_counts),
            "uptime_seconds": self.uptime_seconds,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "taken_at": self.taken_at.isoformat() if self.taken_at else None,
        }


def success_rate(total: int, errors: int) -> float:
    if total == 0:
        return 100.0
    return (total - errors) / total * 100.0


class StatsAggregator:
    """Counters for one side of the pipeline."""

    def __init__(self, name: str = "stats") -> None:
        self.name = name
        self._init_state()

    def _init_state(self) -> None:
        self._processed = AtomicCounter()
        self._errors = AtomicCounter()
        self._topics = KeyedCounters()
        self._error_types = KeyedCounters()
        self._latency = LatencyTracker()
        self._started_monotonic = time.monotonic()
        self._started_at = datetime.now(timezone.utc)

    def increment_processed(self, topic: str) -> None:
        self._topics.increment(topic)
        self._processed.add()
        logger.debug(f"[{self.name}] processed +1 topic={topic}")

    def increment_error(self, error_type: Optional[str] = None) -> None:
        self._errors.add()
        if error_type:
            self._error_types.increment(error_type)
        logger.debug(f"[{self.name}] error +1 type={error_type}")

    def update_latency(self, ms: float) -> None:
        self._latency.record(float(ms))

    def topic_count(self, topic: str) -> int:
        return self._topics.get(topic)

    @property
    def total_processed(self) -> int:
        return self._processed.value

    @property
    def total_errors(self) -> int:
        return self._errors.value

    def uptime_seconds(self) -> int:
        return int(time.monotonic() - self._started_monotonic)

    def restore(self, *, processed: int, errors: int, total_latency_ms: float = 0.0) -> None:
        """Seed totals from persisted history (e.g. the audit store at start-up)."""
        self._processed.set(processed)
        self._errors.set(errors)
        self._latency.restore(total_latency_ms)
        logger.info(f"[{self.name}] restored stats: {processed} processed, {errors} errors")

    def snapshot(self) -> StatsSnapshot:
        total = self._processed.value
        errors = self._errors.value
        total_ms, min_ms, max_ms = self._latency.read()
        uptime = self.uptime_seconds()

        rate = success_rate(total, errors)
        return StatsSnapshot(
            total_processed=total,
            total_errors=errors,
            success_rate=rate,
            error_rate=100.0 - rate,
            average_latency_ms=(total_ms / total) if total else 0.0,
            min_latency_ms=min_ms,
            max_latency_ms=max_ms,
            messages_per_second=(total / uptime) if uptime else 0.0,
            topic_counts=self._topics.as_dict(),
            error_type_counts=self._error_types.as_dict(),
            uptime_seconds=uptime,
            started_at=self._started_at,
            taken_at=datetime.now(timezone.utc),
        )

    def reset(self) -> None:
        """Drop all counters and restart the uptime clock. Tests and admin use only."""
        self._init_state()
        logger.info(f"[{self.name}] stats reset")
