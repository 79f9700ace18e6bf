"""Audit trail of publish and process attempts.

One record is written per attempt: the producer side writes one when the log
confirms or rejects a send, the consumer side one per processing attempt. Rows
are append-only; the only update is the processing-time backfill done by the
operation that created the row.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator, Optional, Protocol

from .ids import new_record_id

logger = logging.getLogger(__name__)


class AuditStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass
class AuditRecord:
    message_id: str
    topic: str
    status: AuditStatus
    event_type: Optional[str] = None
    key: Optional[str] = None
    partition: Optional[int] = None
    offset: Optional[str] = None
    payload: Optional[str] = None
    message_size: Optional[int] = None
    processing_time_ms: Optional[float] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    record_id: str = field(default_factory=new_record_id)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        d["recorded_at"] = self.recorded_at.isoformat()
        return d


@dataclass(frozen=True)
class AuditFilter:
    """Conjunction of optional criteria; an empty filter matches everything."""
    status: Optional[AuditStatus] = None
    topic: Optional[str] = None
    event_type: Optional[str] = None
    message_id: Optional[str] = None
    since: Optional[datetime] = None

    def matches(self, r: AuditRecord) -> bool:
        if self.status is not None and r.status != self.status:
            return False
        if self.topic is not None and r.topic != self.topic:
            return False
        if self.event_type is not None and r.event_type != self.event_type:
            return False
        if self.message_id is not None and r.message_id != self.message_id:
            return False
        if self.since is not None and r.recorded_at < self.since:
            return False
        return True


class AuditStore(Protocol):
    """Interface for audit persistence."""

    def insert(self, record: AuditRecord) -> None:
        ...

    def update_duration(self, record_id: str, ms: float) -> None:
        ...

    def count_by(self, flt: AuditFilter) -> int:
        ...

    def find_recent(self, since: datetime, limit: int = 100) -> list[AuditRecord]:
        ...

    def get(self, record_id: str) -> Optional[AuditRecord]:
        ...

    def find_by_message_id(self, message_id: str) -> list[AuditRecord]:
        ...

    def average_processing_time(self, topic: Optional[str] = None) -> Optional[float]:
        ...

    def purge_before(self, cutoff: datetime) -> int:
        ...


class InMemoryAuditStore:
    """In-memory implementation for tests and dev mode. Thread-safe."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: dict[str, AuditRecord] = {}

    def insert(self, record: AuditRecord) -> None:
        with self._lock:
            if record.record_id in self._records:
                raise ValueError(f"duplicate audit record: {record.record_id}")
            self._records[record.record_id] = record

    def update_duration(self, record_id: str, ms: float) -> None:
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise KeyError(record_id)
            record.processing_time_ms = ms

    def count_by(self, flt: AuditFilter) -> int:
        with self._lock:
            return sum(1 for r in self._records.values() if flt.matches(r))

    def find_recent(self, since: datetime, limit: int = 100) -> list[AuditRecord]:
        with self._lock:
            records = [r for r in self._records.values() if r.recorded_at >= since]
        records.sort(key=lambda x: x.recorded_at, reverse=True)
        return records[:limit]

    def get(self, record_id: str) -> Optional[AuditRecord]:
        with self._lock:
            return self._records.get(record_id)

    def find_by_message_id(self, message_id: str) -> list[AuditRecord]:
        with self._lock:
            records = [r for r in self._records.values() if r.message_id == message_id]
        records.sort(key=lambda x: x.recorded_at)
        return records

    def all(self) -> list[AuditRecord]:
        with self._lock:
            return list(self._records.values())

    def average_processing_time(self, topic: Optional[str] = None) -> Optional[float]:
        with self._lock:
            samples = [
                r.processing_time_ms
                for r in self._records.values()
                if r.processing_time_ms is not None and (topic is None or r.topic == topic)
            ]
        if not samples:
            return None
        return sum(samples) / len(samples)

    def purge_before(self, cutoff: datetime) -> int:
        with self._lock:
            old = [k for k, r in self._records.items() if r.recorded_at < cutoff]
            for k in old:
                del self._records[k]
        return len(old)


AUDIT_COLUMNS = (
    "record_id",
    "message_id",
    "topic",
    "status",
    "event_type",
    "message_key",
    "partition_id",
    "offset_value",
    "payload",
    "message_size",
    "processing_time_ms",
    "error_message",
    "retry_count",
    "recorded_at",
)


class PostgresAuditStore:
    """PostgreSQL implementation for production.

    Producer and consumer keep separate tables (`message_log` and
    `processed_messages`) with the same shape:

    CREATE TABLE IF NOT EXISTS message_log (
        record_id VARCHAR(64) PRIMARY KEY,
        message_id VARCHAR(64) NOT NULL,
        topic VARCHAR(128) NOT NULL,
        status VARCHAR(20) NOT NULL,
        event_type VARCHAR(32),
        message_key VARCHAR(256),
        partition_id INTEGER,
        offset_value VARCHAR(64),
        payload TEXT,
        message_size INTEGER,
        processing_time_ms DOUBLE PRECISION,
        error_message TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        recorded_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    CREATE INDEX IF NOT EXISTS idx_message_log_message_id ON message_log(message_id);
    CREATE INDEX IF NOT EXISTS idx_message_log_recorded_at ON message_log(recorded_at DESC);
    """

    def __init__(self, dsn: str, *, table: str = "message_log", max_connections: int = 8) -> None:
        if not table.isidentifier():
            raise ValueError(f"invalid table name: {table}")
        self._dsn = dsn
        self._table = table
        self._max_connections = max_connections
        self._pool = None
        self._pool_lock = threading.Lock()

    def _get_pool(self):
        with self._pool_lock:
            if self._pool is None:
                from psycopg2.pool import ThreadedConnectionPool

                self._pool = ThreadedConnectionPool(1, self._max_connections, self._dsn)
            return self._pool

    @contextmanager
    def _connection(self) -> Iterator[Any]:
        pool = self._get_pool()
        conn = pool.getconn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            pool.putconn(conn)

    def ensure_schema(self) -> None:
        t = self._table
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {t} (
                    record_id VARCHAR(64) PRIMARY KEY,
                    message_id VARCHAR(64) NOT NULL,
                    topic VARCHAR(128) NOT NULL,
                    status VARCHAR(20) NOT NULL,
                    event_type VARCHAR(32),
                    message_key VARCHAR(256),
                    partition_id INTEGER,
                    offset_value VARCHAR(64),
                    payload TEXT,
                    message_size INTEGER,
                    processing_time_ms DOUBLE PRECISION,
                    error_message TEXT,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    recorded_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                );
                CREATE INDEX IF NOT EXISTS idx_{t}_message_id ON {t}(message_id);
                CREATE INDEX IF NOT EXISTS idx_{t}_recorded_at ON {t}(recorded_at DESC);
                """
            )

    def _insert_with_cursor(self, cur, record: AuditRecord) -> None:
        placeholders = ", ".join(["%s"] * len(AUDIT_COLUMNS))
        cur.execute(
            f"INSERT INTO {self._table} ({', '.join(AUDIT_COLUMNS)}) VALUES ({placeholders})",
            (
                record.record_id,
                record.message_id,
                record.topic,
                record.status.value,
                record.event_type,
                record.key,
                record.partition,
                record.offset,
                record.payload,
                record.message_size,
                record.processing_time_ms,
                record.error_message,
                record.retry_count,
                record.recorded_at,
            ),
        )

    def insert(self, record: AuditRecord) -> None:
        with self._connection() as conn, conn.cursor() as cur:
            self._insert_with_cursor(cur, record)

    def update_duration(self, record_id: str, ms: float) -> None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                f"UPDATE {self._table} SET processing_time_ms = %s WHERE record_id = %s",
                (ms, record_id),
            )

    def _where(self, flt: AuditFilter) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if flt.status is not None:
            clauses.append("status = %s")
            params.append(AuditStatus(flt.status).value)
        if flt.topic is not None:
            clauses.append("topic = %s")
            params.append(flt.topic)
        if flt.event_type is not None:
            clauses.append("event_type = %s")
            params.append(flt.event_type)
        if flt.message_id is not None:
            clauses.append("message_id = %s")
            params.append(flt.message_id)
        if flt.since is not None:
            clauses.append("recorded_at >= %s")
            params.append(flt.since)
        sql = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        return sql, params

    def count_by(self, flt: AuditFilter) -> int:
        where, params = self._where(flt)
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*) FROM {self._table}{where}", params)
            return int(cur.fetchone()[0])

    def _select(self, where: str, params: list[Any], suffix: str = "") -> list[AuditRecord]:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(f"SELECT {', '.join(AUDIT_COLUMNS)} FROM {self._table}{where}{suffix}", params)
            return [self._row_to_record(row) for row in cur.fetchall()]

    def find_recent(self, since: datetime, limit: int = 100) -> list[AuditRecord]:
        return self._select(" WHERE recorded_at >= %s", [since, limit], " ORDER BY recorded_at DESC LIMIT %s")

    def get(self, record_id: str) -> Optional[AuditRecord]:
        rows = self._select(" WHERE record_id = %s", [record_id])
        return rows[0] if rows else None

    def find_by_message_id(self, message_id: str) -> list[AuditRecord]:
        return self._select(" WHERE message_id = %s", [message_id], " ORDER BY recorded_at")

    def average_processing_time(self, topic: Optional[str] = None) -> Optional[float]:
        sql = f"SELECT AVG(processing_time_ms) FROM {self._table} WHERE processing_time_ms IS NOT NULL"
        params: list[Any] = []
        if topic is not None:
            sql += " AND topic = %s"
            params.append(topic)
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(sql, params)
            v = cur.fetchone()[0]
        return float(v) if v is not None else None

    def purge_before(self, cutoff: datetime) -> int:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(f"DELETE FROM {self._table} WHERE recorded_at < %s", (cutoff,))
            n = cur.rowcount
        logger.info(f"Purged {n} audit records older than {cutoff.isoformat()} from {self._table}")
        return n

    def _row_to_record(self, row: tuple) -> AuditRecord:
        d = dict(zip(AUDIT_COLUMNS, row))
        return AuditRecord(
            record_id=d["record_id"],
            message_id=d["message_id"],
            topic=d["topic"],
            status=AuditStatus(d["status"]),
            event_type=d["event_type"],
            key=d["message_key"],
            partition=d["partition_id"],
            offset=d["offset_value"],
            payload=d["payload"],
            message_size=d["message_size"],
            processing_time_ms=float(d["processing_time_ms"]) if d["processing_time_ms"] is not None else None,
            error_message=d["error_message"],
            retry_count=d["retry_count"],
            recorded_at=d["recorded_at"],
        )

