"""Typed projections of processed events, and the consumer's unit of work.

A projection row is written only when processing succeeds, in the same unit of
work as the SUCCESS audit record: both commit or neither does.
"""

from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, ContextManager, Iterator, Optional, Protocol, Union

from src.core.audit import AuditRecord, InMemoryAuditStore, PostgresAuditStore
from src.core.models import BaseEvent, BusinessEvent, SystemEvent, UserEvent, enum_str


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UserEventRow:
    event_id: str
    user_id: str
    action: str
    created_at: datetime
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None
    device_type: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    processed_at: datetime = field(default_factory=_now_utc)


@dataclass
class BusinessEventRow:
    event_id: str
    order_id: str
    customer_id: str
    transaction_type: str
    created_at: datetime
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    payment_method: Optional[str] = None
    shipping_address: Optional[str] = None
    billing_address: Optional[str] = None
    order_status: Optional[str] = None
    order_details: Optional[dict[str, Any]] = None
    processed_at: datetime = field(default_factory=_now_utc)


@dataclass
class SystemEventRow:
    event_id: str
    service_id: str
    system_event_type: str
    severity: str
    message: str
    created_at: datetime
    component: Optional[str] = None
    environment: Optional[str] = None
    host_id: Optional[str] = None
    process_id: Optional[str] = None
    stack_trace: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    processed_at: datetime = field(default_factory=_now_utc)


ProjectionRow = Union[UserEventRow, BusinessEventRow, SystemEventRow]


def project(event: BaseEvent) -> ProjectionRow:
    """Build the typed row for an event. processed_at is the wall clock now."""
    if isinstance(event, UserEvent):
        return UserEventRow(
            event_id=event.id,
            user_id=event.user_id,
            action=enum_str(event.action),
            created_at=event.timestamp,
            session_id=event.session_id,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            location=event.location,
            device_type=event.device_type,
            metadata=event.metadata,
        )
    if isinstance(event, BusinessEvent):
        return BusinessEventRow(
            event_id=event.id,
            order_id=event.order_id,
            customer_id=event.customer_id,
            transaction_type=enum_str(event.transaction_type),
            created_at=event.timestamp,
            amount=event.amount,
            currency=event.currency,
            payment_method=event.payment_method,
            shipping_address=event.shipping_address,
            billing_address=event.billing_address,
            order_status=enum_str(event.order_status),
            order_details=event.order_details,
        )
    if isinstance(event, SystemEvent):
        return SystemEventRow(
            event_id=event.id,
            service_id=event.service_id,
            system_event_type=enum_str(event.system_event_type),
            severity=enum_str(event.severity),
            message=event.message,
            created_at=event.timestamp,
            component=event.component,
            environment=enum_str(event.environment),
            host_id=event.host_id,
            process_id=event.process_id,
            stack_trace=event.stack_trace,
            metadata=event.metadata,
        )
    raise TypeError(f"no projection for {type(event).__name__}")


class UnitOfWork(Protocol):
    def add_audit(self, record: AuditRecord) -> None:
        ...

    def add_projection(self, row: ProjectionRow) -> None:
        ...


class ConsumerRepository(Protocol):
    """Audit store + projections sharing one transactional boundary."""

    def unit_of_work(self) -> ContextManager[UnitOfWork]:
        ...

    def insert(self, record: AuditRecord) -> None:
        ...

    def update_duration(self, record_id: str, ms: float) -> None:
        ...

    def count_projections(self, kind: Optional[type] = None) -> int:
        ...


class _InMemoryUnitOfWork:
    def __init__(self) -> None:
        self.audits: list[AuditRecord] = []
        self.rows: list[ProjectionRow] = []

    def add_audit(self, record: AuditRecord) -> None:
        self.audits.append(record)

    def add_projection(self, row: ProjectionRow) -> None:
        self.rows.append(row)


class InMemoryConsumerRepository(InMemoryAuditStore):
    """In-memory implementation for testing. Staged writes apply on commit only."""

    def __init__(self) -> None:
        super().__init__()
        self._rows: list[ProjectionRow] = []
        self._rows_lock = threading.Lock()
        # Test hook: raise inside the unit of work before commit.
        self.fail_with: Optional[BaseException] = None

    @contextmanager
    def unit_of_work(self) -> Iterator[_InMemoryUnitOfWork]:
        uow = _InMemoryUnitOfWork()
        yield uow
        if self.fail_with is not None:
            raise self.fail_with
        with self._lock, self._rows_lock:
            for record in uow.audits:
                if record.record_id in self._records:
                    raise ValueError(f"duplicate audit record: {record.record_id}")
            for record in uow.audits:
                self._records[record.record_id] = record
            self._rows.extend(uow.rows)

    def projections(self, kind: Optional[type] = None) -> list[ProjectionRow]:
        with self._rows_lock:
            return [r for r in self._rows if kind is None or isinstance(r, kind)]

    def count_projections(self, kind: Optional[type] = None) -> int:
        return len(self.projections(kind))


def _json(value: Optional[dict[str, Any]]) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


class _PostgresUnitOfWork:
    def __init__(self, store: "PostgresConsumerRepository", cur) -> None:
        self._store = store
        self._cur = cur

    def add_audit(self, record: AuditRecord) -> None:
        self._store._insert_with_cursor(self._cur, record)

    def add_projection(self, row: ProjectionRow) -> None:
        self._store._insert_projection(self._cur, row)


PROJECTION_DDL = """
    CREATE TABLE IF NOT EXISTS user_events (
        event_id VARCHAR(64) NOT NULL, user_id VARCHAR(128) NOT NULL,
        action VARCHAR(32) NOT NULL, session_id VARCHAR(128), ip_address VARCHAR(64),
        user_agent TEXT, location VARCHAR(256), device_type VARCHAR(64),
        metadata JSONB, created_at TIMESTAMPTZ NOT NULL, processed_at TIMESTAMPTZ NOT NULL
    );
    CREATE TABLE IF NOT EXISTS business_events (
        event_id VARCHAR(64) NOT NULL, order_id VARCHAR(128) NOT NULL,
        customer_id VARCHAR(128) NOT NULL, transaction_type VARCHAR(32) NOT NULL,
        amount DECIMAL(18, 4), currency CHAR(3), payment_method VARCHAR(64),
        shipping_address TEXT, billing_address TEXT, order_status VARCHAR(32),
        order_details JSONB, created_at TIMESTAMPTZ NOT NULL, processed_at TIMESTAMPTZ NOT NULL
    );
    CREATE TABLE IF NOT EXISTS system_events (
        event_id VARCHAR(64) NOT NULL, service_id VARCHAR(128) NOT NULL,
        system_event_type VARCHAR(32) NOT NULL, severity VARCHAR(16) NOT NULL,
        message TEXT NOT NULL, component VARCHAR(128), environment VARCHAR(16),
        host_id VARCHAR(128), process_id VARCHAR(64), stack_trace TEXT,
        metadata JSONB, created_at TIMESTAMPTZ NOT NULL, processed_at TIMESTAMPTZ NOT NULL
    );
"""


class PostgresConsumerRepository(PostgresAuditStore):
    """PostgreSQL implementation for production.

    Audit rows go to `processed_messages`, projections to `user_events`,
    `business_events` and `system_events` (see PROJECTION_DDL).
    """

    _TABLES = {
        UserEventRow: "user_events",
        BusinessEventRow: "business_events",
        SystemEventRow: "system_events",
    }

    def __init__(self, dsn: str, *, table: str = "processed_messages", max_connections: int = 8) -> None:
        super().__init__(dsn, table=table, max_connections=max_connections)

    def ensure_schema(self) -> None:
        super().ensure_schema()
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(PROJECTION_DDL)

    @contextmanager
    def unit_of_work(self) -> Iterator[_PostgresUnitOfWork]:
        with self._connection() as conn, conn.cursor() as cur:
            yield _PostgresUnitOfWork(self, cur)

    def _insert_projection(self, cur, row: ProjectionRow) -> None:
        values = dict(vars(row))
        for k in ("metadata", "order_details"):
            if k in values:
                values[k] = _json(values[k])
        cols = list(values.keys())
        cur.execute(
            f"INSERT INTO {self._TABLES[type(row)]} ({', '.join(cols)}) "
            f"VALUES ({', '.join(['%s'] * len(cols))})",
            [values[c] for c in cols],
        )

    def count_projections(self, kind: Optional[type] = None) -> int:
        tables = [self._TABLES[kind]] if kind is not None else list(self._TABLES.values())
        total = 0
        with self._connection() as conn, conn.cursor() as cur:
            for t in tables:
                cur.execute(f"SELECT COUNT(*) FROM {t}")
                total += int(cur.fetchone()[0])
        return total
