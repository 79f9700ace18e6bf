"""Event model shared by producers and consumers.

Every event carries the same envelope (id, timestamp, source, version,
correlation_id) and one of three payload shapes. The variant is identified by
the ``event_type`` tag, which is written on the wire and used for routing.

``is_valid()`` is the presence check gating publish. ``validation_errors()``
additionally checks formats (enum membership, IP/currency patterns).
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from src.contracts import topics

from .ids import new_event_id


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _present(v: Any) -> bool:
    if v is None:
        return False
    if isinstance(v, str):
        return bool(v.strip())
    return True


class EventType(str, Enum):
    USER_EVENT = "USER_EVENT"
    BUSINESS_EVENT = "BUSINESS_EVENT"
    SYSTEM_EVENT = "SYSTEM_EVENT"


class UserAction(str, Enum):
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    PAGE_VIEW = "PAGE_VIEW"
    SEARCH = "SEARCH"
    CLICK = "CLICK"
    PURCHASE = "PURCHASE"
    BROWSE = "BROWSE"
    REGISTER = "REGISTER"
    UPDATE_PROFILE = "UPDATE_PROFILE"


class TransactionType(str, Enum):
    ORDER_CREATED = "ORDER_CREATED"
    ORDER_UPDATED = "ORDER_UPDATED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    PAYMENT_INITIATED = "PAYMENT_INITIATED"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    SHIPMENT_CREATED = "SHIPMENT_CREATED"
    SHIPMENT_DISPATCHED = "SHIPMENT_DISPATCHED"
    SHIPMENT_DELIVERED = "SHIPMENT_DELIVERED"
    REFUND_INITIATED = "REFUND_INITIATED"
    REFUND_COMPLETED = "REFUND_COMPLETED"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class SystemEventType(str, Enum):
    HEALTH_CHECK = "HEALTH_CHECK"
    ALERT = "ALERT"
    METRIC_UPDATE = "METRIC_UPDATE"
    SERVICE_START = "SERVICE_START"
    SERVICE_STOP = "SERVICE_STOP"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"
    DEBUG = "DEBUG"


class Severity(str, Enum):
    """Severity levels, ordered CRITICAL > HIGH > MEDIUM > LOW > INFO."""
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INFO = "INFO"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, other: "Severity") -> bool:
        return self.rank >= Severity(other).rank


_SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class Environment(str, Enum):
    DEVELOPMENT = "DEVELOPMENT"
    STAGING = "STAGING"
    PRODUCTION = "PRODUCTION"
    TEST = "TEST"


_IPV4_RE = re.compile(r"^(?:[0-9]{1,3}\.){3}[0-9]{1,3}$")
_IPV6_RE = re.compile(r"^(?:[0-9a-fA-F]{1,4}:){7}[0-9a-fA-F]{1,4}$")
_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


def _check_enum(errors: list[str], name: str, value: Any, enum_cls: type[Enum]) -> None:
    if value is None:
        return
    allowed = {m.value for m in enum_cls}
    if str(getattr(value, "value", value)) not in allowed:
        errors.append(f"{name} must be one of {sorted(allowed)}")


@dataclass(frozen=True)
class BaseEvent:
    """Envelope shared by all variants. Frozen: id and timestamp never change."""

    EVENT_TYPE: ClassVar[EventType]
    TOPIC: ClassVar[str]

    id: str = field(default_factory=new_event_id)
    timestamp: datetime = field(default_factory=_now_utc)
    source: Optional[str] = None
    version: str = "1.0"
    correlation_id: Optional[str] = None

    @property
    def event_type(self) -> str:
        return self.EVENT_TYPE.value

    @property
    def topic(self) -> str:
        return self.TOPIC

    def routing_key(self) -> Optional[str]:  # pragma: no cover
        raise NotImplementedError

    def is_valid(self) -> bool:  # pragma: no cover
        """Presence of the variant's required payload fields.

        Envelope fields (`source`, `version`) are not checked here; they are
        reported only by `validation_errors()`.
        """
        raise NotImplementedError

    def describe(self) -> str:  # pragma: no cover
        raise NotImplementedError

    def _payload_errors(self) -> list[str]:
        return []

    def validation_errors(self) -> list[str]:
        errors: list[str] = []
        if not _present(self.id):
            errors.append("id must be non-empty")
        if self.timestamp is None:
            errors.append("timestamp must be set")
        if not _present(self.source):
            errors.append("source must be non-empty")
        if not _present(self.version):
            errors.append("version must be non-empty")
        errors.extend(self._payload_errors())
        return errors


@dataclass(frozen=True)
class UserEvent(BaseEvent):
    """User activity: login, page view, search, purchase..."""

    EVENT_TYPE: ClassVar[EventType] = EventType.USER_EVENT
    TOPIC: ClassVar[str] = topics.USER_EVENTS

    user_id: Optional[str] = None
    action: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None
    device_type: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def routing_key(self) -> Optional[str]:
        return self.user_id

    def is_valid(self) -> bool:
        return _present(self.user_id) and _present(self.action)

    def describe(self) -> str:
        return f"User {self.user_id} performed action {enum_str(self.action)}"

    def _payload_errors(self) -> list[str]:
        errors: list[str] = []
        if not _present(self.user_id):
            errors.append("user_id must be non-empty")
        if not _present(self.action):
            errors.append("action must be non-empty")
        else:
            _check_enum(errors, "action", self.action, UserAction)
        if self.ip_address is not None and not (
            _IPV4_RE.match(self.ip_address) or _IPV6_RE.match(self.ip_address)
        ):
            errors.append("ip_address must be an IPv4 or IPv6 address")
        return errors


@dataclass(frozen=True)
class BusinessEvent(BaseEvent):
    """Business transaction: orders, payments, shipments, refunds."""

    EVENT_TYPE: ClassVar[EventType] = EventType.BUSINESS_EVENT
    TOPIC: ClassVar[str] = topics.BUSINESS_EVENTS

    order_id: Optional[str] = None
    customer_id: Optional[str] = None
    transaction_type: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: str = "USD"
    payment_method: Optional[str] = None
    shipping_address: Optional[str] = None
    billing_address: Optional[str] = None
    order_status: Optional[str] = None
    order_details: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None

    def routing_key(self) -> Optional[str]:
        return self.order_id

    def has_positive_amount(self) -> bool:
        if self.amount is None:
            return False
        try:
            return Decimal(str(self.amount)) > 0
        except ArithmeticError:
            return False

    def is_valid(self) -> bool:
        return (
            _present(self.order_id)
            and _present(self.customer_id)
            and _present(self.transaction_type)
            and self.has_positive_amount()
        )

    def describe(self) -> str:
        return (
            f"Business event {enum_str(self.transaction_type)} for order {self.order_id} "
            f"(customer: {self.customer_id}, amount: {self.amount} {self.currency})"
        )

    def _payload_errors(self) -> list[str]:
        errors: list[str] = []
        for name in ("order_id", "customer_id", "transaction_type"):
            if not _present(getattr(self, name)):
                errors.append(f"{name} must be non-empty")
        _check_enum(errors, "transaction_type", self.transaction_type, TransactionType)
        if not self.has_positive_amount():
            errors.append("amount must be > 0")
        if not isinstance(self.currency, str) or not _CURRENCY_RE.match(self.currency):
            errors.append("currency must be a 3-letter ISO code")
        _check_enum(errors, "order_status", self.order_status, OrderStatus)
        return errors


@dataclass(frozen=True)
class SystemEvent(BaseEvent):
    """Operational signal from a service: health checks, alerts, errors."""

    EVENT_TYPE: ClassVar[EventType] = EventType.SYSTEM_EVENT
    TOPIC: ClassVar[str] = topics.SYSTEM_EVENTS

    service_id: Optional[str] = None
    system_event_type: Optional[str] = None
    severity: Optional[str] = None
    message: Optional[str] = None
    component: Optional[str] = None
    environment: Optional[str] = None
    host_id: Optional[str] = None
    process_id: Optional[str] = None
    stack_trace: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def routing_key(self) -> Optional[str]:
        return self.service_id

    def is_valid(self) -> bool:
        return (
            _present(self.service_id)
            and _present(self.system_event_type)
            and _present(self.severity)
            and _present(self.message)
        )

    def is_critical(self) -> bool:
        return enum_str(self.severity) in (Severity.CRITICAL.value, Severity.HIGH.value)

    def is_error(self) -> bool:
        return (
            enum_str(self.system_event_type) == SystemEventType.ERROR.value
            or enum_str(self.severity) == Severity.CRITICAL.value
        )

    def describe(self) -> str:
        return (
            f"System event from {self.service_id}: {enum_str(self.system_event_type)} "
            f"[{enum_str(self.severity)}] - {self.message}"
        )

    def _payload_errors(self) -> list[str]:
        errors: list[str] = []
        for name in ("service_id", "system_event_type", "severity", "message"):
            if not _present(getattr(self, name)):
                errors.append(f"{name} must be non-empty")
        _check_enum(errors, "system_event_type", self.system_event_type, SystemEventType)
        _check_enum(errors, "severity", self.severity, Severity)
        _check_enum(errors, "environment", self.environment, Environment)
        return errors


def enum_str(v: Any) -> Optional[str]:
    """Plain string form of an enum member or string."""
    if isinstance(v, Enum):
        return str(v.value)
    return v


EVENT_CLASSES: dict[str, type[BaseEvent]] = {
    EventType.USER_EVENT.value: UserEvent,
    EventType.BUSINESS_EVENT.value: BusinessEvent,
    EventType.SYSTEM_EVENT.value: SystemEvent,
}


def event_class_for(event_type: str) -> type[BaseEvent]:
    try:
        return EVENT_CLASSES[event_type]
    except KeyError:
        raise ValueError(f"unknown event_type: {event_type}") from None
