from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any


DISCRIMINATOR = "event_type"

ENVELOPE_REQUIRED_KEYS = {DISCRIMINATOR, "id", "timestamp", "source", "version"}
ENVELOPE_OPTIONAL_KEYS = {"correlation_id"}

USER_EVENT_KEYS = {
    "user_id",
    "action",
    "session_id",
    "ip_address",
    "user_agent",
    "location",
    "device_type",
    "metadata",
}
BUSINESS_EVENT_KEYS = {
    "order_id",
    "customer_id",
    "transaction_type",
    "amount",
    "currency",
    "payment_method",
    "shipping_address",
    "billing_address",
    "order_status",
    "order_details",
    "metadata",
}
SYSTEM_EVENT_KEYS = {
    "service_id",
    "system_event_type",
    "severity",
    "message",
    "component",
    "environment",
    "host_id",
    "process_id",
    "stack_trace",
    "metadata",
}

PAYLOAD_KEYS = {
    "USER_EVENT": USER_EVENT_KEYS,
    "BUSINESS_EVENT": BUSINESS_EVENT_KEYS,
    "SYSTEM_EVENT": SYSTEM_EVENT_KEYS,
}

# Free-form objects; every other payload key is an optional string.
_OBJECT_KEYS = {"metadata", "order_details"}


def _require_exact_keys(obj: dict[str, Any], *, required: set[str], optional: set[str] | None = None) -> None:
    optional = optional or set()
    keys = set(obj.keys())
    missing = required - keys
    extra = keys - required - optional
    if missing:
        raise ValueError(f"missing keys: {sorted(missing)}")
    if extra:
        raise ValueError(f"unknown keys not allowed: {sorted(extra)}")


def _require_str(d: dict[str, Any], k: str) -> str:
    v = d.get(k)
    if not isinstance(v, str) or not v.strip():
        raise ValueError(f"{k} must be non-empty string")
    return v


def _optional_str(d: dict[str, Any], k: str) -> None:
    v = d.get(k)
    if v is not None and not isinstance(v, str):
        raise ValueError(f"{k} must be string or null")


def _optional_object(d: dict[str, Any], k: str) -> None:
    v = d.get(k)
    if v is not None and not isinstance(v, dict):
        raise ValueError(f"{k} must be object or null")


def _optional_decimal(d: dict[str, Any], k: str) -> None:
    v = d.get(k)
    if v is None:
        return
    if isinstance(v, bool) or not isinstance(v, (int, float, str)):
        raise ValueError(f"{k} must be a decimal number")
    try:
        Decimal(str(v))
    except InvalidOperation as e:
        raise ValueError(f"{k} must be a decimal number") from e


def parse_iso8601(s: str) -> datetime:
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(f"invalid ISO8601 timestamp: {s}") from e
    if dt.tzinfo is None:
        raise ValueError("timestamp must include timezone")
    return dt


def validate_event_dict(event: dict[str, Any]) -> None:
    """Strict wire validation.

    - the discriminator must name a known variant (no coercion)
    - unknown keys are rejected
    - envelope fields must be present; payload fields are type-checked only,
      presence of business fields is the event's own `is_valid()` concern
    """

    if not isinstance(event, dict):
        raise ValueError("event must be object")
    event_type = event.get(DISCRIMINATOR)
    if not isinstance(event_type, str) or event_type not in PAYLOAD_KEYS:
        raise ValueError(f"unknown event_type: {event_type!r}")

    payload_keys = PAYLOAD_KEYS[event_type]
    _require_exact_keys(
        event,
        required=ENVELOPE_REQUIRED_KEYS,
        optional=ENVELOPE_OPTIONAL_KEYS | payload_keys,
    )
    _require_str(event, "id")
    parse_iso8601(_require_str(event, "timestamp"))
    _optional_str(event, "source")
    _require_str(event, "version")
    _optional_str(event, "correlation_id")

    for k in payload_keys:
        if k in _OBJECT_KEYS:
            _optional_object(event, k)
        elif k == "amount":
            _optional_decimal(event, k)
        else:
            _optional_str(event, k)
