"""JSON wire format for events.

The payload is a flat JSON object: the `event_type` discriminator, the envelope
fields and the variant's own fields. Timestamps are ISO-8601 with timezone and
`amount` travels as a decimal string so no precision is lost.
"""
from __future__ import annotations

import json
from dataclasses import fields
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Union

from src.core.errors import SerializationError
from src.core.models import BaseEvent, event_class_for

from .validation import DISCRIMINATOR, parse_iso8601, validate_event_dict


def _wire_value(v: Any) -> Any:
    if isinstance(v, Enum):
        return v.value
    if isinstance(v, Decimal):
        return str(v)
    if isinstance(v, datetime):
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        return v.isoformat()
    return v


def to_wire_dict(event: BaseEvent) -> dict[str, Any]:
    d: dict[str, Any] = {DISCRIMINATOR: event.event_type}
    for f in fields(event):
        d[f.name] = _wire_value(getattr(event, f.name))
    return d


def from_wire_dict(d: dict[str, Any]) -> BaseEvent:
    try:
        validate_event_dict(d)
    except ValueError as e:
        raise SerializationError(str(e)) from e

    cls = event_class_for(d[DISCRIMINATOR])
    kwargs: dict[str, Any] = {k: v for k, v in d.items() if k != DISCRIMINATOR}
    if "currency" in kwargs and kwargs["currency"] is None:
        del kwargs["currency"]
    try:
        kwargs["timestamp"] = parse_iso8601(kwargs["timestamp"])
        if kwargs.get("amount") is not None:
            kwargs["amount"] = Decimal(str(kwargs["amount"]))
        return cls(**kwargs)
    except (TypeError, ValueError, ArithmeticError) as e:
        raise SerializationError(f"cannot build {d[DISCRIMINATOR]}: {e}") from e


def encode(event: BaseEvent) -> str:
    try:
        return json.dumps(to_wire_dict(event), ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"cannot serialize event {event.id}: {e}") from e


def decode(body: Union[str, bytes]) -> BaseEvent:
    if isinstance(body, bytes):
        body = body.decode("utf-8")
    try:
        d = json.loads(body)
    except json.JSONDecodeError as e:
        raise SerializationError(f"payload is not valid JSON: {e}") from e
    return from_wire_dict(d)
