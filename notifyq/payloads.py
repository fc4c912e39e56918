"""Notification payloads, one dataclass per notification kind.

Producers hand the enqueuer a plain mapping; `build_payload` turns it into the
variant for its kind and refuses mappings with missing or unknown keys, so a
malformed payload never reaches the queue.
"""
from dataclasses import dataclass, field, fields, asdict, MISSING
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import PayloadError
from .models import NotificationKind


@dataclass(frozen=True)
class SubscriptionCreated:
    email: str
    name: str
    plan_name: str
    start_date: str
    end_date: str
    price: Optional[float] = None
    features: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SubscriptionUpdated:
    email: str
    name: str
    plan_name: str
    start_date: str
    end_date: str
    price: Optional[float] = None
    features: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SubscriptionCancelled:
    email: str
    name: str
    plan_name: str
    cancel_date: str


@dataclass(frozen=True)
class SubscriptionExpired:
    email: str
    name: str
    plan_name: str
    expiry_date: str


Payload = Union[SubscriptionCreated, SubscriptionUpdated, SubscriptionCancelled, SubscriptionExpired]

PAYLOAD_TYPES = {
    NotificationKind.CREATED: SubscriptionCreated,
    NotificationKind.UPDATED: SubscriptionUpdated,
    NotificationKind.CANCELLED: SubscriptionCancelled,
    NotificationKind.EXPIRED: SubscriptionExpired,
}

# payload field -> delivery body key
WIRE_KEYS = {
    "email": "email",
    "name": "name",
    "plan_name": "planName",
    "start_date": "startDate",
    "end_date": "endDate",
    "cancel_date": "cancelDate",
    "expiry_date": "expiryDate",
    "price": "price",
    "features": "features",
}


def parse_kind(kind) -> NotificationKind:
    try:
        return NotificationKind(kind)
    except ValueError:
        allowed = ", ".join(k.value for k in NotificationKind)
        raise PayloadError(f"Unknown notification kind {kind!r} (allowed: {allowed})")


def required_fields(kind) -> List[str]:
    cls = PAYLOAD_TYPES[parse_kind(kind)]
    return [
        f.name for f in fields(cls)
        if f.default is MISSING and f.default_factory is MISSING
    ]


def build_payload(kind, data: Mapping[str, Any]) -> Payload:
    """Validate `data` against the variant for `kind` and construct it."""
    cls = PAYLOAD_TYPES[parse_kind(kind)]
    known = {f.name for f in fields(cls)}
    missing = [name for name in required_fields(kind) if data.get(name) is None]
    if missing:
        raise PayloadError(f"{parse_kind(kind).value} payload missing: {', '.join(missing)}")
    unknown = sorted(set(data) - known)
    if unknown:
        raise PayloadError(f"{parse_kind(kind).value} payload has unknown keys: {', '.join(unknown)}")
    return cls(**dict(data))


def to_wire(kind, payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Body posted to the delivery endpoint."""
    if not isinstance(payload, Mapping):
        payload = asdict(payload)
    body = {"type": parse_kind(kind).value}
    for name, value in payload.items():
        if value is None:
            continue
        body[WIRE_KEYS.get(name, name)] = value
    return body
