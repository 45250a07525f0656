"""
Typed gateway events.

Webhook envelopes are parsed once into a closed set of variants so the rest
of the billing core never handles raw gateway dictionaries. Event types this
system does not act on become `UnrecognizedEvent` and are acknowledged.

Envelope shape:
    {"id": "evt_...", "type": "invoice.paid", "created": 1700000000,
     "data": {"object": {...}}}
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Union
from uuid import UUID

from app.shared.core.exceptions import ValidationError
from app.shared.core.pricing import PricingTier, tier_from_gateway_price

from .gateway_shared import from_unix


@dataclass(frozen=True, kw_only=True)
class GatewayEvent:
    event_id: str
    event_type: str
    created: Optional[datetime] = None


@dataclass(frozen=True, kw_only=True)
class TenantScopedEvent(GatewayEvent):
    """Event about a subscription; resolved to a tenant before routing."""

    tenant_hint: Optional[UUID] = None
    subscription_ref: Optional[str] = None
    customer_ref: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class PaymentSucceeded(TenantScopedEvent):
    invoice_ref: str
    amount_minor: int
    currency: str
    charge_ref: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


@dataclass(frozen=True, kw_only=True)
class PaymentFailed(TenantScopedEvent):
    invoice_ref: str
    amount_minor: int
    currency: str
    attempt_count: int = 1
    next_payment_attempt: Optional[datetime] = None


@dataclass(frozen=True, kw_only=True)
class SubscriptionCreated(TenantScopedEvent):
    gateway_status: str
    plan: Optional[PricingTier] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None


@dataclass(frozen=True, kw_only=True)
class SubscriptionUpdated(TenantScopedEvent):
    gateway_status: str
    plan: Optional[PricingTier] = None
    cancel_at_period_end: bool = False
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None


@dataclass(frozen=True, kw_only=True)
class SubscriptionDeleted(TenantScopedEvent):
    ended_at: Optional[datetime] = None


@dataclass(frozen=True, kw_only=True)
class TrialWillEnd(TenantScopedEvent):
    trial_end: Optional[datetime] = None


@dataclass(frozen=True, kw_only=True)
class ChargeRefunded(TenantScopedEvent):
    charge_ref: str
    amount_minor: int
    amount_refunded_minor: int
    currency: str
    refund_refs: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True, kw_only=True)
class UnrecognizedEvent(GatewayEvent):
    pass


BillingEvent = Union[
    PaymentSucceeded,
    PaymentFailed,
    SubscriptionCreated,
    SubscriptionUpdated,
    SubscriptionDeleted,
    TrialWillEnd,
    ChargeRefunded,
    UnrecognizedEvent,
]


@dataclass(frozen=True)
class Envelope:
    event_id: str
    event_type: str
    created: Optional[datetime]
    obj: dict[str, Any]


def parse_envelope(raw_body: bytes | str) -> Envelope:
    """Decode the outer envelope. Raises ValidationError on malformed input."""
    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("Webhook body is not valid JSON", code="invalid_payload") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object", code="invalid_payload")

    event_id = payload.get("id")
    event_type = payload.get("type")
    if not isinstance(event_id, str) or not event_id:
        raise ValidationError("Webhook event id is missing", code="invalid_payload")
    if not isinstance(event_type, str) or not event_type:
        raise ValidationError("Webhook event type is missing", code="invalid_payload")

    data = payload.get("data") or {}
    obj = data.get("object") if isinstance(data, dict) else None
    if obj is not None and not isinstance(obj, dict):
        raise ValidationError("Webhook data.object must be an object", code="invalid_payload")

    created = payload.get("created")
    return Envelope(
        event_id=event_id,
        event_type=event_type,
        created=from_unix(created, "created") if isinstance(created, (int, float)) else None,
        obj=obj or {},
    )


def _require(obj: dict[str, Any], key: str, kind: type) -> Any:
    value = obj.get(key)
    if not isinstance(value, kind) or isinstance(value, bool) and kind is not bool:
        raise ValidationError(
            f"Field '{key}' is missing or invalid",
            code="invalid_payload",
            details={"field": key},
        )
    return value


def _ref(value: Any) -> Optional[str]:
    """Gateway references arrive either as ids or as expanded objects."""
    if isinstance(value, str) and value:
        return value
    if isinstance(value, dict) and isinstance(value.get("id"), str):
        return value["id"]
    return None


def _tenant_hint(obj: dict[str, Any]) -> Optional[UUID]:
    metadata = obj.get("metadata") or {}
    raw = metadata.get("tenant_id") if isinstance(metadata, dict) else None
    if not raw:
        return None
    try:
        return UUID(str(raw))
    except ValueError as exc:
        raise ValidationError(
            "metadata.tenant_id is not a valid UUID", code="invalid_payload"
        ) from exc


def _scoped(env: Envelope, obj: dict[str, Any], subscription_key: str) -> dict[str, Any]:
    return {
        "event_id": env.event_id,
        "event_type": env.event_type,
        "created": env.created,
        "tenant_hint": _tenant_hint(obj),
        "subscription_ref": _ref(obj.get(subscription_key)),
        "customer_ref": _ref(obj.get("customer")),
    }


def _list_data(obj: dict[str, Any], key: str) -> list[Any]:
    """Gateway list objects carry their rows under `data`."""
    container = obj.get(key)
    if container is None:
        return []
    rows = container.get("data") if isinstance(container, dict) else None
    if not isinstance(container, dict) or not (rows is None or isinstance(rows, list)):
        raise ValidationError(
            f"Field '{key}' is not a list object",
            code="invalid_payload",
            details={"field": key},
        )
    return rows or []


def _invoice_period(obj: dict[str, Any]) -> tuple[Optional[datetime], Optional[datetime]]:
    for line in _list_data(obj, "lines"):
        period = line.get("period") if isinstance(line, dict) else None
        if isinstance(period, dict):
            return (
                from_unix(period.get("start"), "lines.period.start"),
                from_unix(period.get("end"), "lines.period.end"),
            )
    return None, None


def _subscription_plan(obj: dict[str, Any]) -> Optional[PricingTier]:
    for item in _list_data(obj, "items"):
        price = item.get("price") if isinstance(item, dict) else None
        if isinstance(price, dict):
            return tier_from_gateway_price(price.get("id"))
    return None


def _payment_succeeded(env: Envelope) -> PaymentSucceeded:
    obj = env.obj
    period_start, period_end = _invoice_period(obj)
    return PaymentSucceeded(
        **_scoped(env, obj, "subscription"),
        invoice_ref=_require(obj, "id", str),
        amount_minor=_require(obj, "amount_paid", int),
        currency=_require(obj, "currency", str).upper(),
        charge_ref=_ref(obj.get("charge")),
        period_start=period_start,
        period_end=period_end,
    )


def _payment_failed(env: Envelope) -> PaymentFailed:
    obj = env.obj
    attempt_count = obj.get("attempt_count")
    return PaymentFailed(
        **_scoped(env, obj, "subscription"),
        invoice_ref=_require(obj, "id", str),
        amount_minor=_require(obj, "amount_due", int),
        currency=_require(obj, "currency", str).upper(),
        attempt_count=attempt_count if isinstance(attempt_count, int) else 1,
        next_payment_attempt=from_unix(obj.get("next_payment_attempt"), "next_payment_attempt"),
    )


def _subscription_fields(env: Envelope) -> dict[str, Any]:
    obj = env.obj
    fields = _scoped(env, obj, "id")
    if fields["subscription_ref"] is None:
        raise ValidationError("Subscription id is missing", code="invalid_payload")
    fields.update(
        gateway_status=_require(obj, "status", str),
        plan=_subscription_plan(obj),
        current_period_start=from_unix(obj.get("current_period_start"), "current_period_start"),
        current_period_end=from_unix(obj.get("current_period_end"), "current_period_end"),
        trial_end=from_unix(obj.get("trial_end"), "trial_end"),
    )
    return fields


def _subscription_created(env: Envelope) -> SubscriptionCreated:
    return SubscriptionCreated(**_subscription_fields(env))


def _subscription_updated(env: Envelope) -> SubscriptionUpdated:
    return SubscriptionUpdated(
        **_subscription_fields(env),
        cancel_at_period_end=bool(env.obj.get("cancel_at_period_end", False)),
    )


def _subscription_deleted(env: Envelope) -> SubscriptionDeleted:
    fields = _scoped(env, env.obj, "id")
    if fields["subscription_ref"] is None:
        raise ValidationError("Subscription id is missing", code="invalid_payload")
    return SubscriptionDeleted(
        **fields,
        ended_at=from_unix(env.obj.get("ended_at") or env.obj.get("canceled_at"), "ended_at"),
    )


def _trial_will_end(env: Envelope) -> TrialWillEnd:
    return TrialWillEnd(
        **_scoped(env, env.obj, "id"),
        trial_end=from_unix(env.obj.get("trial_end"), "trial_end"),
    )


def _charge_refunded(env: Envelope) -> ChargeRefunded:
    obj = env.obj
    refunds = _list_data(obj, "refunds")
    return ChargeRefunded(
        **_scoped(env, obj, "subscription"),
        charge_ref=_require(obj, "id", str),
        amount_minor=_require(obj, "amount", int),
        amount_refunded_minor=_require(obj, "amount_refunded", int),
        currency=_require(obj, "currency", str).upper(),
        refund_refs=tuple(r["id"] for r in refunds if isinstance(r, dict) and r.get("id")),
    )


PARSERS: dict[str, Callable[[Envelope], BillingEvent]] = {
    "invoice.payment_succeeded": _payment_succeeded,
    "invoice.paid": _payment_succeeded,
    "invoice.payment_failed": _payment_failed,
    "customer.subscription.created": _subscription_created,
    "customer.subscription.updated": _subscription_updated,
    "customer.subscription.deleted": _subscription_deleted,
    "customer.subscription.trial_will_end": _trial_will_end,
    "charge.refunded": _charge_refunded,
}


def parse_event(envelope: Envelope) -> BillingEvent:
    """Map an envelope to its typed variant. Raises ValidationError on bad data."""
    parser = PARSERS.get(envelope.event_type)
    if parser is None:
        return UnrecognizedEvent(
            event_id=envelope.event_id,
            event_type=envelope.event_type,
            created=envelope.created,
        )
    return parser(envelope)
