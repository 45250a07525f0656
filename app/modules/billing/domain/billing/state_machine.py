"""
Subscription lifecycle states and transition rules.

Pure decision logic: callers (the lifecycle façade) hold the tenant lock,
ask for the next status and persist it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from app.shared.core.exceptions import ConflictError


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    SUSPENDED = "suspended"


class LifecycleEvent(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    DUNNING_EXHAUSTED = "dunning_exhausted"
    CANCEL = "cancel"
    PERIOD_ENDED = "period_ended"
    REACTIVATE = "reactivate"
    SUSPEND = "suspend"
    UNSUSPEND = "unsuspend"


class CancellationReason(str, Enum):
    TOO_EXPENSIVE = "too_expensive"
    MISSING_FEATURES = "missing_features"
    SWITCHED_SERVICE = "switched_service"
    UNUSED = "unused"
    CUSTOMER_SERVICE = "customer_service"
    LOW_QUALITY = "low_quality"
    REFUND = "refund"
    PAYMENT_FAILURE = "payment_failure"
    OTHER = "other"


_S = SubscriptionStatus
_E = LifecycleEvent

TRANSITIONS: dict[tuple[SubscriptionStatus, LifecycleEvent], SubscriptionStatus] = {
    (_S.TRIAL, _E.PAYMENT_SUCCEEDED): _S.ACTIVE,
    (_S.ACTIVE, _E.PAYMENT_SUCCEEDED): _S.ACTIVE,
    (_S.PAST_DUE, _E.PAYMENT_SUCCEEDED): _S.ACTIVE,
    (_S.TRIAL, _E.PAYMENT_FAILED): _S.PAST_DUE,
    (_S.ACTIVE, _E.PAYMENT_FAILED): _S.PAST_DUE,
    (_S.PAST_DUE, _E.PAYMENT_FAILED): _S.PAST_DUE,
    (_S.PAST_DUE, _E.DUNNING_EXHAUSTED): _S.CANCELED,
    (_S.TRIAL, _E.CANCEL): _S.CANCELED,
    (_S.ACTIVE, _E.CANCEL): _S.CANCELED,
    (_S.PAST_DUE, _E.CANCEL): _S.CANCELED,
    (_S.TRIAL, _E.PERIOD_ENDED): _S.CANCELED,
    (_S.ACTIVE, _E.PERIOD_ENDED): _S.CANCELED,
    (_S.PAST_DUE, _E.PERIOD_ENDED): _S.CANCELED,
    (_S.CANCELED, _E.REACTIVATE): _S.ACTIVE,
}

# Billing events keep flowing while a tenant is suspended; they update the
# remembered status without lifting the suspension.
BILLING_EVENTS = frozenset(
    {
        _E.PAYMENT_SUCCEEDED,
        _E.PAYMENT_FAILED,
        _E.DUNNING_EXHAUSTED,
        _E.CANCEL,
        _E.PERIOD_ENDED,
    }
)

PLAN_CHANGE_STATUSES = frozenset({_S.TRIAL, _S.ACTIVE})


@dataclass(frozen=True)
class TransitionDecision:
    status: SubscriptionStatus
    suspended_from: Optional[SubscriptionStatus] = None


def _coerce(status: SubscriptionStatus | str) -> SubscriptionStatus:
    return status if isinstance(status, SubscriptionStatus) else SubscriptionStatus(status)


def _conflict(current: SubscriptionStatus, event: LifecycleEvent) -> ConflictError:
    return ConflictError(
        f"Cannot apply {event.value} to a {current.value} subscription",
        code="invalid_transition",
        details={"status": current.value, "event": event.value},
    )


def next_status(
    current: SubscriptionStatus | str,
    event: LifecycleEvent,
    *,
    suspended_from: SubscriptionStatus | str | None = None,
) -> TransitionDecision:
    """
    Resolve the status after `event`, or raise ConflictError.

    `suspended_from` is the remembered status of a suspended subscription.
    """
    current = _coerce(current)
    prior = _coerce(suspended_from) if suspended_from else None

    if event is _E.SUSPEND:
        if current is _S.SUSPENDED:
            raise _conflict(current, event)
        return TransitionDecision(_S.SUSPENDED, suspended_from=current)

    if event is _E.UNSUSPEND:
        if current is not _S.SUSPENDED or prior is None:
            raise _conflict(current, event)
        return TransitionDecision(prior)

    if current is _S.SUSPENDED:
        if event not in BILLING_EVENTS or prior is None:
            raise _conflict(current, event)
        underlying = TRANSITIONS.get((prior, event))
        if underlying is None:
            raise _conflict(prior, event)
        return TransitionDecision(_S.SUSPENDED, suspended_from=underlying)

    target = TRANSITIONS.get((current, event))
    if target is None:
        raise _conflict(current, event)
    return TransitionDecision(target)


def can_transition(current: SubscriptionStatus | str, event: LifecycleEvent) -> bool:
    try:
        next_status(current, event)
    except ConflictError:
        return False
    return True
