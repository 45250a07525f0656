"""
Subscription lifecycle façade.

Every write to a tenant's subscription, manual or gateway-driven, goes
through `SubscriptionLifecycle.locked`:

1. in-process keyed asyncio.Lock for the tenant (no global lock);
2. SELECT ... FOR UPDATE on the subscription row (cross-process on PostgreSQL);
3. the mutation, including any gateway call;
4. commit, or rollback on any exception including cancellation.

A gateway failure therefore never leaves a half-applied transition behind.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.models.subscription import SubscriptionChange, TenantSubscription
from app.modules.governance.domain.security.audit_log import AuditEventType, AuditLogger
from app.shared.core.exceptions import (
    ConfigurationError,
    ConflictError,
    ResourceNotFoundError,
    TransientInfraError,
    ValidationError,
)
from app.shared.core.ops_metrics import (
    SUBSCRIPTION_TRANSITIONS_TOTAL,
    TENANT_LOCK_WAIT_SECONDS,
)
from app.shared.core.pricing import (
    PricingTier,
    get_gateway_price_id,
    get_price_minor,
    get_tier_config,
    is_upgrade,
    normalize_tier,
)

from .dunning_policy import DunningPolicy
from .events import (
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionUpdated,
    TenantScopedEvent,
)
from .gateway_client import GatewayClient
from .gateway_shared import SYSTEM_SWEEP_ACTOR, SYSTEM_WEBHOOK_ACTOR, get_settings, logger, utcnow
from .proration import ProrationResult, prorate, prorate_for_period
from .state_machine import (
    PLAN_CHANGE_STATUSES,
    CancellationReason,
    LifecycleEvent,
    SubscriptionStatus,
    next_status,
)
from .tenant_directory import TenantDirectory


class _KeyedLock:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.refs = 0


# Locks exist only while someone holds or awaits them.
_TENANT_LOCKS: dict[UUID, _KeyedLock] = {}


@asynccontextmanager
async def tenant_lock(tenant_id: UUID) -> AsyncIterator[None]:
    entry = _TENANT_LOCKS.get(tenant_id)
    if entry is None:
        entry = _TENANT_LOCKS[tenant_id] = _KeyedLock()
    entry.refs += 1
    started = time.perf_counter()
    try:
        async with entry.lock:
            TENANT_LOCK_WAIT_SECONDS.observe(time.perf_counter() - started)
            yield
    finally:
        entry.refs -= 1
        if entry.refs == 0 and _TENANT_LOCKS.get(tenant_id) is entry:
            del _TENANT_LOCKS[tenant_id]


def active_tenant_locks() -> int:
    return len(_TENANT_LOCKS)


@dataclass
class LifecycleResult:
    subscription: Optional[TenantSubscription]
    change: Optional[SubscriptionChange] = None
    proration: Optional[ProrationResult] = None
    outcome: str = "processed"
    detail: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)


def idempotency_key(*parts: Any) -> str:
    raw = ":".join("" if part is None else str(part) for part in parts)
    return hashlib.sha256(raw.encode()).hexdigest()[:48]


def _underlying_status(sub: TenantSubscription) -> str:
    if sub.status == SubscriptionStatus.SUSPENDED.value and sub.suspended_from_status:
        return sub.suspended_from_status
    return sub.status


class SubscriptionLifecycle:
    """Sole writer of TenantSubscription.status and .plan."""

    def __init__(self, db: AsyncSession, gateway: Optional[GatewayClient] = None):
        self.db = db
        self._gateway = gateway
        self._pending_metrics: list[tuple[str, str, str]] = []
        self.dunning = DunningPolicy.from_settings()

    @property
    def gateway(self) -> GatewayClient:
        if self._gateway is None:
            self._gateway = GatewayClient()
        return self._gateway

    # ------------------------------------------------------------------ locking

    async def _load_for_update(self, tenant_id: UUID) -> Optional[TenantSubscription]:
        result = await self.db.execute(
            select(TenantSubscription)
            .where(TenantSubscription.tenant_id == tenant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @asynccontextmanager
    async def _locked(
        self,
        tenant_id: UUID,
        *,
        before_commit: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> AsyncIterator[Optional[TenantSubscription]]:
        async with tenant_lock(tenant_id):
            self._pending_metrics = []
            try:
                yield await self._load_for_update(tenant_id)
                if before_commit is not None:
                    await before_commit()
                await self.db.commit()
            except StaleDataError as exc:
                await self.db.rollback()
                logger.warning("subscription_version_conflict", tenant_id=str(tenant_id))
                raise TransientInfraError(
                    "Subscription was modified concurrently",
                    code="concurrent_modification",
                    details={"tenant_id": str(tenant_id)},
                ) from exc
            except OperationalError as exc:
                await self.db.rollback()
                logger.error("subscription_datastore_error", tenant_id=str(tenant_id), error=str(exc))
                raise TransientInfraError(
                    "Datastore unavailable", code="datastore_unavailable"
                ) from exc
            except BaseException:
                # Includes asyncio.CancelledError and timeouts.
                await self.db.rollback()
                raise
            for from_status, to_status, source in self._pending_metrics:
                SUBSCRIPTION_TRANSITIONS_TOTAL.labels(
                    from_status=from_status, to_status=to_status, source=source
                ).inc()
            self._pending_metrics = []

    @asynccontextmanager
    async def locked(
        self,
        tenant_id: UUID,
        *,
        before_commit: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> AsyncIterator[TenantSubscription]:
        """Hold the tenant lock and the row lock; commit on clean exit."""
        async with self._locked(tenant_id, before_commit=before_commit) as sub:
            if sub is None:
                raise ResourceNotFoundError(
                    f"No subscription for tenant {tenant_id}",
                    code="subscription_not_found",
                )
            yield sub

    # ------------------------------------------------------------------ helpers

    def _record(
        self,
        sub: TenantSubscription,
        change_type: str,
        *,
        source: str,
        actor: Optional[str],
        from_status: str,
        from_plan: Optional[str] = None,
        reason: Optional[str] = None,
        proration: Optional[ProrationResult] = None,
        gateway_reference: Optional[str] = None,
        effective_at: Optional[datetime] = None,
    ) -> SubscriptionChange:
        change = SubscriptionChange(
            tenant_id=sub.tenant_id,
            subscription_id=sub.id,
            change_type=change_type,
            source=source,
            actor=actor,
            reason=reason,
            from_plan=from_plan or sub.plan,
            to_plan=sub.plan,
            from_status=from_status,
            to_status=sub.status,
            proration_amount_minor=proration.amount_minor if proration else None,
            proration_currency=proration.currency if proration else None,
            proration_basis=proration.basis if proration else None,
            gateway_reference=gateway_reference,
            effective_at=effective_at or utcnow(),
        )
        self.db.add(change)
        if from_status != sub.status:
            self._pending_metrics.append((from_status, sub.status, source))
        return change

    def _transition(self, sub: TenantSubscription, event: LifecycleEvent) -> str:
        """Apply `event` to `sub`; returns the previous status. Raises ConflictError."""
        decision = next_status(sub.status, event, suspended_from=sub.suspended_from_status)
        previous = sub.status
        sub.status = decision.status.value
        if decision.status is SubscriptionStatus.SUSPENDED:
            sub.suspended_from_status = (
                decision.suspended_from.value if decision.suspended_from else None
            )
        else:
            sub.suspended_from_status = None
            sub.suspension_reason = None
        return previous

    async def _audit(
        self,
        sub: TenantSubscription,
        event_type: AuditEventType,
        actor: Optional[str],
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        await AuditLogger(self.db, sub.tenant_id, correlation_id).log(
            event_type=event_type,
            actor_id=actor,
            resource_type="subscription",
            resource_id=str(sub.id),
            details=details,
        )

    def _period_from_now(self, now: datetime) -> tuple[datetime, datetime]:
        return now, now + timedelta(days=get_settings().BILLING_CYCLE_DAYS)

    # ------------------------------------------------------------------ reads

    async def get_subscription(self, tenant_id: UUID) -> TenantSubscription:
        result = await self.db.execute(
            select(TenantSubscription).where(TenantSubscription.tenant_id == tenant_id)
        )
        sub = result.scalar_one_or_none()
        if sub is None:
            raise ResourceNotFoundError(
                f"No subscription for tenant {tenant_id}", code="subscription_not_found"
            )
        return sub

    async def history(
        self, tenant_id: UUID, limit: int = 50, offset: int = 0
    ) -> list[SubscriptionChange]:
        result = await self.db.execute(
            select(SubscriptionChange)
            .where(SubscriptionChange.tenant_id == tenant_id)
            .order_by(SubscriptionChange.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------ onboarding

    async def start_trial(
        self,
        tenant_id: UUID,
        plan: PricingTier | str,
        actor: str,
        *,
        gateway_customer_id: Optional[str] = None,
        gateway_subscription_id: Optional[str] = None,
        trial_days: Optional[int] = None,
    ) -> LifecycleResult:
        tier = normalize_tier(plan)
        if tier is None:
            raise ValidationError(f"Unknown plan: {plan}", code="unknown_plan")
        if not await TenantDirectory(self.db).exists(tenant_id):
            raise ResourceNotFoundError(f"Tenant {tenant_id} not found")

        days = get_settings().BILLING_TRIAL_DAYS if trial_days is None else trial_days
        async with self._locked(tenant_id) as existing:
            if existing is not None:
                raise ConflictError(
                    "Tenant already has a subscription", code="subscription_exists"
                )
            now = utcnow()
            sub = TenantSubscription(
                tenant_id=tenant_id,
                plan=tier.value,
                status=SubscriptionStatus.TRIAL.value,
                gateway_customer_id=gateway_customer_id,
                gateway_subscription_id=gateway_subscription_id,
                current_period_start=now,
                current_period_end=now + timedelta(days=days),
                trial_ends_at=now + timedelta(days=days),
                cancel_at_period_end=False,
                dunning_attempts=0,
            )
            self.db.add(sub)
            await self.db.flush()
            change = self._record(
                sub, "trial_started", source="manual", actor=actor, from_status="none"
            )
            await self._audit(
                sub,
                AuditEventType.BILLING_SUBSCRIPTION_CREATED,
                actor,
                {"plan": tier.value, "trial_days": days},
            )
        logger.info("subscription_trial_started", tenant_id=str(tenant_id), plan=tier.value)
        return LifecycleResult(subscription=sub, change=change)

    # ------------------------------------------------------------------ plan changes

    async def change_plan(
        self,
        tenant_id: UUID,
        target_plan: PricingTier | str,
        actor: str,
        direction: str,
    ) -> LifecycleResult:
        """
        Upgrade or downgrade. Active subscriptions are prorated immediately;
        trials switch price at renewal without proration.
        """
        target = normalize_tier(target_plan)
        if target is None:
            raise ValidationError(f"Unknown plan: {target_plan}", code="unknown_plan")
        if direction not in ("upgrade", "downgrade"):
            raise ValidationError(
                "direction must be 'upgrade' or 'downgrade'", code="invalid_direction"
            )

        async with self.locked(tenant_id) as sub:
            status = SubscriptionStatus(sub.status)
            if status not in PLAN_CHANGE_STATUSES:
                raise ConflictError(
                    f"Cannot change plan of a {status.value} subscription",
                    code="invalid_transition",
                    details={"status": status.value},
                )
            current = normalize_tier(sub.plan)
            if current is target:
                raise ValidationError(
                    f"Subscription is already on {target.value}", code="plan_unchanged"
                )
            if current is not None and is_upgrade(current, target) != (direction == "upgrade"):
                raise ValidationError(
                    f"{current.value} -> {target.value} is not a {direction}",
                    code="direction_mismatch",
                )

            price_id = get_gateway_price_id(target)
            if not price_id:
                raise ConfigurationError(
                    f"No gateway price configured for {target.value}",
                    code="price_not_configured",
                )

            now = utcnow()
            proration: Optional[ProrationResult] = None
            if status is SubscriptionStatus.ACTIVE:
                old_price = get_price_minor(sub.plan)
                new_price = get_price_minor(target)
                currency = get_tier_config(target)["currency"]
                if sub.current_period_start and sub.current_period_end:
                    proration = prorate_for_period(
                        old_price,
                        new_price,
                        sub.current_period_start,
                        sub.current_period_end,
                        now,
                        currency,
                    )
                else:
                    cycle = get_settings().BILLING_CYCLE_DAYS * 86400
                    proration = prorate(old_price, new_price, cycle, 0, currency)

            gateway_reference: Optional[str] = None
            if sub.gateway_subscription_id:
                result = await self.gateway.create_plan_change(
                    sub.gateway_subscription_id,
                    price_id,
                    prorate=proration is not None,
                    idempotency_key=idempotency_key(
                        "plan_change",
                        tenant_id,
                        target.value,
                        sub.current_period_start.isoformat()
                        if sub.current_period_start
                        else None,
                    ),
                )
                gateway_reference = result.reference
            elif status is SubscriptionStatus.ACTIVE:
                raise ConflictError(
                    "Active subscription has no gateway subscription reference",
                    code="gateway_subscription_missing",
                )

            from_plan = sub.plan
            sub.plan = target.value
            effective_at = now if proration is not None else (sub.current_period_end or now)
            change = self._record(
                sub,
                direction,
                source="manual",
                actor=actor,
                from_status=sub.status,
                from_plan=from_plan,
                proration=proration,
                gateway_reference=gateway_reference,
                effective_at=effective_at,
            )
            await self._audit(
                sub,
                AuditEventType.BILLING_PLAN_CHANGED,
                actor,
                {
                    "from_plan": from_plan,
                    "to_plan": target.value,
                    "direction": direction,
                    "proration_amount_minor": proration.amount_minor if proration else 0,
                    "currency": proration.currency if proration else None,
                },
            )

        logger.info(
            "subscription_plan_changed",
            tenant_id=str(tenant_id),
            from_plan=from_plan,
            to_plan=target.value,
            proration_amount_minor=proration.amount_minor if proration else 0,
        )
        return LifecycleResult(subscription=sub, change=change, proration=proration)

    # ------------------------------------------------------------------ cancellation

    async def cancel(
        self,
        tenant_id: UUID,
        actor: str,
        reason: CancellationReason | str,
        feedback: Optional[str] = None,
        immediate: bool = False,
        *,
        source: str = "manual",
        correlation_id: Optional[str] = None,
    ) -> LifecycleResult:
        try:
            reason_value = CancellationReason(reason)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown cancellation reason: {reason}", code="invalid_reason"
            ) from exc

        async with self.locked(tenant_id) as sub:
            if immediate:
                change = await self._cancel_now(
                    sub, actor, reason_value, feedback, source, correlation_id
                )
            else:
                change = await self._schedule_cancellation(
                    sub, actor, reason_value, feedback, source, correlation_id
                )
        return LifecycleResult(subscription=sub, change=change)

    async def _cancel_now(
        self,
        sub: TenantSubscription,
        actor: str,
        reason: CancellationReason,
        feedback: Optional[str],
        source: str,
        correlation_id: Optional[str],
    ) -> SubscriptionChange:
        # Validate before touching the gateway.
        next_status(sub.status, LifecycleEvent.CANCEL, suspended_from=sub.suspended_from_status)

        gateway_reference: Optional[str] = None
        if sub.gateway_subscription_id:
            result = await self.gateway.cancel_subscription(
                sub.gateway_subscription_id,
                at_period_end=False,
                idempotency_key=idempotency_key("cancel", sub.tenant_id, sub.gateway_subscription_id),
            )
            gateway_reference = result.reference

        previous = self._transition(sub, LifecycleEvent.CANCEL)
        sub.cancel_at_period_end = False
        sub.cancellation_reason = reason.value
        sub.cancellation_feedback = feedback
        sub.canceled_at = utcnow()
        change = self._record(
            sub,
            "canceled",
            source=source,
            actor=actor,
            from_status=previous,
            reason=reason.value,
            gateway_reference=gateway_reference,
        )
        await self._audit(
            sub,
            AuditEventType.BILLING_SUBSCRIPTION_CANCELED,
            actor,
            {"reason": reason.value, "immediate": True, "from_status": previous},
            correlation_id,
        )
        logger.info(
            "subscription_canceled",
            tenant_id=str(sub.tenant_id),
            reason=reason.value,
            from_status=previous,
        )
        return change

    async def _schedule_cancellation(
        self,
        sub: TenantSubscription,
        actor: str,
        reason: CancellationReason,
        feedback: Optional[str],
        source: str,
        correlation_id: Optional[str],
    ) -> SubscriptionChange:
        next_status(
            sub.status, LifecycleEvent.PERIOD_ENDED, suspended_from=sub.suspended_from_status
        )
        if sub.cancel_at_period_end:
            raise ConflictError(
                "Cancellation is already scheduled", code="cancellation_already_scheduled"
            )

        gateway_reference: Optional[str] = None
        if sub.gateway_subscription_id:
            result = await self.gateway.cancel_subscription(
                sub.gateway_subscription_id,
                at_period_end=True,
                idempotency_key=idempotency_key(
                    "cancel_at_period_end", sub.tenant_id, sub.gateway_subscription_id
                ),
            )
            gateway_reference = result.reference

        sub.cancel_at_period_end = True
        sub.cancellation_reason = reason.value
        sub.cancellation_feedback = feedback
        change = self._record(
            sub,
            "cancellation_scheduled",
            source=source,
            actor=actor,
            from_status=sub.status,
            reason=reason.value,
            gateway_reference=gateway_reference,
            effective_at=sub.current_period_end,
        )
        await self._audit(
            sub,
            AuditEventType.BILLING_CANCELLATION_SCHEDULED,
            actor,
            {
                "reason": reason.value,
                "effective_at": sub.current_period_end.isoformat()
                if sub.current_period_end
                else None,
            },
            correlation_id,
        )
        logger.info("subscription_cancellation_scheduled", tenant_id=str(sub.tenant_id))
        return change

    # ------------------------------------------------------------------ reactivation

    async def reactivate(self, tenant_id: UUID, actor: str) -> LifecycleResult:
        async with self.locked(tenant_id) as sub:
            if sub.status == SubscriptionStatus.SUSPENDED.value:
                change = await self._unsuspend(sub, actor)
            elif sub.status == SubscriptionStatus.CANCELED.value:
                change = await self._restart(sub, actor)
            elif sub.cancel_at_period_end:
                change = await self._revoke_cancellation(sub, actor)
            else:
                raise ConflictError(
                    f"Cannot reactivate a {sub.status} subscription",
                    code="invalid_transition",
                    details={"status": sub.status},
                )
        return LifecycleResult(subscription=sub, change=change)

    async def _revoke_cancellation(
        self, sub: TenantSubscription, actor: str
    ) -> SubscriptionChange:
        gateway_reference: Optional[str] = None
        if sub.gateway_subscription_id:
            result = await self.gateway.reactivate_subscription(
                tenant_id=sub.tenant_id,
                price_id=get_gateway_price_id(sub.plan) or "",
                customer_ref=sub.gateway_customer_id,
                subscription_ref=sub.gateway_subscription_id,
                pending_cancellation=True,
                idempotency_key=idempotency_key(
                    "revoke_cancel", sub.tenant_id, sub.gateway_subscription_id, sub.version
                ),
            )
            gateway_reference = result.reference

        sub.cancel_at_period_end = False
        sub.cancellation_reason = None
        sub.cancellation_feedback = None
        change = self._record(
            sub,
            "cancellation_revoked",
            source="manual",
            actor=actor,
            from_status=sub.status,
            gateway_reference=gateway_reference,
        )
        await self._audit(
            sub,
            AuditEventType.BILLING_SUBSCRIPTION_REACTIVATED,
            actor,
            {"scheduled_cancellation_revoked": True},
        )
        logger.info("subscription_cancellation_revoked", tenant_id=str(sub.tenant_id))
        return change

    async def _restart(self, sub: TenantSubscription, actor: str) -> SubscriptionChange:
        next_status(sub.status, LifecycleEvent.REACTIVATE)
        price_id = get_gateway_price_id(sub.plan)
        if not price_id:
            raise ConfigurationError(
                f"No gateway price configured for {sub.plan}", code="price_not_configured"
            )

        result = await self.gateway.reactivate_subscription(
            tenant_id=sub.tenant_id,
            price_id=price_id,
            customer_ref=sub.gateway_customer_id,
            subscription_ref=sub.gateway_subscription_id,
            pending_cancellation=False,
            idempotency_key=idempotency_key(
                "reactivate", sub.tenant_id, sub.canceled_at.isoformat() if sub.canceled_at else None
            ),
        )

        now = utcnow()
        period_start, period_end = self._period_from_now(now)
        data = result.data or {}
        if isinstance(data.get("current_period_start"), int):
            period_start = datetime.fromtimestamp(data["current_period_start"], tz=now.tzinfo)
        if isinstance(data.get("current_period_end"), int):
            period_end = datetime.fromtimestamp(data["current_period_end"], tz=now.tzinfo)

        previous = self._transition(sub, LifecycleEvent.REACTIVATE)
        if result.reference:
            sub.gateway_subscription_id = result.reference
        sub.current_period_start = period_start
        sub.current_period_end = period_end
        sub.cancel_at_period_end = False
        sub.cancellation_reason = None
        sub.cancellation_feedback = None
        sub.canceled_at = None
        sub.dunning_attempts = 0
        change = self._record(
            sub,
            "reactivated",
            source="manual",
            actor=actor,
            from_status=previous,
            gateway_reference=result.reference,
        )
        await self._audit(
            sub,
            AuditEventType.BILLING_SUBSCRIPTION_REACTIVATED,
            actor,
            {"gateway_subscription_id": result.reference, "plan": sub.plan},
        )
        logger.info("subscription_reactivated", tenant_id=str(sub.tenant_id))
        return change

    # ------------------------------------------------------------------ suspension

    async def suspend(self, tenant_id: UUID, actor: str, reason: str) -> LifecycleResult:
        if not reason or not reason.strip():
            raise ValidationError("Suspension reason is required", code="reason_required")
        async with self.locked(tenant_id) as sub:
            previous = self._transition(sub, LifecycleEvent.SUSPEND)
            sub.suspension_reason = reason.strip()
            change = self._record(
                sub, "suspended", source="manual", actor=actor, from_status=previous, reason=reason
            )
            await self._audit(
                sub,
                AuditEventType.BILLING_SUBSCRIPTION_SUSPENDED,
                actor,
                {"reason": reason, "suspended_from": previous},
            )
        logger.warning("subscription_suspended", tenant_id=str(tenant_id), from_status=previous)
        return LifecycleResult(subscription=sub, change=change)

    async def unsuspend(self, tenant_id: UUID, actor: str) -> LifecycleResult:
        async with self.locked(tenant_id) as sub:
            change = await self._unsuspend(sub, actor)
        return LifecycleResult(subscription=sub, change=change)

    async def _unsuspend(self, sub: TenantSubscription, actor: str) -> SubscriptionChange:
        previous = self._transition(sub, LifecycleEvent.UNSUSPEND)
        change = self._record(sub, "unsuspended", source="manual", actor=actor, from_status=previous)
        await self._audit(
            sub,
            AuditEventType.BILLING_SUBSCRIPTION_UNSUSPENDED,
            actor,
            {"restored_status": sub.status},
        )
        logger.info("subscription_unsuspended", tenant_id=str(sub.tenant_id), status=sub.status)
        return change

    # ------------------------------------------------------------------ gateway events

    async def apply_gateway_event(
        self,
        tenant_id: UUID,
        event: TenantScopedEvent,
        *,
        before_commit: Optional[Callable[[LifecycleResult], Awaitable[None]]] = None,
    ) -> LifecycleResult:
        """
        Apply a gateway event under the tenant lock.

        A transition the state machine refuses (out-of-order delivery) is
        committed as an `ignored` no-op. `before_commit` receives the result
        and runs inside the same transaction.
        """
        holder: dict[str, LifecycleResult] = {}

        async def hook() -> None:
            if before_commit is not None:
                await before_commit(holder["result"])

        async with self._locked(tenant_id, before_commit=hook) as sub:
            if sub is None:
                if isinstance(event, SubscriptionCreated):
                    holder["result"] = await self._create_from_gateway(tenant_id, event)
                else:
                    holder["result"] = LifecycleResult(
                        subscription=None,
                        outcome="ignored",
                        detail="no_subscription",
                    )
            else:
                try:
                    holder["result"] = await self._route_event(sub, event)
                except ConflictError as exc:
                    # Transitions are validated before any attribute is written.
                    logger.info(
                        "gateway_event_out_of_order",
                        tenant_id=str(tenant_id),
                        event_id=event.event_id,
                        event_type=event.event_type,
                        reason=exc.message,
                    )
                    holder["result"] = LifecycleResult(
                        subscription=sub, outcome="ignored", detail=exc.message
                    )
        return holder["result"]

    async def _route_event(
        self, sub: TenantSubscription, event: TenantScopedEvent
    ) -> LifecycleResult:
        if isinstance(event, PaymentSucceeded):
            return await self._on_payment_succeeded(sub, event)
        if isinstance(event, PaymentFailed):
            return await self._on_payment_failed(sub, event)
        if isinstance(event, (SubscriptionCreated, SubscriptionUpdated)):
            return await self._on_subscription_sync(sub, event)
        if isinstance(event, SubscriptionDeleted):
            return await self._on_subscription_deleted(sub, event)
        return LifecycleResult(subscription=sub, outcome="ignored", detail="unhandled_event")

    def _link_refs(self, sub: TenantSubscription, event: TenantScopedEvent) -> None:
        if event.customer_ref and not sub.gateway_customer_id:
            sub.gateway_customer_id = event.customer_ref
        if event.subscription_ref and not sub.gateway_subscription_id:
            sub.gateway_subscription_id = event.subscription_ref

    def _is_stale(self, sub: TenantSubscription, event: TenantScopedEvent) -> bool:
        return bool(
            event.created
            and sub.last_gateway_event_at
            and event.created < sub.last_gateway_event_at
        )

    def _mark_seen(self, sub: TenantSubscription, event: TenantScopedEvent) -> None:
        if event.created and (
            sub.last_gateway_event_at is None or event.created > sub.last_gateway_event_at
        ):
            sub.last_gateway_event_at = event.created

    async def _create_from_gateway(
        self, tenant_id: UUID, event: SubscriptionCreated
    ) -> LifecycleResult:
        plan = event.plan or PricingTier.STARTER
        status = (
            SubscriptionStatus.TRIAL
            if event.gateway_status == "trialing"
            else SubscriptionStatus.ACTIVE
        )
        sub = TenantSubscription(
            tenant_id=tenant_id,
            plan=plan.value,
            status=status.value,
            gateway_customer_id=event.customer_ref,
            gateway_subscription_id=event.subscription_ref,
            current_period_start=event.current_period_start,
            current_period_end=event.current_period_end,
            trial_ends_at=event.trial_end,
            cancel_at_period_end=False,
            dunning_attempts=0,
            last_gateway_event_at=event.created,
        )
        self.db.add(sub)
        await self.db.flush()
        change = self._record(
            sub, "created", source="webhook", actor=SYSTEM_WEBHOOK_ACTOR, from_status="none"
        )
        await self._audit(
            sub,
            AuditEventType.BILLING_SUBSCRIPTION_CREATED,
            SYSTEM_WEBHOOK_ACTOR,
            {"plan": plan.value, "gateway_subscription_id": event.subscription_ref},
            event.event_id,
        )
        return LifecycleResult(subscription=sub, change=change)

    async def _on_payment_succeeded(
        self, sub: TenantSubscription, event: PaymentSucceeded
    ) -> LifecycleResult:
        # invoice.paid and invoice.payment_succeeded both arrive for one payment.
        if await self._invoice_applied(sub, event.invoice_ref):
            logger.info(
                "invoice_payment_already_applied",
                tenant_id=str(sub.tenant_id),
                invoice=event.invoice_ref,
                event_id=event.event_id,
            )
            return LifecycleResult(
                subscription=sub, outcome="ignored", detail="invoice_already_applied"
            )
        previous = self._transition(sub, LifecycleEvent.PAYMENT_SUCCEEDED)
        self._link_refs(sub, event)
        sub.dunning_attempts = 0
        sub.last_payment_at = event.created or utcnow()
        if event.period_start and event.period_end:
            sub.current_period_start = event.period_start
            sub.current_period_end = event.period_end
        if previous == SubscriptionStatus.TRIAL.value:
            sub.trial_ends_at = None
        self._mark_seen(sub, event)
        change = self._record(
            sub,
            "payment_succeeded",
            source="webhook",
            actor=SYSTEM_WEBHOOK_ACTOR,
            from_status=previous,
            gateway_reference=event.invoice_ref,
        )
        await self._audit(
            sub,
            AuditEventType.BILLING_PAYMENT_RECEIVED,
            SYSTEM_WEBHOOK_ACTOR,
            {
                "invoice": event.invoice_ref,
                "amount_minor": event.amount_minor,
                "currency": event.currency,
            },
            event.event_id,
        )
        return LifecycleResult(subscription=sub, change=change)

    async def _invoice_applied(self, sub: TenantSubscription, invoice_ref: str) -> bool:
        result = await self.db.execute(
            select(SubscriptionChange.id)
            .where(
                SubscriptionChange.tenant_id == sub.tenant_id,
                SubscriptionChange.change_type == "payment_succeeded",
                SubscriptionChange.gateway_reference == invoice_ref,
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def _on_payment_failed(
        self, sub: TenantSubscription, event: PaymentFailed
    ) -> LifecycleResult:
        previous = self._transition(sub, LifecycleEvent.PAYMENT_FAILED)
        self._link_refs(sub, event)
        sub.dunning_attempts = int(sub.dunning_attempts or 0) + 1
        sub.last_payment_failed_at = event.created or utcnow()
        self._mark_seen(sub, event)
        change = self._record(
            sub,
            "payment_failed",
            source="webhook",
            actor=SYSTEM_WEBHOOK_ACTOR,
            from_status=previous,
            gateway_reference=event.invoice_ref,
        )
        await self._audit(
            sub,
            AuditEventType.BILLING_PAYMENT_FAILED,
            SYSTEM_WEBHOOK_ACTOR,
            {
                "invoice": event.invoice_ref,
                "amount_minor": event.amount_minor,
                "dunning_attempts": sub.dunning_attempts,
            },
            event.event_id,
        )

        if not self.dunning.is_exhausted(sub, _underlying_status(sub)):
            logger.warning(
                "subscription_payment_failed",
                tenant_id=str(sub.tenant_id),
                dunning_attempts=sub.dunning_attempts,
                remaining=self.dunning.remaining_attempts(sub),
            )
            return LifecycleResult(subscription=sub, change=change)

        if sub.gateway_subscription_id:
            await self.gateway.cancel_subscription(
                sub.gateway_subscription_id,
                at_period_end=False,
                idempotency_key=idempotency_key(
                    "dunning_cancel", sub.tenant_id, sub.gateway_subscription_id
                ),
            )
        before_cancel = self._transition(sub, LifecycleEvent.DUNNING_EXHAUSTED)
        sub.cancellation_reason = CancellationReason.PAYMENT_FAILURE.value
        sub.canceled_at = utcnow()
        sub.cancel_at_period_end = False
        change = self._record(
            sub,
            "dunning_exhausted",
            source="webhook",
            actor=SYSTEM_WEBHOOK_ACTOR,
            from_status=before_cancel,
            reason=CancellationReason.PAYMENT_FAILURE.value,
        )
        await self._audit(
            sub,
            AuditEventType.BILLING_DUNNING_EXHAUSTED,
            SYSTEM_WEBHOOK_ACTOR,
            {"dunning_attempts": sub.dunning_attempts},
            event.event_id,
        )
        logger.warning(
            "subscription_dunning_exhausted",
            tenant_id=str(sub.tenant_id),
            dunning_attempts=sub.dunning_attempts,
        )
        return LifecycleResult(subscription=sub, change=change, extra={"dunning_exhausted": True})

    async def _on_subscription_sync(
        self,
        sub: TenantSubscription,
        event: SubscriptionCreated | SubscriptionUpdated,
    ) -> LifecycleResult:
        if self._is_stale(sub, event):
            logger.info(
                "gateway_event_stale",
                tenant_id=str(sub.tenant_id),
                event_id=event.event_id,
                event_created=event.created.isoformat() if event.created else None,
            )
            return LifecycleResult(subscription=sub, outcome="ignored", detail="stale_event")

        self._link_refs(sub, event)
        if event.current_period_start:
            sub.current_period_start = event.current_period_start
        if event.current_period_end:
            sub.current_period_end = event.current_period_end
        if event.trial_end:
            sub.trial_ends_at = event.trial_end
        if isinstance(event, SubscriptionUpdated):
            sub.cancel_at_period_end = event.cancel_at_period_end

        from_plan = sub.plan
        plan_synced = (
            event.plan is not None
            and event.plan.value != sub.plan
            and _underlying_status(sub) in {s.value for s in PLAN_CHANGE_STATUSES}
        )
        if plan_synced and event.plan is not None:
            sub.plan = event.plan.value
        self._mark_seen(sub, event)

        change = self._record(
            sub,
            "plan_synced" if plan_synced else "synced",
            source="webhook",
            actor=SYSTEM_WEBHOOK_ACTOR,
            from_status=sub.status,
            from_plan=from_plan,
            gateway_reference=event.subscription_ref,
        )
        await self._audit(
            sub,
            AuditEventType.BILLING_SUBSCRIPTION_SYNCED,
            SYSTEM_WEBHOOK_ACTOR,
            {
                "gateway_status": event.gateway_status,
                "plan": sub.plan,
                "cancel_at_period_end": bool(sub.cancel_at_period_end),
            },
            event.event_id,
        )
        return LifecycleResult(subscription=sub, change=change)

    async def _on_subscription_deleted(
        self, sub: TenantSubscription, event: SubscriptionDeleted
    ) -> LifecycleResult:
        previous = self._transition(sub, LifecycleEvent.PERIOD_ENDED)
        sub.cancel_at_period_end = False
        sub.canceled_at = event.ended_at or event.created or utcnow()
        self._mark_seen(sub, event)
        change = self._record(
            sub,
            "period_ended",
            source="webhook",
            actor=SYSTEM_WEBHOOK_ACTOR,
            from_status=previous,
            reason=sub.cancellation_reason,
            gateway_reference=event.subscription_ref,
        )
        await self._audit(
            sub,
            AuditEventType.BILLING_SUBSCRIPTION_CANCELED,
            SYSTEM_WEBHOOK_ACTOR,
            {"from_status": previous, "gateway_deleted": True},
            event.event_id,
        )
        return LifecycleResult(subscription=sub, change=change)

    # ------------------------------------------------------------------ sweep

    async def finalize_period_end_cancellations(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> int:
        """Cancel subscriptions whose scheduled cancellation date has passed."""
        as_of = now or utcnow()
        batch = limit or get_settings().BILLING_SWEEP_BATCH_SIZE
        due = (
            await self.db.execute(
                select(TenantSubscription.tenant_id)
                .where(
                    TenantSubscription.cancel_at_period_end.is_(True),
                    TenantSubscription.current_period_end <= as_of,
                    TenantSubscription.status != SubscriptionStatus.CANCELED.value,
                )
                .limit(batch)
            )
        ).scalars().all()
        await self.db.rollback()

        finalized = 0
        for tenant_id in due:
            try:
                async with self.locked(tenant_id) as sub:
                    if not sub.cancel_at_period_end or (
                        sub.current_period_end and sub.current_period_end > as_of
                    ):
                        continue
                    previous = self._transition(sub, LifecycleEvent.PERIOD_ENDED)
                    sub.cancel_at_period_end = False
                    sub.canceled_at = as_of
                    self._record(
                        sub,
                        "period_ended",
                        source="sweep",
                        actor=SYSTEM_SWEEP_ACTOR,
                        from_status=previous,
                        reason=sub.cancellation_reason,
                    )
                    await self._audit(
                        sub,
                        AuditEventType.BILLING_SUBSCRIPTION_CANCELED,
                        SYSTEM_SWEEP_ACTOR,
                        {"from_status": previous, "scheduled": True},
                    )
                    finalized += 1
            except ConflictError as exc:
                logger.warning(
                    "period_end_cancellation_skipped",
                    tenant_id=str(tenant_id),
                    reason=exc.message,
                )
        if finalized:
            logger.info("period_end_cancellations_finalized", count=finalized)
        return finalized
