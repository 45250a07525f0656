"""
Refund Manager - validated refunds with a complete audit trail.

Eligibility is always checked against the gateway's live view of the charge
(`retrieve_charge`), never against locally cached totals. A refund that asks
for the subscription to be canceled only cancels once the gateway has
confirmed the refund, either synchronously or through `charge.refunded`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.refund import Refund, RefundHistory, RefundReason, RefundStatus, RefundType
from app.models.subscription import TenantSubscription
from app.models.tenant import Tenant
from app.modules.governance.domain.security.audit_log import AuditEventType, AuditLogger
from app.shared.core.exceptions import (
    ConflictError,
    GatewayError,
    ParleyException,
    ResourceNotFoundError,
    ValidationError,
)
from app.shared.core.ops_metrics import REFUNDS_TOTAL

from .events import ChargeRefunded
from .gateway_client import ChargeDetails, GatewayClient
from .gateway_shared import SYSTEM_WEBHOOK_ACTOR, get_settings, logger, utcnow
from .lifecycle import SubscriptionLifecycle
from .proration import prorate_for_period
from .state_machine import CancellationReason, SubscriptionStatus

_CURRENCY_RE = re.compile(r"^[A-Za-z]{3}$")

REFUNDABLE_STATUSES = frozenset(
    {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value}
)


@dataclass
class RefundOutcome:
    refund: Refund
    subscription_canceled: bool = False
    cancellation_error: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.refund.status == RefundStatus.COMPLETED.value


@dataclass
class RefundStatistics:
    month: str
    refund_type: str
    reason: str
    currency: str
    refund_count: int = 0
    total_amount_minor: int = 0
    completed_count: int = 0
    completed_amount_minor: int = 0
    failed_count: int = 0
    cancellations_count: int = 0

    @property
    def average_amount_minor(self) -> int:
        return self.total_amount_minor // self.refund_count if self.refund_count else 0


class RefundManager:
    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[GatewayClient] = None,
        lifecycle: Optional[SubscriptionLifecycle] = None,
    ):
        self.db = db
        self._gateway = gateway
        self._lifecycle = lifecycle

    @property
    def gateway(self) -> GatewayClient:
        if self._gateway is None:
            self._gateway = GatewayClient()
        return self._gateway

    @property
    def lifecycle(self) -> SubscriptionLifecycle:
        if self._lifecycle is None:
            self._lifecycle = SubscriptionLifecycle(self.db, gateway=self._gateway)
        return self._lifecycle

    # ------------------------------------------------------------------ reads

    async def get_refund(self, refund_id: UUID) -> Refund:
        refund = await self.db.get(Refund, refund_id, populate_existing=True)
        if refund is None:
            raise ResourceNotFoundError(f"Refund {refund_id} not found", code="refund_not_found")
        return refund

    async def get_history(self, refund_id: UUID) -> list[RefundHistory]:
        result = await self.db.execute(
            select(RefundHistory)
            .where(RefundHistory.refund_id == refund_id)
            .order_by(RefundHistory.created_at, RefundHistory.id)
        )
        return list(result.scalars().all())

    async def list_refunds(
        self,
        tenant_id: Optional[UUID] = None,
        status: Optional[RefundStatus | str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Refund]:
        stmt = select(Refund).order_by(Refund.created_at.desc())
        if tenant_id is not None:
            stmt = stmt.where(Refund.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(Refund.status == RefundStatus(status).value)
        if start is not None:
            stmt = stmt.where(Refund.created_at >= start)
        if end is not None:
            stmt = stmt.where(Refund.created_at < end)
        result = await self.db.execute(stmt.limit(limit).offset(offset))
        return list(result.scalars().all())

    async def refund_statistics(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        tenant_id: Optional[UUID] = None,
    ) -> list[RefundStatistics]:
        """
        Refund counts and totals per month, refund type and reason.

        Defaults to the trailing twelve months. Months are bucketed in UTC and
        rows come back newest month first.
        """
        end = end or utcnow()
        start = start or end - timedelta(days=365)
        if start >= end:
            raise ValidationError("Statistics window start must precede its end", code="invalid_window")

        stmt = select(Refund).where(Refund.created_at >= start, Refund.created_at < end)
        if tenant_id is not None:
            stmt = stmt.where(Refund.tenant_id == tenant_id)
        refunds = (await self.db.execute(stmt)).scalars().all()

        buckets: dict[tuple[str, str, str, str], RefundStatistics] = {}
        for refund in refunds:
            key = (
                refund.created_at.strftime("%Y-%m"),
                refund.refund_type,
                refund.reason,
                refund.currency,
            )
            stats = buckets.get(key)
            if stats is None:
                stats = buckets[key] = RefundStatistics(*key)
            stats.refund_count += 1
            stats.total_amount_minor += refund.amount_minor
            if refund.status == RefundStatus.COMPLETED.value:
                stats.completed_count += 1
                stats.completed_amount_minor += refund.amount_minor
            elif refund.status == RefundStatus.FAILED.value:
                stats.failed_count += 1
            if refund.cancel_subscription:
                stats.cancellations_count += 1

        return sorted(
            buckets.values(),
            key=lambda s: (s.month, s.refund_type, s.reason, s.currency),
            reverse=True,
        )

    # ------------------------------------------------------------------ helpers

    def _history(
        self,
        refund: Refund,
        from_status: Optional[str],
        to_status: str,
        actor: Optional[str],
        note: Optional[str] = None,
    ) -> None:
        self.db.add(
            RefundHistory(
                refund_id=refund.id,
                from_status=from_status,
                to_status=to_status,
                actor=actor,
                note=note,
            )
        )

    async def _audit_failure(
        self,
        tenant_id: UUID,
        actor: str,
        error: ParleyException,
        details: dict,
        refund: Optional[Refund] = None,
    ) -> None:
        if await self.db.get(Tenant, tenant_id) is None:
            # The audit trail is keyed by tenant; there is nothing to attach it to.
            logger.warning("refund_failure_unknown_tenant", tenant_id=str(tenant_id), code=error.code)
            return
        await AuditLogger(self.db, tenant_id, str(refund.id) if refund else None).log(
            event_type=AuditEventType.BILLING_REFUND_FAILED,
            actor_id=actor,
            resource_type="refund",
            resource_id=str(refund.id) if refund else details.get("charge_reference"),
            details={**details, "error_code": error.code},
            success=False,
            error_message=error.message,
        )
        await self.db.commit()
        REFUNDS_TOTAL.labels(status="failed", reason=str(details.get("reason"))).inc()

    async def _recent_refund_count(self, tenant_id: UUID, now: datetime) -> int:
        window_start = now - timedelta(days=get_settings().REFUND_WINDOW_DAYS)
        result = await self.db.execute(
            select(func.count(Refund.id)).where(
                Refund.tenant_id == tenant_id,
                Refund.status != RefundStatus.FAILED.value,
                Refund.created_at >= window_start,
            )
        )
        return int(result.scalar_one() or 0)

    def _check_charge(
        self,
        charge: ChargeDetails,
        subscription: TenantSubscription,
        amount_minor: int,
        currency: str,
    ) -> None:
        if (
            charge.customer_ref
            and subscription.gateway_customer_id
            and charge.customer_ref != subscription.gateway_customer_id
        ):
            raise ValidationError(
                "Charge does not belong to this tenant", code="charge_not_owned"
            )
        if charge.currency != currency:
            raise ValidationError(
                f"Charge currency is {charge.currency}, not {currency}",
                code="currency_mismatch",
            )
        remaining = charge.refundable_minor
        if remaining <= 0:
            raise ValidationError("Charge is already fully refunded", code="charge_fully_refunded")
        if amount_minor > remaining:
            raise ValidationError(
                "Refund amount exceeds the charge's refundable balance",
                code="amount_exceeds_refundable",
                details={"requested_minor": amount_minor, "refundable_minor": remaining},
            )

    def _validate_request(
        self,
        charge_ref: str,
        amount_minor: Optional[int],
        currency: str,
        reason: RefundReason | str,
        refund_type: RefundType | str,
    ) -> tuple[RefundType, RefundReason]:
        try:
            type_value = RefundType(refund_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown refund type: {refund_type}", code="invalid_refund_type") from exc
        if type_value is RefundType.PARTIAL:
            if isinstance(amount_minor, bool) or not isinstance(amount_minor, int) or amount_minor <= 0:
                raise ValidationError("Refund amount must be a positive integer", code="invalid_amount")
        elif amount_minor is not None:
            raise ValidationError(
                f"A {type_value.value} refund computes its own amount",
                code="amount_not_allowed",
            )
        if not currency or not _CURRENCY_RE.match(currency):
            raise ValidationError("Currency must be a 3-letter ISO code", code="invalid_currency")
        if not charge_ref or not charge_ref.strip():
            raise ValidationError("Charge reference is required", code="invalid_charge")
        try:
            reason_value = RefundReason(reason)
        except ValueError as exc:
            raise ValidationError(f"Unknown refund reason: {reason}", code="invalid_reason") from exc
        return type_value, reason_value

    def _refund_amount(
        self,
        refund_type: RefundType,
        requested_minor: Optional[int],
        charge: ChargeDetails,
        subscription: TenantSubscription,
        now: datetime,
    ) -> int:
        if refund_type is RefundType.PARTIAL:
            return int(requested_minor or 0)
        if refund_type is RefundType.FULL:
            return charge.refundable_minor

        start, end = subscription.current_period_start, subscription.current_period_end
        if start is None or end is None or end <= start:
            raise ValidationError(
                "Subscription has no current billing period to prorate against",
                code="period_unknown",
            )
        if now >= end:
            raise ValidationError("Subscription period has already ended", code="period_ended")
        # Unused share of the charge: a zero-to-full price step over the remaining time.
        proration = prorate_for_period(0, charge.amount_minor, start, end, now, charge.currency)
        if proration.amount_minor <= 0:
            raise ValidationError("Prorated refund amount is zero", code="invalid_amount")
        return proration.amount_minor

    # ------------------------------------------------------------------ refunds

    async def process_refund(
        self,
        tenant_id: UUID,
        charge_ref: str,
        amount_minor: Optional[int],
        currency: str,
        reason: RefundReason | str,
        actor: str,
        *,
        refund_type: RefundType | str = RefundType.PARTIAL,
        reason_details: Optional[str] = None,
        cancel_subscription: bool = False,
    ) -> RefundOutcome:
        """
        Validate and issue a refund against a gateway charge.

        `full` refunds whatever the charge still has refundable, `partial`
        refunds `amount_minor`, `prorated` refunds the unused share of the
        current billing period. Every rejection is audited.
        """
        details: dict = {
            "charge_reference": charge_ref,
            "amount_minor": amount_minor,
            "currency": currency,
            "refund_type": getattr(refund_type, "value", refund_type),
            "cancel_subscription": cancel_subscription,
        }
        now = utcnow()
        try:
            type_value, reason_value = self._validate_request(
                charge_ref, amount_minor, currency, reason, refund_type
            )
            currency = currency.upper()
            charge_ref = charge_ref.strip()
            details.update(
                charge_reference=charge_ref,
                currency=currency,
                refund_type=type_value.value,
                reason=reason_value.value,
            )

            subscription = await self.lifecycle.get_subscription(tenant_id)
            if subscription.status not in REFUNDABLE_STATUSES:
                raise ConflictError(
                    f"Refunds are not available for a {subscription.status} subscription",
                    code="refund_not_eligible",
                )
            limit = get_settings().REFUND_MAX_PER_WINDOW
            if await self._recent_refund_count(tenant_id, now) >= limit:
                raise ValidationError(
                    f"At most {limit} refunds are allowed per {get_settings().REFUND_WINDOW_DAYS} days",
                    code="refund_limit_exceeded",
                )
            charge = await self.gateway.retrieve_charge(charge_ref)
            amount_minor = self._refund_amount(type_value, amount_minor, charge, subscription, now)
            details["amount_minor"] = amount_minor
            self._check_charge(charge, subscription, amount_minor, currency)
        except ParleyException as exc:
            logger.warning(
                "refund_rejected",
                tenant_id=str(tenant_id),
                charge_reference=details["charge_reference"],
                code=exc.code,
                error=exc.message,
            )
            await self._audit_failure(tenant_id, actor, exc, details)
            raise

        refund = Refund(
            tenant_id=tenant_id,
            charge_reference=charge_ref,
            amount_minor=amount_minor,
            currency=currency,
            refund_type=type_value.value,
            reason=reason_value.value,
            reason_details=reason_details,
            status=RefundStatus.PENDING.value,
            requested_by=actor,
            cancel_subscription=cancel_subscription,
            subscription_canceled=False,
        )
        self.db.add(refund)
        await self.db.flush()
        self._history(refund, None, RefundStatus.PENDING.value, actor, "refund requested")
        await self.db.commit()

        try:
            result = await self.gateway.create_refund(
                charge_ref,
                amount_minor,
                reason=reason_value.value,
                idempotency_key=f"refund:{refund.id}",
                metadata={"tenant_id": str(tenant_id), "refund_id": str(refund.id)},
            )
        except GatewayError as exc:
            refund.status = RefundStatus.FAILED.value
            refund.error_code = str(exc.details.get("gateway_code") or exc.code)
            refund.error_message = exc.message
            refund.gateway_refund_id = exc.details.get("gateway_refund_id")
            self._history(refund, RefundStatus.PENDING.value, RefundStatus.FAILED.value, actor, exc.message)
            logger.error(
                "refund_failed",
                tenant_id=str(tenant_id),
                refund_id=str(refund.id),
                code=exc.code,
                retryable=exc.retryable,
                error=exc.message,
            )
            await self._audit_failure(tenant_id, actor, exc, details, refund)
            raise

        refund.gateway_refund_id = result.reference
        if result.success:
            refund.status = RefundStatus.COMPLETED.value
            refund.completed_at = utcnow()
            self._history(
                refund, RefundStatus.PENDING.value, RefundStatus.COMPLETED.value, actor,
                "confirmed by gateway",
            )
        else:
            self._history(
                refund, RefundStatus.PENDING.value, RefundStatus.PENDING.value, actor,
                "awaiting gateway confirmation",
            )
        await AuditLogger(self.db, tenant_id, str(refund.id)).log(
            event_type=AuditEventType.BILLING_REFUND_PROCESSED,
            actor_id=actor,
            resource_type="refund",
            resource_id=str(refund.id),
            details={**details, "status": refund.status, "gateway_refund_id": result.reference},
        )
        await self.db.commit()
        REFUNDS_TOTAL.labels(status=refund.status, reason=reason_value.value).inc()
        logger.info(
            "refund_processed",
            tenant_id=str(tenant_id),
            refund_id=str(refund.id),
            status=refund.status,
            amount_minor=amount_minor,
            currency=currency,
        )

        refund_id = refund.id
        cancellation_error: Optional[str] = None
        if refund.status == RefundStatus.COMPLETED.value and cancel_subscription:
            try:
                await self._cancel_for_refund(refund, actor)
            except ParleyException as exc:
                # The refund itself stands; the cancellation is left for an operator.
                logger.error(
                    "refund_subscription_cancel_failed",
                    tenant_id=str(tenant_id),
                    refund_id=str(refund_id),
                    code=exc.code,
                    error=exc.message,
                )
                cancellation_error = exc.message

        # A rolled back cancellation expires loaded rows; read the refund fresh.
        refund = await self.get_refund(refund_id)
        return RefundOutcome(
            refund=refund,
            subscription_canceled=bool(refund.subscription_canceled),
            cancellation_error=cancellation_error,
        )

    async def _cancel_for_refund(self, refund: Refund, actor: str) -> None:
        refund_id = refund.id
        try:
            await self.lifecycle.cancel(
                refund.tenant_id,
                actor,
                CancellationReason.REFUND,
                feedback=f"refund {refund_id}",
                immediate=True,
                correlation_id=str(refund_id),
            )
            note = "subscription canceled after refund"
        except ConflictError as exc:
            if exc.code != "invalid_transition":
                raise
            note = "subscription already canceled"

        refund = await self.get_refund(refund_id)
        refund.subscription_canceled = True
        self._history(refund, refund.status, refund.status, actor, note)
        await self.db.commit()

    # ------------------------------------------------------------------ reconciliation

    async def reconcile_gateway_refund(
        self, event: ChargeRefunded, *, tenant_id: Optional[UUID] = None
    ) -> int:
        """
        Apply a `charge.refunded` notification.

        Pending refunds on the charge are confirmed; completed refunds still
        owing a subscription cancellation get it now. Safe to replay.
        """
        stmt = select(Refund).where(Refund.charge_reference == event.charge_ref)
        if tenant_id is not None:
            stmt = stmt.where(Refund.tenant_id == tenant_id)
        refunds = list((await self.db.execute(stmt)).scalars().all())

        confirmed = 0
        for refund in refunds:
            if refund.status != RefundStatus.PENDING.value:
                continue
            if event.refund_refs and refund.gateway_refund_id not in event.refund_refs:
                continue
            refund.status = RefundStatus.COMPLETED.value
            refund.completed_at = utcnow()
            self._history(
                refund,
                RefundStatus.PENDING.value,
                RefundStatus.COMPLETED.value,
                SYSTEM_WEBHOOK_ACTOR,
                f"confirmed by {event.event_type} {event.event_id}",
            )
            await AuditLogger(self.db, refund.tenant_id, event.event_id).log(
                event_type=AuditEventType.BILLING_REFUND_RECONCILED,
                actor_id=SYSTEM_WEBHOOK_ACTOR,
                resource_type="refund",
                resource_id=str(refund.id),
                details={
                    "charge_reference": event.charge_ref,
                    "amount_refunded_minor": event.amount_refunded_minor,
                },
            )
            REFUNDS_TOTAL.labels(status="completed", reason=refund.reason).inc()
            confirmed += 1
        await self.db.commit()

        owing = [
            refund.id
            for refund in refunds
            if refund.status == RefundStatus.COMPLETED.value
            and refund.cancel_subscription
            and not refund.subscription_canceled
        ]
        for refund_id in owing:
            refund = await self.get_refund(refund_id)
            await self._cancel_for_refund(refund, SYSTEM_WEBHOOK_ACTOR)

        if confirmed:
            logger.info(
                "refunds_reconciled",
                charge_reference=event.charge_ref,
                confirmed=confirmed,
                cancellations=len(owing),
            )
        return confirmed
