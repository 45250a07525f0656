"""
Gateway webhook dispatcher.

Pipeline for one delivery:

    verify signature -> parse envelope -> reserve event id -> parse variant
    -> resolve tenant -> route -> record outcome

The HTTP status tells the gateway whether to redeliver: 200 for anything that
must not be retried (including permanent failures, which stay visible to
operators), 400/401 for requests that will never succeed, 500 when a retry
is wanted.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.webhook_event import WebhookEventStatus
from app.modules.governance.domain.security.audit_log import AuditEventType, AuditLogger
from app.shared.core.exceptions import (
    ConflictError,
    GatewayError,
    ParleyException,
    ResourceNotFoundError,
    TransientInfraError,
    ValidationError,
)
from app.shared.core.ops_metrics import (
    WEBHOOK_EVENTS_TOTAL,
    WEBHOOK_PROCESSING_DURATION,
    WEBHOOK_RETRY_BACKLOG,
)

from .events import (
    BillingEvent,
    ChargeRefunded,
    TenantScopedEvent,
    TrialWillEnd,
    UnrecognizedEvent,
    parse_envelope,
    parse_event,
)
from .gateway_client import GatewayClient
from .gateway_shared import get_settings, logger
from .idempotency_store import IdempotencyStore
from .lifecycle import LifecycleResult, SubscriptionLifecycle
from .refund_manager import RefundManager
from .signature import verify_signature
from .tenant_directory import TenantDirectory

HTTP_STATUS_BY_OUTCOME: dict[str, int] = {
    "processed": 200,
    "ignored": 200,
    "duplicate": 200,
    "in_flight": 200,
    "failed_permanently": 200,
    "invalid_payload": 400,
    "invalid_signature": 401,
    "retry_scheduled": 500,
}


@dataclass(frozen=True)
class WebhookOutcome:
    status: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    detail: Optional[str] = None
    result: dict[str, Any] = field(default_factory=dict)

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_OUTCOME[self.status]

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {"status": self.status}
        if self.event_id:
            body["event_id"] = self.event_id
        if self.detail:
            body["detail"] = self.detail
        return body


def _summarize(result: LifecycleResult) -> dict[str, Any]:
    sub = result.subscription
    return {
        "outcome": result.outcome,
        "detail": result.detail,
        "tenant_id": str(sub.tenant_id) if sub is not None else None,
        "status": sub.status if sub is not None else None,
        "plan": sub.plan if sub is not None else None,
        "change_id": str(result.change.id) if result.change is not None else None,
    }


class WebhookDispatcher:
    def __init__(
        self,
        db: AsyncSession,
        lifecycle: Optional[SubscriptionLifecycle] = None,
        refunds: Optional[RefundManager] = None,
        secret: Optional[str] = None,
        gateway: Optional[GatewayClient] = None,
    ):
        self.db = db
        self.settings = get_settings()
        self.secret = secret if secret is not None else self.settings.GATEWAY_WEBHOOK_SECRET
        self.store = IdempotencyStore(db)
        self.directory = TenantDirectory(db)
        self.lifecycle = lifecycle or SubscriptionLifecycle(db, gateway=gateway)
        self.refunds = refunds or RefundManager(db, gateway=gateway, lifecycle=self.lifecycle)

    @property
    def max_attempts(self) -> int:
        return self.settings.WEBHOOK_MAX_ATTEMPTS

    @property
    def manual_max_attempts(self) -> int:
        return self.settings.WEBHOOK_MAX_ATTEMPTS + self.settings.WEBHOOK_MANUAL_RETRY_ALLOWANCE

    # ------------------------------------------------------------------ intake

    async def handle(
        self, raw_body: bytes, signature_header: Optional[str]
    ) -> WebhookOutcome:
        started = time.perf_counter()
        outcome = await self._handle(raw_body, signature_header)
        event_type = outcome.event_type or "unknown"
        WEBHOOK_EVENTS_TOTAL.labels(event_type=event_type, outcome=outcome.status).inc()
        WEBHOOK_PROCESSING_DURATION.labels(event_type=event_type).observe(
            time.perf_counter() - started
        )
        return outcome

    async def _handle(
        self, raw_body: bytes, signature_header: Optional[str]
    ) -> WebhookOutcome:
        if not self.secret:
            logger.error("webhook_secret_not_configured")
        if not verify_signature(
            raw_body,
            signature_header,
            self.secret,
            tolerance_seconds=self.settings.WEBHOOK_SIGNATURE_TOLERANCE_SECONDS,
        ):
            return WebhookOutcome(status="invalid_signature", detail="signature verification failed")

        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("webhook_body_not_utf8")
            return WebhookOutcome(status="invalid_payload", detail="Webhook body is not UTF-8")
        try:
            envelope = parse_envelope(payload)
        except ValidationError as exc:
            logger.warning("webhook_envelope_invalid", error=exc.message)
            return WebhookOutcome(status="invalid_payload", detail=exc.message)

        reservation = await self.store.reserve(
            envelope.event_id,
            envelope.event_type,
            payload,
            max_attempts=self.max_attempts,
        )
        record = reservation.record
        if reservation.already_processed:
            logger.info("webhook_duplicate_ignored", event_id=envelope.event_id)
            return WebhookOutcome(
                status="duplicate",
                event_id=envelope.event_id,
                event_type=envelope.event_type,
                result=dict(record.result or {}),
            )
        if reservation.already_in_flight:
            logger.info("webhook_already_in_flight", event_id=envelope.event_id)
            return WebhookOutcome(
                status="in_flight", event_id=envelope.event_id, event_type=envelope.event_type
            )
        if reservation.permanently_failed:
            logger.warning(
                "webhook_redelivery_of_failed_event",
                event_id=envelope.event_id,
                attempts=record.attempts,
            )
            return WebhookOutcome(
                status="failed_permanently",
                event_id=envelope.event_id,
                event_type=envelope.event_type,
                detail=record.last_error,
            )

        return await self._process(
            envelope.event_id, envelope.event_type, record.payload, self.max_attempts
        )

    # ------------------------------------------------------------------ processing

    async def _process(
        self, event_id: str, event_type: str, payload: str, max_attempts: int
    ) -> WebhookOutcome:
        """Run a claimed event from its stored payload and record the outcome."""
        try:
            event = parse_event(parse_envelope(payload))
        except ValidationError as exc:
            return await self._reject_payload(event_id, event_type, exc.message, max_attempts)
        except Exception as exc:
            # A payload that cannot be read will never succeed on redelivery.
            logger.exception("webhook_payload_unreadable", event_id=event_id)
            return await self._reject_payload(
                event_id, event_type, f"{type(exc).__name__}: {exc}", max_attempts
            )

        try:
            return await self._route(event)
        except (GatewayError, TransientInfraError) as exc:
            return await self._fail(event_id, event_type, exc, exc.retryable, max_attempts)
        except ParleyException as exc:
            return await self._fail(event_id, event_type, exc, False, max_attempts)
        except Exception as exc:
            logger.exception("webhook_processing_crashed", event_id=event_id, event_type=event_type)
            await self.db.rollback()
            return await self._fail(event_id, event_type, exc, True, max_attempts)

    async def _reject_payload(
        self, event_id: str, event_type: str, message: str, max_attempts: int
    ) -> WebhookOutcome:
        await self.store.mark_failed(event_id, message, retryable=False, max_attempts=max_attempts)
        logger.warning("webhook_payload_invalid", event_id=event_id, error=message)
        return WebhookOutcome(
            status="invalid_payload", event_id=event_id, event_type=event_type, detail=message
        )

    async def _fail(
        self,
        event_id: str,
        event_type: str,
        exc: Exception,
        retryable: bool,
        max_attempts: int,
    ) -> WebhookOutcome:
        message = exc.message if isinstance(exc, ParleyException) else f"{type(exc).__name__}: {exc}"
        record = await self.store.mark_failed(
            event_id, message, retryable=retryable, max_attempts=max_attempts
        )
        status = "retry_scheduled" if record.next_retry_at is not None else "failed_permanently"
        return WebhookOutcome(status=status, event_id=event_id, event_type=event_type, detail=message)

    async def _complete(
        self, event: BillingEvent, status: str, detail: Optional[str] = None, **result: Any
    ) -> WebhookOutcome:
        payload = {"outcome": status, "detail": detail, **result}
        await self.store.mark_completed(event.event_id, payload)
        logger.info(
            "webhook_event_completed",
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=status,
            detail=detail,
        )
        return WebhookOutcome(
            status=status,
            event_id=event.event_id,
            event_type=event.event_type,
            detail=detail,
            result=payload,
        )

    async def resolve_tenant(self, event: TenantScopedEvent) -> Optional[UUID]:
        if event.tenant_hint is not None:
            return event.tenant_hint if await self.directory.exists(event.tenant_hint) else None
        if event.subscription_ref:
            tenant_id = await self.directory.find_by_gateway_subscription(event.subscription_ref)
            if tenant_id is not None:
                return tenant_id
        if event.customer_ref:
            return await self.directory.find_by_gateway_customer(event.customer_ref)
        return None

    async def _route(self, event: BillingEvent) -> WebhookOutcome:
        if isinstance(event, UnrecognizedEvent):
            return await self._complete(event, "ignored", "unrecognized_event_type")

        tenant_id = await self.resolve_tenant(event)
        if tenant_id is None:
            logger.warning(
                "webhook_tenant_unresolved",
                event_id=event.event_id,
                event_type=event.event_type,
                subscription_ref=event.subscription_ref,
                customer_ref=event.customer_ref,
            )
            return await self._complete(event, "ignored", "unknown_tenant")

        if isinstance(event, TrialWillEnd):
            logger.info(
                "subscription_trial_will_end",
                tenant_id=str(tenant_id),
                trial_end=event.trial_end.isoformat() if event.trial_end else None,
            )
            return await self._complete(event, "processed", "trial_will_end", tenant_id=str(tenant_id))

        if isinstance(event, ChargeRefunded):
            confirmed = await self.refunds.reconcile_gateway_refund(event, tenant_id=tenant_id)
            return await self._complete(
                event, "processed", "refund_reconciled", tenant_id=str(tenant_id), confirmed=confirmed
            )

        async def record_completion(result: LifecycleResult) -> None:
            await self.store.mark_completed(event.event_id, _summarize(result), commit=False)

        result = await self.lifecycle.apply_gateway_event(
            tenant_id, event, before_commit=record_completion
        )
        logger.info(
            "webhook_event_completed",
            event_id=event.event_id,
            event_type=event.event_type,
            tenant_id=str(tenant_id),
            outcome=result.outcome,
            detail=result.detail,
        )
        return WebhookOutcome(
            status=result.outcome,
            event_id=event.event_id,
            event_type=event.event_type,
            detail=result.detail,
            result=_summarize(result),
        )

    # ------------------------------------------------------------------ retries

    async def retry_due(self, limit: Optional[int] = None) -> dict[str, int]:
        """Expire stale leases, then re-run every failed event that is due."""
        expired = await self.store.expire_stale_processing(
            self.settings.WEBHOOK_PROCESSING_LEASE_SECONDS, max_attempts=self.max_attempts
        )
        due = await self.store.due_for_retry(
            self.max_attempts, limit=limit or self.settings.WEBHOOK_RETRY_BATCH_SIZE
        )
        WEBHOOK_RETRY_BACKLOG.set(len(due))

        summary = {"expired": expired, "due": len(due), "completed": 0, "failed": 0, "skipped": 0}
        for event_id in due:
            if not await self.store.claim_for_retry(event_id, self.max_attempts):
                summary["skipped"] += 1
                continue
            record = await self.store.get(event_id)
            if record is None:
                summary["skipped"] += 1
                continue
            try:
                outcome = await self._process(
                    record.event_id, record.event_type, record.payload, self.max_attempts
                )
            except Exception:
                # One broken event must not starve the rest of the batch.
                logger.exception("webhook_retry_crashed", event_id=event_id)
                await self.db.rollback()
                summary["failed"] += 1
                continue
            WEBHOOK_EVENTS_TOTAL.labels(event_type=record.event_type, outcome=outcome.status).inc()
            if outcome.status in ("processed", "ignored"):
                summary["completed"] += 1
            else:
                summary["failed"] += 1

        logger.info("webhook_retry_sweep_finished", **summary)
        return summary

    async def manual_retry(self, event_id: str, actor: str) -> WebhookOutcome:
        record = await self.store.get(event_id)
        if record is None:
            raise ResourceNotFoundError(f"Webhook event {event_id} not found", code="webhook_event_not_found")

        if record.status == WebhookEventStatus.COMPLETED.value:
            return WebhookOutcome(
                status="duplicate",
                event_id=event_id,
                event_type=record.event_type,
                detail="already_completed",
                result=dict(record.result or {}),
            )
        if record.status != WebhookEventStatus.FAILED.value:
            raise ConflictError(
                f"Webhook event {event_id} is {record.status}", code="webhook_in_flight"
            )
        if record.attempts >= self.manual_max_attempts:
            raise ConflictError(
                f"Webhook event {event_id} reached the retry limit",
                code="retry_limit_reached",
                details={"attempts": record.attempts, "limit": self.manual_max_attempts},
            )
        if not await self.store.claim_for_retry(event_id, self.manual_max_attempts, manual=True):
            raise ConflictError(
                f"Webhook event {event_id} was claimed by another worker", code="webhook_in_flight"
            )

        logger.info("webhook_manual_retry", event_id=event_id, actor=actor, attempts=record.attempts)
        # Rescheduling follows the automatic bound; past it only an operator retries.
        outcome = await self._process(
            record.event_id, record.event_type, record.payload, self.max_attempts
        )
        await self._audit_manual_retry(record.payload, event_id, actor, outcome)
        return outcome

    async def _audit_manual_retry(
        self, payload: str, event_id: str, actor: str, outcome: WebhookOutcome
    ) -> None:
        tenant_id: Optional[UUID] = None
        raw_tenant = outcome.result.get("tenant_id") if outcome.result else None
        if raw_tenant:
            tenant_id = UUID(raw_tenant)
        else:
            try:
                event = parse_event(parse_envelope(payload))
            except ValidationError:
                event = None
            if isinstance(event, TenantScopedEvent):
                tenant_id = await self.resolve_tenant(event)
        if tenant_id is None:
            # audit_logs rows are tenant scoped; unattributable retries are logged only.
            logger.info("webhook_manual_retry_unattributed", event_id=event_id, actor=actor)
            return

        await AuditLogger(self.db, tenant_id, event_id).log(
            event_type=AuditEventType.BILLING_WEBHOOK_MANUAL_RETRY,
            actor_id=actor,
            resource_type="webhook_event",
            resource_id=event_id,
            details={"outcome": outcome.status, "detail": outcome.detail},
            success=outcome.status in ("processed", "ignored", "duplicate"),
        )
        await self.db.commit()
