"""
Billing API Endpoints

Provides:
- POST /billing/webhook - Gateway webhook intake (signature verified, idempotent)
- GET  /billing/subscription - Current subscription of the caller's tenant
- GET  /billing/subscription/history - Lifecycle change log
- POST /billing/admin/tenants/{tenant_id}/... - Operator lifecycle operations
- /billing/admin/refunds - Refunds and refund statistics
- /billing/admin/webhooks - Webhook ledger and manual replay
"""

from datetime import datetime
from typing import Annotated, Any, List, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.refund import RefundStatus
from app.models.webhook_event import WebhookEventStatus
from app.modules.billing.api.v1.billing_models import (
    CancelRequest,
    LifecycleResponse,
    PlanChangeRequest,
    RefundDetailResponse,
    RefundHistoryResponse,
    RefundRequest,
    RefundResponse,
    RefundResultResponse,
    RefundStatisticsResponse,
    SubscriptionChangeResponse,
    SubscriptionResponse,
    SuspendRequest,
    WebhookEventResponse,
    WebhookRetryResponse,
)
from app.modules.billing.api.v1.billing_ops import lifecycle_response, process_gateway_webhook
from app.modules.billing.domain.billing.idempotency_store import IdempotencyStore
from app.modules.billing.domain.billing.lifecycle import SubscriptionLifecycle
from app.modules.billing.domain.billing.refund_manager import RefundManager
from app.modules.billing.domain.billing.webhook_dispatcher import WebhookDispatcher
from app.shared.core.auth import CurrentUser, require_tenant_access, requires_role
from app.shared.core.rate_limit import admin_limit, read_limit
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["Billing"])

AdminUser = Annotated[CurrentUser, Depends(requires_role("admin"))]
OwnerUser = Annotated[CurrentUser, Depends(requires_role("owner"))]


@router.post("/webhook")
async def handle_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> Any:
    """
    Gateway webhook intake.

    200 acknowledges (processed, duplicate, ignored or permanently failed),
    400/401 reject, 500 asks the gateway to redeliver.
    """
    return await process_gateway_webhook(request, db, logger=logger)


# ==================== Tenant Endpoints ====================


@router.get("/subscription", response_model=SubscriptionResponse)
@read_limit
async def get_subscription(
    request: Request,
    tenant_id: Annotated[UUID, Depends(require_tenant_access)],
    db: AsyncSession = Depends(get_db),
) -> SubscriptionResponse:
    """Get current subscription status for tenant."""
    sub = await SubscriptionLifecycle(db).get_subscription(tenant_id)
    return SubscriptionResponse.model_validate(sub)


@router.get("/subscription/history", response_model=List[SubscriptionChangeResponse])
@read_limit
async def get_subscription_history(
    request: Request,
    tenant_id: Annotated[UUID, Depends(require_tenant_access)],
    db: AsyncSession = Depends(get_db),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> List[SubscriptionChangeResponse]:
    changes = await SubscriptionLifecycle(db).history(tenant_id, limit=limit, offset=offset)
    return [SubscriptionChangeResponse.model_validate(change) for change in changes]


# ==================== Admin: Lifecycle ====================


@router.post("/admin/tenants/{tenant_id}/upgrade", response_model=LifecycleResponse)
@admin_limit
async def upgrade_subscription(
    request: Request,
    tenant_id: UUID,
    body: PlanChangeRequest,
    user: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> LifecycleResponse:
    result = await SubscriptionLifecycle(db).change_plan(
        tenant_id, body.plan, user.actor, "upgrade"
    )
    return lifecycle_response(result)


@router.post("/admin/tenants/{tenant_id}/downgrade", response_model=LifecycleResponse)
@admin_limit
async def downgrade_subscription(
    request: Request,
    tenant_id: UUID,
    body: PlanChangeRequest,
    user: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> LifecycleResponse:
    result = await SubscriptionLifecycle(db).change_plan(
        tenant_id, body.plan, user.actor, "downgrade"
    )
    return lifecycle_response(result)


@router.post("/admin/tenants/{tenant_id}/cancel", response_model=LifecycleResponse)
@admin_limit
async def cancel_subscription(
    request: Request,
    tenant_id: UUID,
    body: CancelRequest,
    user: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> LifecycleResponse:
    result = await SubscriptionLifecycle(db).cancel(
        tenant_id,
        user.actor,
        body.reason,
        feedback=body.feedback,
        immediate=body.immediate,
    )
    return lifecycle_response(result)


@router.post("/admin/tenants/{tenant_id}/reactivate", response_model=LifecycleResponse)
@admin_limit
async def reactivate_subscription(
    request: Request,
    tenant_id: UUID,
    user: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> LifecycleResponse:
    result = await SubscriptionLifecycle(db).reactivate(tenant_id, user.actor)
    return lifecycle_response(result)


@router.post("/admin/tenants/{tenant_id}/suspend", response_model=LifecycleResponse)
@admin_limit
async def suspend_subscription(
    request: Request,
    tenant_id: UUID,
    body: SuspendRequest,
    user: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> LifecycleResponse:
    result = await SubscriptionLifecycle(db).suspend(tenant_id, user.actor, body.reason)
    return lifecycle_response(result)


@router.post("/admin/tenants/{tenant_id}/unsuspend", response_model=LifecycleResponse)
@admin_limit
async def unsuspend_subscription(
    request: Request,
    tenant_id: UUID,
    user: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> LifecycleResponse:
    result = await SubscriptionLifecycle(db).unsuspend(tenant_id, user.actor)
    return lifecycle_response(result)


# ==================== Admin: Refunds ====================


@router.post("/admin/refunds", response_model=RefundResultResponse)
@admin_limit
async def create_refund(
    request: Request,
    body: RefundRequest,
    user: OwnerUser,
    db: AsyncSession = Depends(get_db),
) -> RefundResultResponse:
    outcome = await RefundManager(db).process_refund(
        body.tenant_id,
        body.charge_reference,
        body.amount_minor,
        body.currency,
        body.reason,
        user.actor,
        refund_type=body.refund_type,
        reason_details=body.reason_details,
        cancel_subscription=body.cancel_subscription,
    )
    return RefundResultResponse(
        refund=RefundResponse.model_validate(outcome.refund),
        subscription_canceled=outcome.subscription_canceled,
        cancellation_error=outcome.cancellation_error,
    )


@router.get("/admin/refunds", response_model=List[RefundResponse])
@read_limit
async def list_refunds(
    request: Request,
    user: AdminUser,
    db: AsyncSession = Depends(get_db),
    tenant_id: Optional[UUID] = None,
    status: Optional[RefundStatus] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> List[RefundResponse]:
    refunds = await RefundManager(db).list_refunds(
        tenant_id=tenant_id, status=status, start=start, end=end, limit=limit, offset=offset
    )
    return [RefundResponse.model_validate(refund) for refund in refunds]


@router.get("/admin/refunds/statistics", response_model=List[RefundStatisticsResponse])
@read_limit
async def refund_statistics(
    request: Request,
    user: AdminUser,
    db: AsyncSession = Depends(get_db),
    tenant_id: Optional[UUID] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[RefundStatisticsResponse]:
    rows = await RefundManager(db).refund_statistics(start=start, end=end, tenant_id=tenant_id)
    return [RefundStatisticsResponse.model_validate(row) for row in rows]


@router.get("/admin/refunds/{refund_id}", response_model=RefundDetailResponse)
@read_limit
async def get_refund(
    request: Request,
    refund_id: UUID,
    user: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> RefundDetailResponse:
    manager = RefundManager(db)
    refund = await manager.get_refund(refund_id)
    history = await manager.get_history(refund_id)
    detail = RefundDetailResponse.model_validate(refund)
    detail.history = [RefundHistoryResponse.model_validate(entry) for entry in history]
    return detail


# ==================== Admin: Webhooks ====================


@router.get("/admin/webhooks", response_model=List[WebhookEventResponse])
@read_limit
async def list_webhook_events(
    request: Request,
    user: AdminUser,
    db: AsyncSession = Depends(get_db),
    status: Optional[WebhookEventStatus] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> List[WebhookEventResponse]:
    events = await IdempotencyStore(db).list_events(status=status, limit=limit, offset=offset)
    return [WebhookEventResponse.model_validate(event) for event in events]


@router.post("/admin/webhooks/{event_id}/retry", response_model=WebhookRetryResponse)
@admin_limit
async def retry_webhook_event(
    request: Request,
    event_id: str,
    user: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> WebhookRetryResponse:
    outcome = await WebhookDispatcher(db).manual_retry(event_id, user.actor)
    return WebhookRetryResponse(
        status=outcome.status,
        event_id=outcome.event_id,
        detail=outcome.detail,
        result=outcome.result,
    )
