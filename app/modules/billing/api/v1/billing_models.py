from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.refund import RefundReason, RefundType
from app.modules.billing.domain.billing.state_machine import CancellationReason
from app.shared.core.pricing import PricingTier


class PlanChangeRequest(BaseModel):
    plan: PricingTier


class CancelRequest(BaseModel):
    reason: CancellationReason
    feedback: Optional[str] = Field(default=None, max_length=2000)
    immediate: bool = False


class SuspendRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class RefundRequest(BaseModel):
    tenant_id: UUID
    charge_reference: str = Field(min_length=1, max_length=255)
    amount_minor: Optional[int] = Field(default=None, gt=0)
    currency: str = Field(min_length=3, max_length=3)
    refund_type: RefundType = RefundType.PARTIAL
    reason: RefundReason
    reason_details: Optional[str] = Field(default=None, max_length=2000)
    cancel_subscription: bool = False


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tenant_id: UUID
    plan: str
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    cancellation_reason: Optional[str] = None
    canceled_at: Optional[datetime] = None
    suspended_from_status: Optional[str] = None
    dunning_attempts: int = 0
    last_payment_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProrationResponse(BaseModel):
    amount_minor: int
    currency: str
    basis: Dict[str, Any]


class SubscriptionChangeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    change_type: str
    source: str
    actor: Optional[str] = None
    reason: Optional[str] = None
    from_plan: Optional[str] = None
    to_plan: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    proration_amount_minor: Optional[int] = None
    proration_currency: Optional[str] = None
    effective_at: datetime
    created_at: datetime


class LifecycleResponse(BaseModel):
    subscription: SubscriptionResponse
    change: Optional[SubscriptionChangeResponse] = None
    proration: Optional[ProrationResponse] = None


class RefundHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_status: Optional[str] = None
    to_status: str
    note: Optional[str] = None
    actor: Optional[str] = None
    created_at: datetime


class RefundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    charge_reference: str
    amount_minor: int
    currency: str
    refund_type: str
    reason: str
    reason_details: Optional[str] = None
    status: str
    gateway_refund_id: Optional[str] = None
    requested_by: str
    cancel_subscription: bool
    subscription_canceled: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class RefundDetailResponse(RefundResponse):
    history: List[RefundHistoryResponse] = Field(default_factory=list)


class RefundResultResponse(BaseModel):
    refund: RefundResponse
    subscription_canceled: bool
    cancellation_error: Optional[str] = None


class RefundStatisticsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    month: str
    refund_type: str
    reason: str
    currency: str
    refund_count: int
    total_amount_minor: int
    average_amount_minor: int
    completed_count: int
    completed_amount_minor: int
    failed_count: int
    cancellations_count: int


class WebhookEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_id: str
    event_type: str
    status: str
    attempts: int
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    error_retryable: Optional[bool] = None
    received_at: datetime
    processed_at: Optional[datetime] = None


class WebhookRetryResponse(BaseModel):
    status: str
    event_id: Optional[str] = None
    detail: Optional[str] = None
    result: Dict[str, Any] = Field(default_factory=dict)
