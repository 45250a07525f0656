from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    Text,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.models._types import UTCDateTime, utcnow
from app.shared.db.base import Base


class RefundStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RefundType(str, Enum):
    """How the refunded amount is determined."""

    FULL = "full"  # whatever is still refundable on the charge
    PARTIAL = "partial"  # an explicit amount
    PRORATED = "prorated"  # unused share of the current billing period


class RefundReason(str, Enum):
    """Closed set of reasons accepted for a refund."""

    REQUESTED_BY_CUSTOMER = "requested_by_customer"
    DUPLICATE_PAYMENT = "duplicate_payment"
    FRAUDULENT = "fraudulent"
    SERVICE_NOT_PROVIDED = "service_not_provided"
    TECHNICAL_ISSUE = "technical_issue"
    BILLING_ERROR = "billing_error"
    OTHER = "other"


class Refund(Base):
    __tablename__ = "refunds"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(
        PG_UUID(), ForeignKey("tenants.id", ondelete="RESTRICT"), nullable=False
    )
    charge_reference: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    refund_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RefundType.PARTIAL.value
    )
    reason: Mapped[str] = mapped_column(String(40), nullable=False)
    reason_details: Mapped[Optional[str]] = mapped_column(Text)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RefundStatus.PENDING.value
    )
    gateway_refund_id: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    requested_by: Mapped[str] = mapped_column(String(255), nullable=False)

    cancel_subscription: Mapped[bool] = mapped_column(Boolean, default=False)
    subscription_canceled: Mapped[bool] = mapped_column(Boolean, default=False)

    error_code: Mapped[Optional[str]] = mapped_column(String(100))
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="refund_amount_positive"),
        Index("ix_refunds_tenant_created", "tenant_id", "created_at"),
    )


class RefundHistory(Base):
    """Append-only status trail for a refund."""

    __tablename__ = "refund_history"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    refund_id: Mapped[UUID] = mapped_column(
        PG_UUID(), ForeignKey("refunds.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(20))
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)
    actor: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
