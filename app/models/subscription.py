from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.models._types import JSONType, UTCDateTime, utcnow
from app.shared.db.base import Base


class TenantSubscription(Base):
    """
    Canonical subscription record, one per tenant.

    `plan` and `status` are only written by the lifecycle façade. Rows are
    never deleted; cancellation is a status.
    """

    __tablename__ = "tenant_subscriptions"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(
        PG_UUID(),
        ForeignKey("tenants.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
        index=True,
    )

    plan: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    # Gateway references
    gateway_customer_id: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    gateway_subscription_id: Mapped[Optional[str]] = mapped_column(
        String(255), index=True
    )

    # Billing period
    current_period_start: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    current_period_end: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    trial_ends_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    # Cancellation
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(50))
    cancellation_feedback: Mapped[Optional[str]] = mapped_column(Text)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    # Administrative suspension
    suspended_from_status: Mapped[Optional[str]] = mapped_column(String(20))
    suspension_reason: Mapped[Optional[str]] = mapped_column(Text)

    # Dunning
    dunning_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_payment_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    last_payment_failed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    # Newest gateway event applied, for discarding stale out-of-order syncs
    last_gateway_event_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow
    )

    __mapper_args__ = {"version_id_col": version}


class SubscriptionChange(Base):
    """
    Append-only log of committed lifecycle mutations.

    Plan changes carry their proration result here, written in the same
    transaction as the subscription row.
    """

    __tablename__ = "subscription_changes"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(
        PG_UUID(), ForeignKey("tenants.id", ondelete="RESTRICT"), nullable=False
    )
    subscription_id: Mapped[UUID] = mapped_column(
        PG_UUID(), ForeignKey("tenant_subscriptions.id", ondelete="RESTRICT"), nullable=False
    )
    change_type: Mapped[str] = mapped_column(String(40), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    actor: Mapped[Optional[str]] = mapped_column(String(255))
    reason: Mapped[Optional[str]] = mapped_column(Text)

    from_plan: Mapped[Optional[str]] = mapped_column(String(32))
    to_plan: Mapped[Optional[str]] = mapped_column(String(32))
    from_status: Mapped[Optional[str]] = mapped_column(String(20))
    to_status: Mapped[Optional[str]] = mapped_column(String(20))

    proration_amount_minor: Mapped[Optional[int]] = mapped_column(BigInteger)
    proration_currency: Mapped[Optional[str]] = mapped_column(String(3))
    proration_basis: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType)

    gateway_reference: Mapped[Optional[str]] = mapped_column(String(255))
    effective_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    __table_args__ = (
        Index("ix_subscription_changes_tenant_created", "tenant_id", "created_at"),
    )
