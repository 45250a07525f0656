"""
Append-only audit trail for billing operations.

Every subscription mutation and every refund attempt, successful or not, is
recorded here with the acting identity. Refund entries feed compliance
reporting, so callers must not treat the write as best-effort.

Key properties:
1. Append-only (no UPDATE or DELETE paths exist in code)
2. Correlation IDs link entries produced by one request or webhook
3. Sensitive keys in `details` are masked before storage
4. Actor email is encrypted at rest
"""

import inspect
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union, cast

import structlog
from sqlalchemy import ForeignKey, Index, String, Text, Uuid
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy_utils import StringEncryptedType
from sqlalchemy_utils.types.encrypted.encrypted_type import AesEngine

from app.models._encryption import get_encryption_key
from app.models._types import JSONType, UTCDateTime, utcnow
from app.shared.db.base import Base

logger = structlog.get_logger()


class AuditEventType(str, Enum):
    """Categorized audit event types for filtering and reporting."""

    # Subscription lifecycle
    BILLING_SUBSCRIPTION_CREATED = "billing.subscription_created"
    BILLING_PLAN_CHANGED = "billing.plan_changed"
    BILLING_SUBSCRIPTION_CANCELED = "billing.subscription_canceled"
    BILLING_CANCELLATION_SCHEDULED = "billing.cancellation_scheduled"
    BILLING_SUBSCRIPTION_REACTIVATED = "billing.subscription_reactivated"
    BILLING_SUBSCRIPTION_SUSPENDED = "billing.subscription_suspended"
    BILLING_SUBSCRIPTION_UNSUSPENDED = "billing.subscription_unsuspended"
    BILLING_SUBSCRIPTION_SYNCED = "billing.subscription_synced"

    # Payments
    BILLING_PAYMENT_RECEIVED = "billing.payment_received"
    BILLING_PAYMENT_FAILED = "billing.payment_failed"
    BILLING_DUNNING_EXHAUSTED = "billing.dunning_exhausted"

    # Refunds
    BILLING_REFUND_PROCESSED = "billing.refund_processed"
    BILLING_REFUND_FAILED = "billing.refund_failed"
    BILLING_REFUND_RECONCILED = "billing.refund_reconciled"

    # Operations
    BILLING_WEBHOOK_MANUAL_RETRY = "billing.webhook_manual_retry"


class AuditLog(Base):
    """Immutable audit log entry."""

    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("tenants.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    event_type: Mapped[str] = mapped_column(String(60), nullable=False, index=True)
    event_timestamp: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, nullable=False, index=True
    )

    # User id, or "system:<component>" for automated actions
    actor_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    actor_email: Mapped[Optional[str]] = mapped_column(
        StringEncryptedType(String(255), get_encryption_key, AesEngine, "pkcs5"),
        nullable=True,
    )
    actor_ip: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)

    correlation_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )

    resource_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    resource_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    success: Mapped[bool] = mapped_column(default=True, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_audit_tenant_time", "tenant_id", "event_timestamp"),
        Index("ix_audit_type_time", "event_type", "event_timestamp"),
    )


class AuditLogger:
    """
    High-level audit logging service.

    Usage:
        audit = AuditLogger(db, tenant_id, correlation_id=event_id)
        await audit.log(
            event_type=AuditEventType.BILLING_REFUND_PROCESSED,
            actor_id=str(user.id),
            resource_type="refund",
            resource_id=str(refund.id),
            details={"amount_minor": 5000, "currency": "USD"},
        )

    The entry is added and flushed; committing is the caller's transaction.
    """

    SENSITIVE_FIELDS = {
        "password",
        "token",
        "secret",
        "api_key",
        "signature",
        "card",
        "iban",
        "account_number",
    }

    def __init__(
        self,
        db: AsyncSession,
        tenant_id: Union[str, uuid.UUID],
        correlation_id: str | None = None,
    ) -> None:
        self.db = db
        self.tenant_id = (
            uuid.UUID(str(tenant_id))
            if isinstance(tenant_id, (str, bytes))
            else tenant_id
        )
        self.correlation_id = correlation_id or str(uuid.uuid4())

    async def log(
        self,
        event_type: AuditEventType,
        actor_id: uuid.UUID | str | None = None,
        actor_email: str | None = None,
        actor_ip: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        details: dict[str, Any] | None = None,
        success: bool = True,
        error_message: str | None = None,
    ) -> AuditLog:
        """Create an immutable audit log entry."""
        entry = AuditLog(
            tenant_id=self.tenant_id,
            event_type=event_type.value,
            actor_id=str(actor_id) if actor_id is not None else None,
            actor_email=actor_email,
            actor_ip=actor_ip,
            correlation_id=self.correlation_id,
            resource_type=resource_type,
            resource_id=resource_id,
            details=self._mask_sensitive(details) if details else None,
            success=success,
            error_message=error_message,
        )

        add_result = cast(Any, self.db).add(entry)
        # AsyncSession.add is sync, but AsyncMock-based tests may return awaitables.
        if inspect.isawaitable(add_result):
            await add_result
        await self.db.flush()

        logger.info(
            "audit_event",
            event_type=event_type.value,
            tenant_id=str(self.tenant_id),
            correlation_id=self.correlation_id,
            resource_type=resource_type,
            resource_id=resource_id,
            success=success,
        )
        return entry

    def _mask_sensitive(self, data: Any) -> Any:
        """Recursively mask sensitive fields in dicts and lists."""
        if isinstance(data, list):
            return [self._mask_sensitive(item) for item in data]
        if not isinstance(data, dict):
            return data

        masked = {}
        for key, value in data.items():
            if any(sensitive in str(key).lower() for sensitive in self.SENSITIVE_FIELDS):
                masked[key] = "***REDACTED***"
            elif isinstance(value, (dict, list)):
                masked[key] = self._mask_sensitive(value)
            else:
                masked[key] = value
        return masked
