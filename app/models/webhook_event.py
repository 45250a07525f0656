from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from sqlalchemy import Boolean, Index, Integer, String, Text, Uuid as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models._types import JSONType, UTCDateTime, utcnow
from app.shared.db.base import Base


class WebhookEventStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookEvent(Base):
    """
    Idempotency ledger entry for one gateway-issued event id.

    Status only moves forward: pending -> processing -> completed | failed.
    A failed record below the attempt bound may re-enter processing.
    """

    __tablename__ = "webhook_events"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    # Raw body exactly as delivered; retries re-parse it.
    payload: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=WebhookEventStatus.PENDING.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    error_retryable: Mapped[Optional[bool]] = mapped_column(Boolean)
    result: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType)

    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("ix_webhook_events_status_next_retry", "status", "next_retry_at"),
    )
