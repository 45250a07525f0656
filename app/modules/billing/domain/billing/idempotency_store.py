"""
Durable idempotency ledger for gateway webhook events.

One `webhook_events` row per gateway event id. The unique constraint on
`event_id` decides which delivery owns an event; every later status change is a
conditional UPDATE so concurrent workers cannot both claim the same record.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, cast

from sqlalchemy import delete, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.shared.core.retry import next_retry_at

from .gateway_shared import get_settings, logger, utcnow

LEASE_EXPIRED_ERROR = "processing_lease_expired"


@dataclass(frozen=True)
class Reservation:
    """
    Result of `reserve`.

    `claimed` means the caller now owns the record and must process it.
    Otherwise the event is either already completed, being processed
    elsewhere, or permanently failed.
    """

    record: WebhookEvent
    claimed: bool
    already_processed: bool = False
    already_in_flight: bool = False

    @property
    def permanently_failed(self) -> bool:
        return (
            not self.claimed
            and not self.already_processed
            and not self.already_in_flight
        )


class IdempotencyStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, event_id: str) -> Optional[WebhookEvent]:
        result = await self.db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.event_id == event_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _require(self, event_id: str) -> WebhookEvent:
        record = await self.get(event_id)
        if record is None:
            raise LookupError(f"webhook event {event_id} is not recorded")
        return record

    async def reserve(
        self,
        event_id: str,
        event_type: str,
        payload: str,
        *,
        max_attempts: Optional[int] = None,
    ) -> Reservation:
        """
        Claim `event_id` for processing, exactly once across concurrent deliveries.

        The reservation is committed before the caller runs any business logic.
        """
        limit = max_attempts or get_settings().WEBHOOK_MAX_ATTEMPTS
        now = utcnow()
        record = WebhookEvent(
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            status=WebhookEventStatus.PROCESSING.value,
            attempts=0,
            received_at=now,
            processing_started_at=now,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(record)
            await self.db.commit()
            logger.info("webhook_event_reserved", event_id=event_id, event_type=event_type)
            return Reservation(record=record, claimed=True)
        except IntegrityError:
            await self.db.rollback()

        existing = await self._require(event_id)
        if existing.status == WebhookEventStatus.COMPLETED.value:
            return Reservation(record=existing, claimed=False, already_processed=True)
        if existing.status in (
            WebhookEventStatus.PENDING.value,
            WebhookEventStatus.PROCESSING.value,
        ):
            return Reservation(record=existing, claimed=False, already_in_flight=True)

        # A redelivery of a failed event is a retry: reclaim it if still allowed.
        if await self._claim(event_id, limit, due_only=False):
            return Reservation(record=await self._require(event_id), claimed=True)

        refreshed = await self._require(event_id)
        return Reservation(
            record=refreshed,
            claimed=False,
            already_processed=refreshed.status == WebhookEventStatus.COMPLETED.value,
            already_in_flight=refreshed.status == WebhookEventStatus.PROCESSING.value,
        )

    async def _claim(self, event_id: str, max_attempts: int, *, due_only: bool) -> bool:
        now = utcnow()
        conditions = [
            WebhookEvent.event_id == event_id,
            WebhookEvent.status == WebhookEventStatus.FAILED.value,
            WebhookEvent.attempts < max_attempts,
        ]
        if due_only:
            conditions.append(WebhookEvent.next_retry_at.is_not(None))
            conditions.append(WebhookEvent.next_retry_at <= now)

        result = cast(
            CursorResult[Any],
            await self.db.execute(
                update(WebhookEvent)
                .where(*conditions)
                .values(
                    status=WebhookEventStatus.PROCESSING.value,
                    processing_started_at=now,
                    next_retry_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            ),
        )
        if int(result.rowcount or 0) <= 0:
            await self.db.rollback()
            return False
        await self.db.commit()
        logger.info("webhook_event_claimed", event_id=event_id)
        return True

    async def claim_for_retry(
        self, event_id: str, max_attempts: int, *, manual: bool = False
    ) -> bool:
        """
        Move a failed record back to processing.

        Automatic retries only claim records whose `next_retry_at` is due;
        manual retries ignore the schedule but still respect `max_attempts`.
        """
        return await self._claim(event_id, max_attempts, due_only=not manual)

    async def mark_completed(
        self,
        event_id: str,
        result: dict[str, Any],
        *,
        commit: bool = True,
    ) -> None:
        now = utcnow()
        await self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event_id)
            .values(
                status=WebhookEventStatus.COMPLETED.value,
                result=result,
                processed_at=now,
                next_retry_at=None,
                last_error=None,
                error_retryable=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if commit:
            await self.db.commit()

    async def mark_failed(
        self,
        event_id: str,
        error: str,
        *,
        retryable: bool,
        max_attempts: Optional[int] = None,
        result: Optional[dict[str, Any]] = None,
    ) -> WebhookEvent:
        """
        Record a failed attempt.

        Retryable failures below the bound are rescheduled with exponential
        backoff; anything else is permanent and left for an operator.
        """
        limit = max_attempts or get_settings().WEBHOOK_MAX_ATTEMPTS
        record = await self._require(event_id)
        now = utcnow()
        attempts = int(record.attempts or 0) + 1
        schedule = retryable and attempts < limit

        record.status = WebhookEventStatus.FAILED.value
        record.attempts = attempts
        record.last_error = error[:2000]
        record.error_retryable = retryable
        record.next_retry_at = next_retry_at(now, attempts) if schedule else None
        record.processed_at = now
        if result is not None:
            record.result = result
        await self.db.commit()

        logger.warning(
            "webhook_event_failed",
            event_id=event_id,
            attempts=attempts,
            retryable=retryable,
            next_retry_at=record.next_retry_at.isoformat() if record.next_retry_at else None,
            error=record.last_error,
        )
        return record

    async def due_for_retry(
        self,
        max_attempts: int,
        now: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[str]:
        as_of = now or utcnow()
        result = await self.db.execute(
            select(WebhookEvent.event_id)
            .where(
                WebhookEvent.status == WebhookEventStatus.FAILED.value,
                WebhookEvent.attempts < max_attempts,
                WebhookEvent.next_retry_at.is_not(None),
                WebhookEvent.next_retry_at <= as_of,
            )
            .order_by(WebhookEvent.next_retry_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def expire_stale_processing(
        self,
        lease_seconds: int,
        now: Optional[datetime] = None,
        *,
        max_attempts: Optional[int] = None,
    ) -> int:
        """Fail `processing` records left behind by a crashed worker."""
        limit = max_attempts or get_settings().WEBHOOK_MAX_ATTEMPTS
        as_of = now or utcnow()
        cutoff = as_of - timedelta(seconds=lease_seconds)
        stale = (
            await self.db.execute(
                select(WebhookEvent.event_id, WebhookEvent.attempts).where(
                    WebhookEvent.status == WebhookEventStatus.PROCESSING.value,
                    WebhookEvent.processing_started_at < cutoff,
                )
            )
        ).all()

        expired = 0
        for event_id, attempts in stale:
            next_attempts = int(attempts or 0) + 1
            result = cast(
                CursorResult[Any],
                await self.db.execute(
                    update(WebhookEvent)
                    .where(
                        WebhookEvent.event_id == event_id,
                        WebhookEvent.status == WebhookEventStatus.PROCESSING.value,
                        WebhookEvent.processing_started_at < cutoff,
                    )
                    .values(
                        status=WebhookEventStatus.FAILED.value,
                        attempts=next_attempts,
                        last_error=LEASE_EXPIRED_ERROR,
                        error_retryable=True,
                        next_retry_at=as_of if next_attempts < limit else None,
                        updated_at=as_of,
                    )
                    .execution_options(synchronize_session=False)
                ),
            )
            expired += int(result.rowcount or 0)
        await self.db.commit()

        if expired:
            logger.warning("webhook_processing_leases_expired", count=expired)
        return expired

    async def list_events(
        self,
        status: Optional[WebhookEventStatus | str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookEvent]:
        stmt = select(WebhookEvent).order_by(WebhookEvent.received_at.desc())
        if status is not None:
            value = status.value if isinstance(status, WebhookEventStatus) else str(status)
            stmt = stmt.where(WebhookEvent.status == value)
        result = await self.db.execute(stmt.limit(limit).offset(offset))
        return list(result.scalars().all())

    async def purge_completed(
        self, older_than_days: int, now: Optional[datetime] = None
    ) -> int:
        """Delete completed records past retention. Failed records are kept."""
        cutoff = (now or utcnow()) - timedelta(days=older_than_days)
        result = cast(
            CursorResult[Any],
            await self.db.execute(
                delete(WebhookEvent)
                .where(
                    WebhookEvent.status == WebhookEventStatus.COMPLETED.value,
                    WebhookEvent.processed_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            ),
        )
        await self.db.commit()
        purged = int(result.rowcount or 0)
        logger.info("webhook_events_purged", count=purged, older_than_days=older_than_days)
        return purged
