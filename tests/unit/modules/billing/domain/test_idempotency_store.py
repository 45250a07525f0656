"""Tests for the webhook idempotency ledger."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.models.webhook_event import WebhookEventStatus
from app.modules.billing.domain.billing.idempotency_store import (
    LEASE_EXPIRED_ERROR,
    IdempotencyStore,
)

PAYLOAD = '{"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}}'


@pytest.fixture
def store(db_session):
    return IdempotencyStore(db_session)


class TestReserve:
    @pytest.mark.asyncio
    async def test_first_delivery_claims(self, store):
        reservation = await store.reserve("evt_1", "invoice.paid", PAYLOAD)

        assert reservation.claimed is True
        assert reservation.record.status == WebhookEventStatus.PROCESSING.value
        assert reservation.record.attempts == 0

    @pytest.mark.asyncio
    async def test_completed_event_is_duplicate(self, store):
        await store.reserve("evt_1", "invoice.paid", PAYLOAD)
        await store.mark_completed("evt_1", {"outcome": "processed"})

        reservation = await store.reserve("evt_1", "invoice.paid", PAYLOAD)

        assert reservation.claimed is False
        assert reservation.already_processed is True
        assert reservation.record.result == {"outcome": "processed"}

    @pytest.mark.asyncio
    async def test_processing_event_is_in_flight(self, store):
        await store.reserve("evt_1", "invoice.paid", PAYLOAD)

        reservation = await store.reserve("evt_1", "invoice.paid", PAYLOAD)

        assert reservation.claimed is False
        assert reservation.already_in_flight is True
        assert reservation.permanently_failed is False

    @pytest.mark.asyncio
    async def test_failed_event_reclaimed_on_redelivery(self, store):
        await store.reserve("evt_1", "invoice.paid", PAYLOAD)
        await store.mark_failed("evt_1", "gateway down", retryable=True)

        reservation = await store.reserve("evt_1", "invoice.paid", PAYLOAD)

        assert reservation.claimed is True
        assert reservation.record.status == WebhookEventStatus.PROCESSING.value
        assert reservation.record.attempts == 1

    @pytest.mark.asyncio
    async def test_exhausted_event_is_permanently_failed(self, store):
        await store.reserve("evt_1", "invoice.paid", PAYLOAD)
        await store.mark_failed("evt_1", "bad data", retryable=False, max_attempts=1)

        reservation = await store.reserve("evt_1", "invoice.paid", PAYLOAD, max_attempts=1)

        assert reservation.claimed is False
        assert reservation.permanently_failed is True
        assert reservation.record.last_error == "bad data"

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_claim_once(self, session_factory):
        async def deliver() -> bool:
            async with session_factory() as session:
                reservation = await IdempotencyStore(session).reserve(
                    "evt_race", "invoice.paid", PAYLOAD
                )
                return reservation.claimed

        results = await asyncio.gather(*(deliver() for _ in range(2)))

        assert sorted(results) == [False, True]


class TestMarkFailed:
    @pytest.mark.asyncio
    async def test_retryable_failure_is_scheduled(self, store):
        await store.reserve("evt_1", "invoice.paid", PAYLOAD)
        before = datetime.now(timezone.utc)

        record = await store.mark_failed("evt_1", "timeout", retryable=True, max_attempts=5)

        assert record.status == WebhookEventStatus.FAILED.value
        assert record.attempts == 1
        assert record.error_retryable is True
        assert record.next_retry_at is not None
        assert record.next_retry_at >= before + timedelta(seconds=59)

    @pytest.mark.asyncio
    async def test_non_retryable_failure_is_permanent(self, store):
        await store.reserve("evt_1", "invoice.paid", PAYLOAD)

        record = await store.mark_failed("evt_1", "rejected", retryable=False)

        assert record.next_retry_at is None
        assert record.error_retryable is False

    @pytest.mark.asyncio
    async def test_last_attempt_is_not_rescheduled(self, store):
        await store.reserve("evt_1", "invoice.paid", PAYLOAD)
        await store.mark_failed("evt_1", "timeout", retryable=True, max_attempts=2)
        await store.claim_for_retry("evt_1", 2, manual=True)

        record = await store.mark_failed("evt_1", "timeout", retryable=True, max_attempts=2)

        assert record.attempts == 2
        assert record.next_retry_at is None

    @pytest.mark.asyncio
    async def test_unknown_event_raises(self, store):
        with pytest.raises(LookupError):
            await store.mark_failed("evt_missing", "x", retryable=True)


class TestRetryScheduling:
    @pytest.mark.asyncio
    async def test_due_for_retry_respects_schedule(self, store):
        await store.reserve("evt_1", "invoice.paid", PAYLOAD)
        record = await store.mark_failed("evt_1", "timeout", retryable=True)

        assert await store.due_for_retry(5) == []
        later = record.next_retry_at + timedelta(seconds=1)
        assert await store.due_for_retry(5, now=later) == ["evt_1"]

    @pytest.mark.asyncio
    async def test_automatic_claim_requires_due_schedule(self, store):
        await store.reserve("evt_1", "invoice.paid", PAYLOAD)
        await store.mark_failed("evt_1", "timeout", retryable=True)

        assert await store.claim_for_retry("evt_1", 5) is False
        assert await store.claim_for_retry("evt_1", 5, manual=True) is True
        assert await store.claim_for_retry("evt_1", 5, manual=True) is False

    @pytest.mark.asyncio
    async def test_expire_stale_processing(self, store, db_session):
        reservation = await store.reserve("evt_1", "invoice.paid", PAYLOAD)
        reservation.record.processing_started_at = datetime.now(timezone.utc) - timedelta(hours=1)
        await db_session.commit()

        expired = await store.expire_stale_processing(300)

        assert expired == 1
        record = await store.get("evt_1")
        assert record.status == WebhookEventStatus.FAILED.value
        assert record.last_error == LEASE_EXPIRED_ERROR
        assert record.attempts == 1
        assert record.next_retry_at is not None

    @pytest.mark.asyncio
    async def test_fresh_processing_not_expired(self, store):
        await store.reserve("evt_1", "invoice.paid", PAYLOAD)

        assert await store.expire_stale_processing(300) == 0


class TestHousekeeping:
    @pytest.mark.asyncio
    async def test_purge_completed_keeps_failed(self, store):
        await store.reserve("evt_done", "invoice.paid", PAYLOAD)
        await store.mark_completed("evt_done", {"outcome": "processed"})
        await store.reserve("evt_failed", "invoice.paid", PAYLOAD)
        await store.mark_failed("evt_failed", "rejected", retryable=False)

        future = datetime.now(timezone.utc) + timedelta(days=31)
        purged = await store.purge_completed(30, now=future)

        assert purged == 1
        assert await store.get("evt_done") is None
        assert await store.get("evt_failed") is not None

    @pytest.mark.asyncio
    async def test_list_events_filters_by_status(self, store):
        await store.reserve("evt_a", "invoice.paid", PAYLOAD)
        await store.reserve("evt_b", "invoice.paid", PAYLOAD)
        await store.mark_completed("evt_a", {})

        completed = await store.list_events(WebhookEventStatus.COMPLETED)
        everything = await store.list_events()

        assert [r.event_id for r in completed] == ["evt_a"]
        assert {r.event_id for r in everything} == {"evt_a", "evt_b"}
