"""
Periodic billing sweeps.

Each task wraps one async sweep in a fresh event loop and a fresh session.
The engine is disposed afterwards because pooled connections are bound to
the loop that opened them.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Awaitable, Callable, TypeVar

import structlog
from celery import shared_task
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.domain.billing.idempotency_store import IdempotencyStore
from app.modules.billing.domain.billing.lifecycle import SubscriptionLifecycle
from app.modules.billing.domain.billing.webhook_dispatcher import WebhookDispatcher
from app.shared.core.config import get_settings
from app.shared.db.session import async_session_maker, get_engine

logger = structlog.get_logger()

T = TypeVar("T")


@asynccontextmanager
async def _open_db_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        yield session


def run_async(job: Callable[[AsyncSession], Awaitable[T]], job_type: str) -> T:
    """Run an async sweep from a sync Celery task."""

    async def _runner() -> T:
        structlog.contextvars.bind_contextvars(
            correlation_id=str(uuid.uuid4()), job_type=job_type
        )
        try:
            async with _open_db_session() as db:
                return await job(db)
        finally:
            await get_engine().dispose()
            structlog.contextvars.clear_contextvars()

    return asyncio.run(_runner())


async def _retry_due(db: AsyncSession) -> dict[str, int]:
    return await WebhookDispatcher(db).retry_due()


async def _finalize(db: AsyncSession) -> int:
    return await SubscriptionLifecycle(db).finalize_period_end_cancellations()


async def _purge(db: AsyncSession) -> int:
    days = get_settings().WEBHOOK_EVENT_RETENTION_DAYS
    return await IdempotencyStore(db).purge_completed(days)


@shared_task(name="billing.retry_due_webhooks")  # type: ignore[untyped-decorator]
def retry_due_webhooks() -> dict[str, Any]:
    """Expire stale leases and re-run failed webhook events that are due."""
    summary = run_async(_retry_due, "webhook_retry")
    return dict(summary)


@shared_task(
    name="billing.finalize_period_end_cancellations",
    autoretry_for=(ConnectionError, TimeoutError),
    retry_kwargs={"max_retries": 3, "countdown": 30},
    retry_backoff=True,
)  # type: ignore[untyped-decorator]
def finalize_period_end_cancellations() -> int:
    finalized = run_async(_finalize, "period_end_cancellation")
    logger.info("period_end_cancellations_task_finished", finalized=finalized)
    return finalized


@shared_task(name="billing.purge_webhook_events")  # type: ignore[untyped-decorator]
def purge_webhook_events() -> int:
    """Drop completed webhook records past the retention window."""
    purged = run_async(_purge, "webhook_purge")
    logger.info("webhook_purge_task_finished", purged=purged)
    return purged
