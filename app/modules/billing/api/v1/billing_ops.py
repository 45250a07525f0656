"""Request plumbing shared by the billing routes."""

from typing import Any, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.api.v1.billing_models import (
    LifecycleResponse,
    ProrationResponse,
    SubscriptionChangeResponse,
    SubscriptionResponse,
)
from app.modules.billing.domain.billing.lifecycle import LifecycleResult
from app.modules.billing.domain.billing.webhook_dispatcher import WebhookDispatcher

SIGNATURE_HEADER = "x-gateway-signature"
# Also accepted for Stripe-compatible senders.
ALT_SIGNATURE_HEADER = "stripe-signature"


def lifecycle_response(result: LifecycleResult) -> LifecycleResponse:
    proration: Optional[ProrationResponse] = None
    if result.proration is not None:
        proration = ProrationResponse(
            amount_minor=result.proration.amount_minor,
            currency=result.proration.currency,
            basis=result.proration.basis,
        )
    return LifecycleResponse(
        subscription=SubscriptionResponse.model_validate(result.subscription),
        change=SubscriptionChangeResponse.model_validate(result.change)
        if result.change is not None
        else None,
        proration=proration,
    )


async def process_gateway_webhook(
    request: Request,
    db: AsyncSession,
    *,
    logger: Any,
    dispatcher: Optional[WebhookDispatcher] = None,
) -> JSONResponse:
    """
    Hand the raw body to the dispatcher and translate its outcome.

    The body is read as bytes before any JSON handling so the signature is
    checked over exactly what the gateway signed.
    """
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER) or request.headers.get(
        ALT_SIGNATURE_HEADER
    )

    outcome = await (dispatcher or WebhookDispatcher(db)).handle(payload, signature)
    if outcome.http_status >= 400:
        logger.warning(
            "webhook_rejected",
            outcome=outcome.status,
            http_status=outcome.http_status,
            event_id=outcome.event_id,
            detail=outcome.detail,
        )
    return JSONResponse(status_code=outcome.http_status, content=outcome.to_response())
