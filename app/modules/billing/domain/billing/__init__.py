"""Billing Services."""

from app.modules.billing.domain.billing.gateway_client import GatewayClient, GatewayResult
from app.modules.billing.domain.billing.idempotency_store import IdempotencyStore
from app.modules.billing.domain.billing.lifecycle import SubscriptionLifecycle
from app.modules.billing.domain.billing.refund_manager import RefundManager
from app.modules.billing.domain.billing.state_machine import SubscriptionStatus
from app.modules.billing.domain.billing.webhook_dispatcher import (
    WebhookDispatcher,
    WebhookOutcome,
)
from app.shared.core.pricing import PricingTier


__all__ = [
    "GatewayClient",
    "GatewayResult",
    "IdempotencyStore",
    "PricingTier",
    "RefundManager",
    "SubscriptionLifecycle",
    "SubscriptionStatus",
    "WebhookDispatcher",
    "WebhookOutcome",
]
