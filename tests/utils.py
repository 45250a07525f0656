import json
import os
import time
from typing import Any, Optional
from uuid import UUID

from app.modules.billing.domain.billing.signature import build_signature_header

WEBHOOK_SECRET = os.environ.get("GATEWAY_WEBHOOK_SECRET", "whsec_test_parley")


def gateway_event(
    event_type: str,
    obj: dict[str, Any],
    *,
    event_id: str = "evt_test_1",
    created: Optional[int] = None,
) -> dict[str, Any]:
    """Build a gateway webhook envelope."""
    return {
        "id": event_id,
        "type": event_type,
        "created": created if created is not None else int(time.time()),
        "data": {"object": obj},
    }


def signed_delivery(
    payload: dict[str, Any] | bytes,
    secret: str = WEBHOOK_SECRET,
    timestamp: Optional[int] = None,
) -> tuple[bytes, str]:
    """Serialize a payload and sign it the way the gateway does."""
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    header = build_signature_header(body, secret, timestamp or int(time.time()))
    return body, header


def invoice_object(
    tenant_id: Optional[UUID] = None,
    *,
    invoice_id: str = "in_123",
    amount: int = 2900,
    subscription: str = "sub_123",
    customer: str = "cus_123",
    attempt_count: int = 1,
) -> dict[str, Any]:
    obj: dict[str, Any] = {
        "id": invoice_id,
        "amount_paid": amount,
        "amount_due": amount,
        "currency": "usd",
        "subscription": subscription,
        "customer": customer,
        "attempt_count": attempt_count,
        "charge": "ch_123",
    }
    if tenant_id is not None:
        obj["metadata"] = {"tenant_id": str(tenant_id)}
    return obj
