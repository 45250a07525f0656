"""
Payment gateway client.

Thin async wrapper over the gateway REST API (Stripe-compatible, form
encoded). Every mutating call carries an idempotency key so a retried request
cannot double-charge or double-refund. Failures surface as GatewayError with
`retryable` set from the gateway's answer.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import UUID

import httpx

from app.shared.core.exceptions import ConfigurationError, GatewayError
from app.shared.core.http import get_http_client
from app.shared.core.ops_metrics import GATEWAY_REQUEST_DURATION, GATEWAY_REQUESTS_TOTAL
from app.shared.core.retry import gateway_retrying

from .gateway_shared import get_settings, logger

RETRYABLE_STATUS_CODES = frozenset({408, 409, 425, 429})

# Gateway-side refund reasons; anything else is sent as requested_by_customer
# with the local reason kept in metadata.
_GATEWAY_REFUND_REASONS = {
    "duplicate_payment": "duplicate",
    "fraudulent": "fraudulent",
    "requested_by_customer": "requested_by_customer",
}


@dataclass(frozen=True)
class GatewayResult:
    reference: Optional[str]
    success: bool
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChargeDetails:
    reference: str
    amount_minor: int
    amount_refunded_minor: int
    currency: str
    customer_ref: Optional[str]
    status: str

    @property
    def refundable_minor(self) -> int:
        return max(self.amount_minor - self.amount_refunded_minor, 0)


def _flatten(data: dict[str, Any], prefix: str = "") -> dict[str, str]:
    """Encode nested dicts/lists as gateway form keys, e.g. items[0][price]."""
    flat: dict[str, str] = {}
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            flat.update(_flatten(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                item_name = f"{name}[{index}]"
                if isinstance(item, dict):
                    flat.update(_flatten(item, item_name))
                else:
                    flat[item_name] = str(item)
        elif isinstance(value, bool):
            flat[name] = "true" if value else "false"
        else:
            flat[name] = str(value)
    return flat


def _error_from_response(response: httpx.Response, operation: str) -> GatewayError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    error = body.get("error") if isinstance(body, dict) else None
    error = error if isinstance(error, dict) else {}
    status = response.status_code
    retryable = status >= 500 or status in RETRYABLE_STATUS_CODES
    return GatewayError(
        error.get("message") or f"Gateway rejected {operation} with HTTP {status}",
        retryable=retryable,
        code="gateway_unavailable" if retryable else "gateway_rejected",
        details={
            "operation": operation,
            "http_status": status,
            "gateway_code": error.get("code"),
            "gateway_type": error.get("type"),
        },
    )


class GatewayClient:
    """Async client for the subscription, refund and charge endpoints."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        secret_key: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.GATEWAY_API_BASE_URL).rstrip("/")
        secret = secret_key or settings.GATEWAY_SECRET_KEY
        if not secret:
            raise ConfigurationError("GATEWAY_SECRET_KEY not configured")
        self.timeout = settings.GATEWAY_TIMEOUT_SECONDS
        self.max_attempts = max_attempts or settings.GATEWAY_MAX_RETRIES
        self.headers: dict[str, str] = {"Authorization": f"Bearer {secret}"}

    async def _send(
        self,
        method: str,
        endpoint: str,
        operation: str,
        data: Optional[dict[str, Any]],
        idempotency_key: Optional[str],
    ) -> dict[str, Any]:
        headers = dict(self.headers)
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        client = get_http_client()
        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                client.request(
                    method,
                    f"{self.base_url}/{endpoint}",
                    headers=headers,
                    data=_flatten(data) if data else None,
                ),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            GATEWAY_REQUESTS_TOTAL.labels(operation=operation, result="timeout").inc()
            raise GatewayError(
                f"Gateway timed out during {operation}",
                retryable=True,
                code="gateway_timeout",
                details={"operation": operation},
            ) from exc
        except httpx.TransportError as exc:
            GATEWAY_REQUESTS_TOTAL.labels(operation=operation, result="network_error").inc()
            raise GatewayError(
                f"Gateway unreachable during {operation}",
                retryable=True,
                code="gateway_unavailable",
                details={"operation": operation, "error": type(exc).__name__},
            ) from exc
        finally:
            GATEWAY_REQUEST_DURATION.labels(operation=operation).observe(
                time.perf_counter() - started
            )

        if response.status_code >= 400:
            error = _error_from_response(response, operation)
            GATEWAY_REQUESTS_TOTAL.labels(
                operation=operation,
                result="retryable_error" if error.retryable else "rejected",
            ).inc()
            raise error

        try:
            payload = response.json()
        except ValueError as exc:
            GATEWAY_REQUESTS_TOTAL.labels(operation=operation, result="invalid_response").inc()
            raise GatewayError(
                f"Gateway returned a non-JSON body for {operation}",
                retryable=True,
                code="gateway_invalid_response",
                details={"operation": operation},
            ) from exc
        if not isinstance(payload, dict):
            GATEWAY_REQUESTS_TOTAL.labels(operation=operation, result="invalid_response").inc()
            raise GatewayError(
                f"Gateway returned an unexpected body for {operation}",
                code="gateway_invalid_response",
                details={"operation": operation},
            )

        GATEWAY_REQUESTS_TOTAL.labels(operation=operation, result="success").inc()
        return payload

    async def _request(
        self,
        method: str,
        endpoint: str,
        operation: str,
        data: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict[str, Any]:
        # Retrying is only safe when the gateway can deduplicate the call.
        attempts = self.max_attempts if (idempotency_key or method == "GET") else 1
        try:
            async for attempt in gateway_retrying(attempts):
                with attempt:
                    return await self._send(method, endpoint, operation, data, idempotency_key)
        except GatewayError as exc:
            logger.error(
                "gateway_request_failed",
                operation=operation,
                endpoint=endpoint,
                code=exc.code,
                retryable=exc.retryable,
                error=exc.message,
            )
            raise
        raise GatewayError(f"Gateway call {operation} did not run", code="gateway_error")

    async def create_plan_change(
        self,
        subscription_ref: str,
        price_id: str,
        *,
        prorate: bool,
        idempotency_key: str,
    ) -> GatewayResult:
        """Switch the subscription's price, immediately or at renewal."""
        payload = await self._request(
            "POST",
            f"subscriptions/{subscription_ref}",
            "plan_change",
            {
                "items": [{"price": price_id}],
                "proration_behavior": "create_prorations" if prorate else "none",
            },
            idempotency_key,
        )
        return GatewayResult(reference=payload.get("id"), success=True, data=payload)

    async def cancel_subscription(
        self,
        subscription_ref: str,
        *,
        at_period_end: bool,
        idempotency_key: str,
    ) -> GatewayResult:
        if at_period_end:
            payload = await self._request(
                "POST",
                f"subscriptions/{subscription_ref}",
                "cancel_at_period_end",
                {"cancel_at_period_end": True},
                idempotency_key,
            )
        else:
            payload = await self._request(
                "DELETE",
                f"subscriptions/{subscription_ref}",
                "cancel",
                None,
                idempotency_key,
            )
        return GatewayResult(reference=payload.get("id"), success=True, data=payload)

    async def reactivate_subscription(
        self,
        *,
        tenant_id: UUID,
        price_id: str,
        customer_ref: Optional[str],
        subscription_ref: Optional[str],
        pending_cancellation: bool,
        idempotency_key: str,
    ) -> GatewayResult:
        """
        Undo a scheduled cancellation, or open a new subscription for a
        customer whose previous one has ended.
        """
        if pending_cancellation and subscription_ref:
            payload = await self._request(
                "POST",
                f"subscriptions/{subscription_ref}",
                "reactivate",
                {"cancel_at_period_end": False},
                idempotency_key,
            )
        else:
            if not customer_ref:
                raise GatewayError(
                    "Tenant has no gateway customer to reactivate",
                    code="gateway_customer_missing",
                )
            payload = await self._request(
                "POST",
                "subscriptions",
                "reactivate",
                {
                    "customer": customer_ref,
                    "items": [{"price": price_id}],
                    "metadata": {"tenant_id": str(tenant_id)},
                },
                idempotency_key,
            )
        return GatewayResult(reference=payload.get("id"), success=True, data=payload)

    async def create_refund(
        self,
        charge_ref: str,
        amount_minor: int,
        *,
        reason: str,
        idempotency_key: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> GatewayResult:
        """
        Request a refund. `success` is True only once the gateway reports the
        refund as settled; a pending refund is confirmed later by webhook.
        """
        payload = await self._request(
            "POST",
            "refunds",
            "refund",
            {
                "charge": charge_ref,
                "amount": int(amount_minor),
                "reason": _GATEWAY_REFUND_REASONS.get(reason, "requested_by_customer"),
                "metadata": {"reason": reason, **(metadata or {})},
            },
            idempotency_key,
        )
        status = payload.get("status")
        if status in ("failed", "canceled"):
            raise GatewayError(
                f"Gateway declined the refund ({payload.get('failure_reason') or status})",
                code="refund_declined",
                details={
                    "operation": "refund",
                    "gateway_refund_id": payload.get("id"),
                    "gateway_code": payload.get("failure_reason"),
                },
            )
        return GatewayResult(
            reference=payload.get("id"),
            success=status == "succeeded",
            data=payload,
        )

    async def retrieve_charge(self, charge_ref: str) -> ChargeDetails:
        payload = await self._request("GET", f"charges/{charge_ref}", "retrieve_charge")
        customer = payload.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")
        return ChargeDetails(
            reference=str(payload.get("id") or charge_ref),
            amount_minor=int(payload.get("amount") or 0),
            amount_refunded_minor=int(payload.get("amount_refunded") or 0),
            currency=str(payload.get("currency") or "usd").upper(),
            customer_ref=customer if isinstance(customer, str) else None,
            status=str(payload.get("status") or "unknown"),
        )
