"""Tests for the payment gateway HTTP client."""

from unittest.mock import patch
from urllib.parse import parse_qs
from uuid import uuid4

import httpx
import pytest
import respx
from tenacity import wait_none

from app.modules.billing.domain.billing.gateway_client import GatewayClient, _flatten
from app.shared.core.exceptions import ConfigurationError, GatewayError

BASE = "https://gateway.test/v1"


@pytest.fixture
def client():
    return GatewayClient(base_url=BASE, secret_key="sk_test_unit", max_attempts=3)


@pytest.fixture(autouse=True)
def no_backoff():
    with patch("app.shared.core.retry.wait_exponential", return_value=wait_none()):
        yield


def _form(request: httpx.Request) -> dict[str, list[str]]:
    return parse_qs(request.content.decode())


def test_flatten_nested_form_fields() -> None:
    flat = _flatten(
        {"items": [{"price": "price_1"}], "metadata": {"tenant_id": "t1"}, "x": None, "flag": False}
    )

    assert flat == {"items[0][price]": "price_1", "metadata[tenant_id]": "t1", "flag": "false"}


def test_missing_secret_key_rejected() -> None:
    with patch("app.modules.billing.domain.billing.gateway_client.get_settings") as mock_settings:
        mock_settings.return_value.GATEWAY_API_BASE_URL = BASE
        mock_settings.return_value.GATEWAY_SECRET_KEY = None
        with pytest.raises(ConfigurationError):
            GatewayClient()


class TestMutatingCalls:
    @respx.mock
    @pytest.mark.asyncio
    async def test_plan_change_sends_form_and_idempotency_key(self, client):
        route = respx.post(f"{BASE}/subscriptions/sub_123").respond(json={"id": "sub_123"})

        result = await client.create_plan_change(
            "sub_123", "price_professional", prorate=True, idempotency_key="key-1"
        )

        assert result.reference == "sub_123"
        request = route.calls.last.request
        assert request.headers["Idempotency-Key"] == "key-1"
        assert request.headers["Authorization"] == "Bearer sk_test_unit"
        form = _form(request)
        assert form["items[0][price]"] == ["price_professional"]
        assert form["proration_behavior"] == ["create_prorations"]

    @respx.mock
    @pytest.mark.asyncio
    async def test_immediate_cancel_uses_delete(self, client):
        route = respx.delete(f"{BASE}/subscriptions/sub_123").respond(
            json={"id": "sub_123", "status": "canceled"}
        )

        await client.cancel_subscription("sub_123", at_period_end=False, idempotency_key="k")

        assert route.called

    @respx.mock
    @pytest.mark.asyncio
    async def test_scheduled_cancel_posts_flag(self, client):
        route = respx.post(f"{BASE}/subscriptions/sub_123").respond(json={"id": "sub_123"})

        await client.cancel_subscription("sub_123", at_period_end=True, idempotency_key="k")

        assert _form(route.calls.last.request)["cancel_at_period_end"] == ["true"]

    @respx.mock
    @pytest.mark.asyncio
    async def test_reactivate_creates_new_subscription(self, client):
        tenant_id = uuid4()
        route = respx.post(f"{BASE}/subscriptions").respond(json={"id": "sub_new"})

        result = await client.reactivate_subscription(
            tenant_id=tenant_id,
            price_id="price_starter",
            customer_ref="cus_123",
            subscription_ref="sub_old",
            pending_cancellation=False,
            idempotency_key="k",
        )

        assert result.reference == "sub_new"
        assert _form(route.calls.last.request)["metadata[tenant_id]"] == [str(tenant_id)]

    @pytest.mark.asyncio
    async def test_reactivate_without_customer(self, client):
        with pytest.raises(GatewayError) as exc:
            await client.reactivate_subscription(
                tenant_id=uuid4(),
                price_id="price_starter",
                customer_ref=None,
                subscription_ref=None,
                pending_cancellation=False,
                idempotency_key="k",
            )
        assert exc.value.code == "gateway_customer_missing"


class TestRefunds:
    @respx.mock
    @pytest.mark.asyncio
    async def test_succeeded_refund(self, client):
        route = respx.post(f"{BASE}/refunds").respond(json={"id": "re_1", "status": "succeeded"})

        result = await client.create_refund(
            "ch_123", 500, reason="duplicate_payment", idempotency_key="refund:1"
        )

        assert result.success is True
        form = _form(route.calls.last.request)
        assert form["amount"] == ["500"]
        assert form["reason"] == ["duplicate"]
        assert form["metadata[reason]"] == ["duplicate_payment"]

    @respx.mock
    @pytest.mark.asyncio
    async def test_pending_refund_is_not_success(self, client):
        respx.post(f"{BASE}/refunds").respond(json={"id": "re_1", "status": "pending"})

        result = await client.create_refund("ch_123", 500, reason="other", idempotency_key="k")

        assert result.success is False
        assert result.reference == "re_1"

    @respx.mock
    @pytest.mark.asyncio
    async def test_failed_refund_raises(self, client):
        respx.post(f"{BASE}/refunds").respond(
            json={"id": "re_1", "status": "failed", "failure_reason": "expired_or_canceled_card"}
        )

        with pytest.raises(GatewayError) as exc:
            await client.create_refund("ch_123", 500, reason="other", idempotency_key="k")

        assert exc.value.code == "refund_declined"
        assert exc.value.details["gateway_refund_id"] == "re_1"


class TestErrorHandling:
    @respx.mock
    @pytest.mark.asyncio
    async def test_card_error_is_not_retried(self, client):
        route = respx.post(f"{BASE}/refunds").respond(
            402, json={"error": {"message": "Your card was declined.", "code": "card_declined"}}
        )

        with pytest.raises(GatewayError) as exc:
            await client.create_refund("ch_123", 500, reason="other", idempotency_key="k")

        assert route.call_count == 1
        assert exc.value.retryable is False
        assert exc.value.code == "gateway_rejected"
        assert exc.value.message == "Your card was declined."
        assert exc.value.details["gateway_code"] == "card_declined"

    @respx.mock
    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, client):
        route = respx.post(f"{BASE}/subscriptions/sub_123")
        route.side_effect = [
            httpx.Response(503, json={"error": {"message": "busy"}}),
            httpx.Response(200, json={"id": "sub_123"}),
        ]

        result = await client.cancel_subscription("sub_123", at_period_end=True, idempotency_key="k")

        assert result.reference == "sub_123"
        assert route.call_count == 2

    @respx.mock
    @pytest.mark.asyncio
    async def test_rate_limit_exhausts_attempts(self, client):
        route = respx.post(f"{BASE}/subscriptions/sub_123").respond(429, json={})

        with pytest.raises(GatewayError) as exc:
            await client.cancel_subscription("sub_123", at_period_end=True, idempotency_key="k")

        assert route.call_count == 3
        assert exc.value.retryable is True
        assert exc.value.code == "gateway_unavailable"

    @respx.mock
    @pytest.mark.asyncio
    async def test_timeout_maps_to_gateway_timeout(self, client):
        respx.get(f"{BASE}/charges/ch_123").mock(side_effect=httpx.ReadTimeout("slow"))

        with pytest.raises(GatewayError) as exc:
            await client.retrieve_charge("ch_123")

        assert exc.value.code == "gateway_timeout"
        assert exc.value.retryable is True

    @respx.mock
    @pytest.mark.asyncio
    async def test_connection_error_is_retryable(self, client):
        respx.get(f"{BASE}/charges/ch_123").mock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(GatewayError) as exc:
            await client.retrieve_charge("ch_123")

        assert exc.value.code == "gateway_unavailable"

    @respx.mock
    @pytest.mark.asyncio
    async def test_non_json_body(self, client):
        respx.get(f"{BASE}/charges/ch_123").respond(200, text="<html>")

        with pytest.raises(GatewayError) as exc:
            await client.retrieve_charge("ch_123")

        assert exc.value.code == "gateway_invalid_response"


@respx.mock
@pytest.mark.asyncio
async def test_retrieve_charge_parses_expanded_customer(client):
    respx.get(f"{BASE}/charges/ch_123").respond(
        json={
            "id": "ch_123",
            "amount": 9900,
            "amount_refunded": 1000,
            "currency": "usd",
            "customer": {"id": "cus_123"},
            "status": "succeeded",
        }
    )

    charge = await client.retrieve_charge("ch_123")

    assert charge.customer_ref == "cus_123"
    assert charge.currency == "USD"
    assert charge.refundable_minor == 8900
