"""
Tests for RefundManager.

Refunds are validated against the gateway's view of the charge, leave a
status history, and only cancel the subscription after gateway confirmation.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from uuid import uuid4

import pytest
from sqlalchemy import select

from app.models.refund import Refund
from app.modules.billing.domain.billing.events import ChargeRefunded
from app.modules.billing.domain.billing.gateway_client import ChargeDetails, GatewayResult
from app.modules.billing.domain.billing.refund_manager import RefundManager
from app.modules.governance.domain.security.audit_log import AuditEventType, AuditLog
from app.shared.core.exceptions import (
    ConflictError,
    GatewayError,
    ResourceNotFoundError,
    ValidationError,
)

PERIOD_START = datetime(2026, 3, 1, tzinfo=timezone.utc)
PERIOD_END = PERIOD_START + timedelta(days=30)
REFUND_NOW = "app.modules.billing.domain.billing.refund_manager.utcnow"


@pytest.fixture
def refunds(db_session, gateway):
    return RefundManager(db_session, gateway=gateway)


async def _audit_rows(db, event_type: AuditEventType):
    result = await db.execute(select(AuditLog).where(AuditLog.event_type == event_type.value))
    return list(result.scalars().all())


async def _refund_rows(db):
    return list((await db.execute(select(Refund))).scalars().all())


def _charge(**overrides) -> ChargeDetails:
    values = {
        "reference": "ch_123",
        "amount_minor": 9900,
        "amount_refunded_minor": 0,
        "currency": "USD",
        "customer_ref": "cus_123",
        "status": "succeeded",
    }
    values.update(overrides)
    return ChargeDetails(**values)


class TestValidation:
    @pytest.mark.asyncio
    async def test_amount_over_refundable_rejected_before_gateway(
        self, refunds, tenant, subscription_factory, gateway, db_session
    ):
        await subscription_factory(tenant.id)
        gateway.retrieve_charge.return_value = _charge(amount_refunded_minor=5000)

        with pytest.raises(ValidationError) as exc:
            await refunds.process_refund(
                tenant.id, "ch_123", 5000, "USD", "requested_by_customer", "owner@acme.test"
            )

        assert exc.value.code == "amount_exceeds_refundable"
        gateway.create_refund.assert_not_awaited()
        assert await _refund_rows(db_session) == []
        failures = await _audit_rows(db_session, AuditEventType.BILLING_REFUND_FAILED)
        assert len(failures) == 1
        assert failures[0].success is False
        assert failures[0].details["error_code"] == "amount_exceeds_refundable"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "charge,code",
        [
            (_charge(customer_ref="cus_other"), "charge_not_owned"),
            (_charge(currency="EUR"), "currency_mismatch"),
            (_charge(amount_refunded_minor=9900), "charge_fully_refunded"),
        ],
    )
    async def test_charge_checks(self, refunds, tenant, subscription_factory, gateway, charge, code):
        await subscription_factory(tenant.id)
        gateway.retrieve_charge.return_value = charge

        with pytest.raises(ValidationError) as exc:
            await refunds.process_refund(tenant.id, "ch_123", 100, "usd", "other", "owner")

        assert exc.value.code == code
        gateway.create_refund.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "amount,currency,reason,code",
        [
            (0, "USD", "other", "invalid_amount"),
            (-5, "USD", "other", "invalid_amount"),
            (True, "USD", "other", "invalid_amount"),
            (100, "US", "other", "invalid_currency"),
            (100, "USD", "felt_like_it", "invalid_reason"),
        ],
    )
    async def test_request_shape_rejected(
        self, refunds, tenant, db_session, amount, currency, reason, code
    ):
        with pytest.raises(ValidationError) as exc:
            await refunds.process_refund(tenant.id, "ch_123", amount, currency, reason, "owner")
        assert exc.value.code == code
        failures = await _audit_rows(db_session, AuditEventType.BILLING_REFUND_FAILED)
        assert [row.details["error_code"] for row in failures] == [code]

    @pytest.mark.asyncio
    async def test_missing_subscription_is_audited(self, refunds, tenant, gateway, db_session):
        with pytest.raises(ResourceNotFoundError) as exc:
            await refunds.process_refund(tenant.id, "ch_123", 5000, "USD", "other", "owner")

        assert exc.value.code == "subscription_not_found"
        gateway.retrieve_charge.assert_not_awaited()
        failures = await _audit_rows(db_session, AuditEventType.BILLING_REFUND_FAILED)
        assert len(failures) == 1
        assert failures[0].success is False
        assert failures[0].details["error_code"] == "subscription_not_found"
        assert failures[0].details["charge_reference"] == "ch_123"

    @pytest.mark.asyncio
    async def test_unknown_tenant_is_not_found_without_audit(self, refunds, db_session):
        with pytest.raises(ResourceNotFoundError):
            await refunds.process_refund(uuid4(), "ch_123", 5000, "USD", "other", "owner")

        assert await _audit_rows(db_session, AuditEventType.BILLING_REFUND_FAILED) == []

    @pytest.mark.asyncio
    async def test_canceled_subscription_not_eligible(
        self, refunds, tenant, subscription_factory, gateway, db_session
    ):
        await subscription_factory(tenant.id, status="canceled")

        with pytest.raises(ConflictError) as exc:
            await refunds.process_refund(tenant.id, "ch_123", 100, "USD", "other", "owner")

        assert exc.value.code == "refund_not_eligible"
        gateway.retrieve_charge.assert_not_awaited()
        assert len(await _audit_rows(db_session, AuditEventType.BILLING_REFUND_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_refund_limit_per_window(self, refunds, tenant, subscription_factory, gateway):
        await subscription_factory(tenant.id)
        for _ in range(3):
            await refunds.process_refund(tenant.id, "ch_123", 100, "USD", "other", "owner")

        with pytest.raises(ValidationError) as exc:
            await refunds.process_refund(tenant.id, "ch_123", 100, "USD", "other", "owner")

        assert exc.value.code == "refund_limit_exceeded"
        assert gateway.create_refund.await_count == 3


class TestProcessRefund:
    @pytest.mark.asyncio
    async def test_confirmed_refund_with_cancellation(
        self, refunds, tenant, subscription_factory, gateway, db_session
    ):
        await subscription_factory(tenant.id)

        outcome = await refunds.process_refund(
            tenant.id,
            "ch_123",
            4000,
            "USD",
            "service_not_provided",
            "owner@acme.test",
            reason_details="outage",
            cancel_subscription=True,
        )

        assert outcome.confirmed
        assert outcome.subscription_canceled is True
        assert outcome.cancellation_error is None
        assert outcome.refund.gateway_refund_id == "re_123"
        assert outcome.refund.reason_details == "outage"

        names = [c[0] for c in gateway.mock_calls]
        assert names.index("create_refund") < names.index("cancel_subscription")
        assert gateway.create_refund.call_args.kwargs["idempotency_key"] == f"refund:{outcome.refund.id}"

        sub = await refunds.lifecycle.get_subscription(tenant.id)
        assert sub.status == "canceled"
        assert sub.cancellation_reason == "refund"

        history = await refunds.get_history(outcome.refund.id)
        assert [h.to_status for h in history] == ["pending", "completed", "completed"]
        assert len(await _audit_rows(db_session, AuditEventType.BILLING_REFUND_PROCESSED)) == 1

    @pytest.mark.asyncio
    async def test_refund_without_cancellation_keeps_subscription(
        self, refunds, tenant, subscription_factory, gateway
    ):
        await subscription_factory(tenant.id)

        outcome = await refunds.process_refund(tenant.id, "ch_123", 100, "USD", "billing_error", "owner")

        assert outcome.subscription_canceled is False
        gateway.cancel_subscription.assert_not_awaited()
        assert (await refunds.lifecycle.get_subscription(tenant.id)).status == "active"

    @pytest.mark.asyncio
    async def test_gateway_failure_marks_refund_failed(
        self, refunds, tenant, subscription_factory, gateway, db_session
    ):
        await subscription_factory(tenant.id)
        gateway.create_refund.side_effect = GatewayError(
            "card issuer declined",
            code="refund_declined",
            details={"gateway_code": "charge_disputed", "gateway_refund_id": "re_bad"},
        )

        with pytest.raises(GatewayError):
            await refunds.process_refund(
                tenant.id, "ch_123", 100, "USD", "other", "owner", cancel_subscription=True
            )

        [refund] = await _refund_rows(db_session)
        assert refund.status == "failed"
        assert refund.error_code == "charge_disputed"
        assert refund.gateway_refund_id == "re_bad"
        gateway.cancel_subscription.assert_not_awaited()
        history = await refunds.get_history(refund.id)
        assert [h.to_status for h in history] == ["pending", "failed"]

    @pytest.mark.asyncio
    async def test_cancellation_failure_is_reported(
        self, refunds, tenant, subscription_factory, gateway
    ):
        await subscription_factory(tenant.id)
        gateway.cancel_subscription.side_effect = GatewayError("gateway down", retryable=True)

        outcome = await refunds.process_refund(
            tenant.id, "ch_123", 100, "USD", "other", "owner", cancel_subscription=True
        )

        assert outcome.confirmed
        assert outcome.subscription_canceled is False
        assert outcome.cancellation_error == "gateway down"
        assert (await refunds.lifecycle.get_subscription(tenant.id)).status == "active"


class TestReconciliation:
    @pytest.mark.asyncio
    async def test_pending_refund_confirmed_by_webhook_then_cancels(
        self, refunds, tenant, subscription_factory, gateway, db_session
    ):
        await subscription_factory(tenant.id)
        gateway.create_refund.return_value = GatewayResult(
            reference="re_pending", success=False, data={"status": "pending"}
        )

        outcome = await refunds.process_refund(
            tenant.id, "ch_123", 100, "USD", "other", "owner", cancel_subscription=True
        )

        assert outcome.refund.status == "pending"
        gateway.cancel_subscription.assert_not_awaited()

        event = ChargeRefunded(
            event_id="evt_refunded",
            event_type="charge.refunded",
            charge_ref="ch_123",
            amount_minor=9900,
            amount_refunded_minor=100,
            currency="USD",
            refund_refs=("re_pending",),
        )
        confirmed = await refunds.reconcile_gateway_refund(event, tenant_id=tenant.id)

        assert confirmed == 1
        refund = await refunds.get_refund(outcome.refund.id)
        assert refund.status == "completed"
        assert refund.subscription_canceled is True
        gateway.cancel_subscription.assert_awaited_once()

        # Replays confirm nothing new and never cancel twice.
        assert await refunds.reconcile_gateway_refund(event, tenant_id=tenant.id) == 0
        gateway.cancel_subscription.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unrelated_refund_refs_ignored(self, refunds, tenant, subscription_factory, gateway):
        await subscription_factory(tenant.id)
        gateway.create_refund.return_value = GatewayResult(reference="re_pending", success=False)
        await refunds.process_refund(tenant.id, "ch_123", 100, "USD", "other", "owner")

        event = ChargeRefunded(
            event_id="evt_other",
            event_type="charge.refunded",
            charge_ref="ch_123",
            amount_minor=9900,
            amount_refunded_minor=100,
            currency="USD",
            refund_refs=("re_someone_else",),
        )

        assert await refunds.reconcile_gateway_refund(event) == 0


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_refunds_filters(self, refunds, tenant, subscription_factory, gateway):
        await subscription_factory(tenant.id)
        await refunds.process_refund(tenant.id, "ch_123", 100, "USD", "other", "owner")
        gateway.create_refund.side_effect = GatewayError("declined", code="refund_declined")
        with pytest.raises(GatewayError):
            await refunds.process_refund(tenant.id, "ch_123", 100, "USD", "other", "owner")

        assert len(await refunds.list_refunds(tenant_id=tenant.id)) == 2
        assert len(await refunds.list_refunds(status="failed")) == 1
        assert len(await refunds.list_refunds(status="completed")) == 1


class TestRefundTypes:
    @pytest.mark.asyncio
    async def test_full_refund_takes_remaining_balance(
        self, refunds, tenant, subscription_factory, gateway
    ):
        await subscription_factory(tenant.id)
        gateway.retrieve_charge.return_value = _charge(amount_refunded_minor=2500)

        outcome = await refunds.process_refund(
            tenant.id, "ch_123", None, "USD", "billing_error", "owner", refund_type="full"
        )

        assert outcome.refund.amount_minor == 7400
        assert outcome.refund.refund_type == "full"
        assert gateway.create_refund.await_args.args[1] == 7400

    @pytest.mark.asyncio
    async def test_prorated_refund_covers_unused_period(
        self, refunds, tenant, subscription_factory, gateway
    ):
        await subscription_factory(tenant.id, period_start=PERIOD_START, period_end=PERIOD_END)

        with patch(REFUND_NOW, return_value=PERIOD_START + timedelta(days=10)):
            outcome = await refunds.process_refund(
                tenant.id, "ch_123", None, "USD", "service_not_provided", "owner",
                refund_type="prorated",
            )

        # 20 of 30 days unused on a 9900 charge.
        assert outcome.refund.amount_minor == 6600
        assert outcome.refund.refund_type == "prorated"

    @pytest.mark.asyncio
    async def test_prorated_refund_still_bounded_by_refundable(
        self, refunds, tenant, subscription_factory, gateway
    ):
        await subscription_factory(tenant.id, period_start=PERIOD_START, period_end=PERIOD_END)
        gateway.retrieve_charge.return_value = _charge(amount_refunded_minor=5000)

        with patch(REFUND_NOW, return_value=PERIOD_START + timedelta(days=1)):
            with pytest.raises(ValidationError) as exc:
                await refunds.process_refund(
                    tenant.id, "ch_123", None, "USD", "other", "owner", refund_type="prorated"
                )

        assert exc.value.code == "amount_exceeds_refundable"
        gateway.create_refund.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_prorated_refund_after_period_end_rejected(
        self, refunds, tenant, subscription_factory, db_session
    ):
        await subscription_factory(tenant.id, period_start=PERIOD_START, period_end=PERIOD_END)

        with patch(REFUND_NOW, return_value=PERIOD_END + timedelta(hours=1)):
            with pytest.raises(ValidationError) as exc:
                await refunds.process_refund(
                    tenant.id, "ch_123", None, "USD", "other", "owner", refund_type="prorated"
                )

        assert exc.value.code == "period_ended"
        assert len(await _audit_rows(db_session, AuditEventType.BILLING_REFUND_FAILED)) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "refund_type,amount,code",
        [
            ("full", 100, "amount_not_allowed"),
            ("prorated", 100, "amount_not_allowed"),
            ("partial", None, "invalid_amount"),
            ("store_credit", 100, "invalid_refund_type"),
        ],
    )
    async def test_amount_must_match_type(self, refunds, tenant, refund_type, amount, code):
        with pytest.raises(ValidationError) as exc:
            await refunds.process_refund(
                tenant.id, "ch_123", amount, "USD", "other", "owner", refund_type=refund_type
            )
        assert exc.value.code == code


class TestStatistics:
    @pytest.mark.asyncio
    async def test_grouped_by_month_type_and_reason(
        self, refunds, tenant, subscription_factory, gateway
    ):
        await subscription_factory(tenant.id)
        await refunds.process_refund(tenant.id, "ch_123", 100, "USD", "other", "owner")
        gateway.create_refund.side_effect = GatewayError("declined", code="refund_declined")
        with pytest.raises(GatewayError):
            await refunds.process_refund(tenant.id, "ch_123", 500, "USD", "billing_error", "owner")
        gateway.create_refund.side_effect = None
        await refunds.process_refund(
            tenant.id, "ch_123", 300, "USD", "other", "owner", cancel_subscription=True
        )

        rows = await refunds.refund_statistics(tenant_id=tenant.id)

        by_reason = {row.reason: row for row in rows}
        assert set(by_reason) == {"other", "billing_error"}
        other = by_reason["other"]
        assert other.refund_type == "partial"
        assert other.refund_count == 2
        assert other.total_amount_minor == 400
        assert other.average_amount_minor == 200
        assert other.completed_count == 2
        assert other.cancellations_count == 1
        failed = by_reason["billing_error"]
        assert failed.failed_count == 1
        assert failed.completed_amount_minor == 0

    @pytest.mark.asyncio
    async def test_window_excludes_older_refunds(self, refunds, tenant, subscription_factory):
        await subscription_factory(tenant.id)
        await refunds.process_refund(tenant.id, "ch_123", 100, "USD", "other", "owner")
        future = datetime.now(timezone.utc) + timedelta(days=1)

        assert await refunds.refund_statistics(start=future, end=future + timedelta(days=30)) == []

    @pytest.mark.asyncio
    async def test_inverted_window_rejected(self, refunds):
        now = datetime.now(timezone.utc)
        with pytest.raises(ValidationError) as exc:
            await refunds.refund_statistics(start=now, end=now - timedelta(days=1))
        assert exc.value.code == "invalid_window"
