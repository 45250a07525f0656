"""Tests for subscription status transitions."""

import pytest

from app.modules.billing.domain.billing.state_machine import (
    LifecycleEvent,
    SubscriptionStatus,
    can_transition,
    next_status,
)
from app.shared.core.exceptions import ConflictError

S = SubscriptionStatus
E = LifecycleEvent


class TestTransitions:
    @pytest.mark.parametrize(
        "current,event,expected",
        [
            (S.TRIAL, E.PAYMENT_SUCCEEDED, S.ACTIVE),
            (S.PAST_DUE, E.PAYMENT_SUCCEEDED, S.ACTIVE),
            (S.ACTIVE, E.PAYMENT_FAILED, S.PAST_DUE),
            (S.PAST_DUE, E.DUNNING_EXHAUSTED, S.CANCELED),
            (S.ACTIVE, E.CANCEL, S.CANCELED),
            (S.TRIAL, E.PERIOD_ENDED, S.CANCELED),
            (S.CANCELED, E.REACTIVATE, S.ACTIVE),
        ],
    )
    def test_allowed(self, current, event, expected) -> None:
        assert next_status(current, event).status is expected

    @pytest.mark.parametrize(
        "current,event",
        [
            (S.CANCELED, E.PAYMENT_SUCCEEDED),
            (S.CANCELED, E.CANCEL),
            (S.ACTIVE, E.REACTIVATE),
            (S.ACTIVE, E.DUNNING_EXHAUSTED),
            (S.ACTIVE, E.UNSUSPEND),
        ],
    )
    def test_rejected(self, current, event) -> None:
        with pytest.raises(ConflictError) as exc:
            next_status(current, event)
        assert exc.value.code == "invalid_transition"
        assert can_transition(current, event) is False

    def test_accepts_plain_strings(self) -> None:
        assert next_status("active", E.PAYMENT_FAILED).status is S.PAST_DUE


class TestSuspension:
    def test_suspend_remembers_prior_status(self) -> None:
        decision = next_status(S.PAST_DUE, E.SUSPEND)

        assert decision.status is S.SUSPENDED
        assert decision.suspended_from is S.PAST_DUE

    def test_double_suspend_rejected(self) -> None:
        with pytest.raises(ConflictError):
            next_status(S.SUSPENDED, E.SUSPEND, suspended_from=S.ACTIVE)

    def test_unsuspend_restores_prior_status(self) -> None:
        decision = next_status(S.SUSPENDED, E.UNSUSPEND, suspended_from="past_due")

        assert decision.status is S.PAST_DUE

    def test_billing_event_while_suspended_updates_remembered_status(self) -> None:
        decision = next_status(S.SUSPENDED, E.PAYMENT_FAILED, suspended_from=S.ACTIVE)

        assert decision.status is S.SUSPENDED
        assert decision.suspended_from is S.PAST_DUE

    def test_reactivate_while_suspended_rejected(self) -> None:
        with pytest.raises(ConflictError):
            next_status(S.SUSPENDED, E.REACTIVATE, suspended_from=S.CANCELED)

    def test_invalid_underlying_transition_rejected(self) -> None:
        with pytest.raises(ConflictError):
            next_status(S.SUSPENDED, E.DUNNING_EXHAUSTED, suspended_from=S.ACTIVE)
