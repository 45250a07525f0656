"""
Dunning policy - when repeated payment failures end a subscription.

Flow:
1. invoice.payment_failed -> subscription moves to past_due, counter + 1
2. payment succeeds at any point -> counter resets, subscription active
3. counter reaches BILLING_DUNNING_MAX_FAILURES while past_due ->
   gateway cancellation, then dunning_exhausted -> canceled
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from app.models.subscription import TenantSubscription

from .gateway_shared import get_settings
from .state_machine import SubscriptionStatus


@dataclass(frozen=True)
class DunningPolicy:
    max_failures: int

    @classmethod
    def from_settings(cls) -> "DunningPolicy":
        return cls(max_failures=get_settings().BILLING_DUNNING_MAX_FAILURES)

    def is_exhausted(
        self, subscription: TenantSubscription, underlying_status: Optional[str] = None
    ) -> bool:
        """
        True when the subscription should be canceled for non-payment.

        `underlying_status` is the billing status behind a suspension, if any.
        """
        status = underlying_status or subscription.status
        return (
            status == SubscriptionStatus.PAST_DUE.value
            and int(subscription.dunning_attempts or 0) >= self.max_failures
        )

    def remaining_attempts(self, subscription: TenantSubscription) -> int:
        return max(self.max_failures - int(subscription.dunning_attempts or 0), 0)
