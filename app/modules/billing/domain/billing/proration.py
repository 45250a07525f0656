"""
Proration for mid-cycle plan changes.

All amounts are integer minor units (cents). The only rounding happens once,
on the final amount, half away from zero (the `decimal.ROUND_HALF_UP`
convention), so repeated plan changes cannot accumulate drift.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.shared.core.exceptions import ValidationError


@dataclass(frozen=True)
class ProrationResult:
    """Signed amount: positive is a charge due, negative a credit owed."""

    amount_minor: int
    currency: str
    basis: dict[str, Any] = field(default_factory=dict)

    @property
    def is_charge(self) -> bool:
        return self.amount_minor > 0

    @property
    def is_credit(self) -> bool:
        return self.amount_minor < 0

    def describe(self) -> str:
        remaining_days = self.basis.get("remaining_seconds", 0) / 86400
        return (
            f"{self.basis.get('price_delta_minor', 0):+d} {self.currency} minor units "
            f"prorated over {remaining_days:.2f} of "
            f"{self.basis.get('cycle_seconds', 0) / 86400:.2f} days"
        )


def _round_half_up_div(numerator: int, denominator: int) -> int:
    """Integer division rounded half away from zero."""
    quotient, remainder = divmod(abs(numerator), denominator)
    if remainder * 2 >= denominator:
        quotient += 1
    return quotient if numerator >= 0 else -quotient


def prorate(
    old_price_minor: int,
    new_price_minor: int,
    cycle_seconds: int,
    elapsed_seconds: int,
    currency: str = "USD",
) -> ProrationResult:
    """
    Amount due for switching plans immediately at `elapsed_seconds` into a cycle.

    Day 0 yields the full price delta; the last moment of the cycle yields
    zero. Elapsed time outside the cycle is clamped.
    """
    if cycle_seconds <= 0:
        raise ValidationError("Billing cycle length must be positive")
    if old_price_minor < 0 or new_price_minor < 0:
        raise ValidationError("Plan prices cannot be negative")

    remaining = min(max(cycle_seconds - int(elapsed_seconds), 0), cycle_seconds)
    delta = int(new_price_minor) - int(old_price_minor)
    amount = _round_half_up_div(delta * remaining, cycle_seconds)

    return ProrationResult(
        amount_minor=amount,
        currency=currency.upper(),
        basis={
            "old_price_minor": int(old_price_minor),
            "new_price_minor": int(new_price_minor),
            "price_delta_minor": delta,
            "cycle_seconds": int(cycle_seconds),
            "remaining_seconds": remaining,
            "rounding": "half_up",
        },
    )


def prorate_for_period(
    old_price_minor: int,
    new_price_minor: int,
    period_start: datetime,
    period_end: datetime,
    at: datetime,
    currency: str = "USD",
) -> ProrationResult:
    """`prorate` with the cycle taken from a subscription's current period."""
    cycle_seconds = int((period_end - period_start).total_seconds())
    elapsed_seconds = int((at - period_start).total_seconds())
    return prorate(old_price_minor, new_price_minor, cycle_seconds, elapsed_seconds, currency)
