from types import SimpleNamespace

import pytest

from app.modules.billing.domain.billing.dunning_policy import DunningPolicy


def _sub(status: str, attempts: int):
    return SimpleNamespace(status=status, dunning_attempts=attempts)


def test_from_settings_uses_configured_threshold():
    assert DunningPolicy.from_settings().max_failures == 3


@pytest.mark.parametrize(
    "status,attempts,exhausted",
    [
        ("past_due", 3, True),
        ("past_due", 4, True),
        ("past_due", 2, False),
        ("active", 5, False),
        ("canceled", 3, False),
    ],
)
def test_is_exhausted(status, attempts, exhausted):
    assert DunningPolicy(max_failures=3).is_exhausted(_sub(status, attempts)) is exhausted


def test_underlying_status_used_for_suspended_subscription():
    policy = DunningPolicy(max_failures=3)

    assert policy.is_exhausted(_sub("suspended", 3), underlying_status="past_due") is True
    assert policy.is_exhausted(_sub("suspended", 3)) is False


def test_remaining_attempts_never_negative():
    policy = DunningPolicy(max_failures=3)

    assert policy.remaining_attempts(_sub("past_due", 1)) == 2
    assert policy.remaining_attempts(_sub("past_due", None)) == 3
    assert policy.remaining_attempts(_sub("past_due", 7)) == 0
