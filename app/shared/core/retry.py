"""
Retry policies.

Two kinds of retry live in the billing core:
- in-call retries of idempotent gateway requests (tenacity, seconds apart);
- scheduled redelivery of failed webhook events (persisted `next_retry_at`,
  minutes to hours apart), computed by `webhook_backoff_seconds`.
"""

from datetime import datetime, timedelta
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from app.shared.core.config import get_settings
from app.shared.core.exceptions import GatewayError, TransientInfraError

logger = structlog.get_logger()


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, GatewayError):
        return exc.retryable
    return isinstance(exc, TransientInfraError)


def _log_before_sleep(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "operation_failed_will_retry",
        attempt=retry_state.attempt_number,
        delay_seconds=round(retry_state.next_action.sleep, 3)
        if retry_state.next_action
        else None,
        error=str(exc) if exc else None,
        error_type=type(exc).__name__ if exc else None,
    )


def gateway_retrying(max_attempts: int | None = None, **overrides: Any) -> AsyncRetrying:
    """
    Tenacity policy for idempotent gateway calls.

    Only retryable errors are retried; the last exception is re-raised
    unchanged so callers see the original GatewayError.
    """
    attempts = max_attempts or get_settings().GATEWAY_MAX_RETRIES
    options: dict[str, Any] = {
        "stop": stop_after_attempt(max(1, attempts)),
        "wait": wait_exponential(multiplier=0.5, min=0.5, max=8),
        "retry": retry_if_exception(is_retryable_error),
        "before_sleep": _log_before_sleep,
        "reraise": True,
    }
    options.update(overrides)
    return AsyncRetrying(**options)


def webhook_backoff_seconds(attempts: int, base_seconds: int, max_seconds: int) -> int:
    """Exponential delay before the next automatic retry: base * 2^(attempts-1), capped."""
    exponent = max(attempts - 1, 0)
    # Cap the exponent so huge attempt counts cannot overflow into giant ints.
    delay = base_seconds * (2 ** min(exponent, 32))
    return int(min(delay, max_seconds))


def next_retry_at(now: datetime, attempts: int) -> datetime:
    settings = get_settings()
    delay = webhook_backoff_seconds(
        attempts, settings.WEBHOOK_RETRY_BASE_SECONDS, settings.WEBHOOK_RETRY_MAX_SECONDS
    )
    return now + timedelta(seconds=delay)
