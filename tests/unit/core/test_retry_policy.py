"""Tests for gateway retry policy and webhook backoff."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from tenacity import wait_none

from app.shared.core.exceptions import GatewayError, TransientInfraError, ValidationError
from app.shared.core.retry import (
    gateway_retrying,
    is_retryable_error,
    next_retry_at,
    webhook_backoff_seconds,
)


class TestWebhookBackoff:
    @pytest.mark.parametrize(
        "attempts,expected",
        [(1, 60), (2, 120), (3, 240), (4, 480), (7, 3600), (500, 3600)],
    )
    def test_exponential_and_capped(self, attempts: int, expected: int) -> None:
        assert webhook_backoff_seconds(attempts, 60, 3600) == expected

    def test_zero_attempts_uses_base(self) -> None:
        assert webhook_backoff_seconds(0, 60, 3600) == 60

    def test_next_retry_at_uses_settings(self) -> None:
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)

        assert (next_retry_at(now, 2) - now).total_seconds() == 120


class TestRetryClassification:
    def test_retryable_gateway_error(self) -> None:
        assert is_retryable_error(GatewayError("down", retryable=True)) is True
        assert is_retryable_error(GatewayError("declined", retryable=False)) is False

    def test_transient_infra_error(self) -> None:
        assert is_retryable_error(TransientInfraError("db busy")) is True

    def test_other_errors_not_retryable(self) -> None:
        assert is_retryable_error(ValidationError("bad")) is False
        assert is_retryable_error(RuntimeError("boom")) is False


@pytest.mark.asyncio
async def test_gateway_retrying_stops_on_non_retryable() -> None:
    call = AsyncMock(side_effect=GatewayError("declined", retryable=False))

    with pytest.raises(GatewayError):
        async for attempt in gateway_retrying(3, wait=wait_none()):
            with attempt:
                await call()

    assert call.await_count == 1


@pytest.mark.asyncio
async def test_gateway_retrying_retries_then_reraises() -> None:
    call = AsyncMock(side_effect=GatewayError("down", retryable=True))

    with pytest.raises(GatewayError):
        async for attempt in gateway_retrying(3, wait=wait_none()):
            with attempt:
                await call()

    assert call.await_count == 3
