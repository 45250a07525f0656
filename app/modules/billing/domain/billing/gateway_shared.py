"""Shared runtime state and primitives for billing modules."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from app.shared.core.config import get_settings
from app.shared.core.exceptions import ValidationError

logger = structlog.get_logger()

SYSTEM_WEBHOOK_ACTOR = "system:webhook"
SYSTEM_SWEEP_ACTOR = "system:sweep"

__all__ = [
    "logger",
    "get_settings",
    "SYSTEM_WEBHOOK_ACTOR",
    "SYSTEM_SWEEP_ACTOR",
    "utcnow",
    "from_unix",
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def from_unix(value: Any, field: str = "timestamp") -> Optional[datetime]:
    """
    Gateway timestamps are unix seconds.

    Anything that is not a number in the platform's datetime range is a
    malformed payload, never a crash.
    """
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(
            f"Field '{field}' is not a unix timestamp",
            code="invalid_payload",
            details={"field": field},
        )
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (ValueError, OverflowError, OSError) as exc:
        raise ValidationError(
            f"Field '{field}' is out of range",
            code="invalid_payload",
            details={"field": field},
        ) from exc
