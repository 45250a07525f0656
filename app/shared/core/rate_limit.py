"""
Rate limiting for the billing API.

Uses slowapi (built on the limits library). REDIS_URL shares counters across
replicas; without it limits are per process. The webhook endpoint is never
limited: the gateway's redelivery schedule must not be throttled.
"""

import hashlib
from typing import Any, Callable, cast

import structlog
from fastapi import FastAPI, Request
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from app.shared.core.config import get_settings

__all__ = [
    "get_limiter",
    "setup_rate_limiting",
    "rate_limit",
    "admin_limit",
    "read_limit",
]

logger = structlog.get_logger()

_limiter: Limiter | None = None


def context_aware_key(request: Request) -> str:
    """
    Identifies the requester for rate limiting.
    1. Bearer token hash, so operators behind one NAT are not lumped together.
    2. Remote IP otherwise.
    """
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1]
        return f"token:{hashlib.sha256(token.encode()).hexdigest()[:16]}"
    return get_remote_address(request)


def get_limiter() -> Limiter:
    """Lazy initialization of the Limiter instance."""
    global _limiter
    if _limiter is None:
        settings = get_settings()
        if settings.is_production and not settings.REDIS_URL:
            logger.warning(
                "rate_limiting_in_memory",
                msg="REDIS_URL is not set; limits are enforced per process.",
            )
        _limiter = Limiter(
            key_func=context_aware_key,
            storage_uri=settings.REDIS_URL or "memory://",
            strategy="fixed-window",
            enabled=settings.RATELIMIT_ENABLED and not settings.TESTING,
        )
    return _limiter


def setup_rate_limiting(app: FastAPI) -> None:
    limiter = get_limiter()
    app.state.limiter = limiter

    def _rate_limit_handler(request: Request, exc: Exception) -> Any:
        return _rate_limit_exceeded_handler(request, cast(RateLimitExceeded, exc))

    app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)
    logger.info("rate_limiting_configured", enabled=limiter.enabled)


def rate_limit(
    limit: str | Callable[..., str],
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Decorator to apply rate limiting to an endpoint.

    The limiter checks its own `enabled` flag per request, so the decorator
    is always applied.
    """
    return cast(
        Callable[[Callable[..., Any]], Callable[..., Any]], get_limiter().limit(limit)
    )


def _admin_limit_value() -> str:
    return get_settings().RATELIMIT_ADMIN


def _read_limit_value() -> str:
    return get_settings().RATELIMIT_READ


def admin_limit(func: Callable[..., Any]) -> Callable[..., Any]:
    """Limit for state-changing operator endpoints."""
    return rate_limit(_admin_limit_value)(func)


def read_limit(func: Callable[..., Any]) -> Callable[..., Any]:
    return rate_limit(_read_limit_value)(func)
