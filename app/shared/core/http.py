"""
Shared async HTTP client.

One pooled httpx.AsyncClient serves the FastAPI process and Celery workers;
the gateway client borrows it instead of opening a client per request.
"""

import inspect
from typing import Optional

import httpx
import structlog

from app.shared.core.config import get_settings

logger = structlog.get_logger()

_client: Optional[httpx.AsyncClient] = None

USER_AGENT = "Parley-Billing/0.1"


def _build_client(max_connections: int, keepalive: int) -> httpx.AsyncClient:
    settings = get_settings()
    return httpx.AsyncClient(
        http2=True,
        timeout=httpx.Timeout(settings.GATEWAY_TIMEOUT_SECONDS, connect=10.0),
        limits=httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=keepalive,
            keepalive_expiry=30.0,
        ),
        headers={"User-Agent": USER_AGENT},
    )


def get_http_client() -> httpx.AsyncClient:
    """Return the process-wide client, creating it lazily for workers and scripts."""
    global _client
    if _client is None:
        logger.warning("http_client_lazy_initialized", msg="Client was not pre-initialized")
        _client = _build_client(max_connections=100, keepalive=20)
    return _client


async def init_http_client() -> None:
    """Create the shared client during application startup."""
    global _client
    if _client is not None:
        logger.warning("http_client_already_initialized")
        return
    _client = _build_client(max_connections=200, keepalive=50)
    logger.info("http_client_initialized", http2=True, max_connections=200)


async def close_http_client() -> None:
    """Close the shared client and flush its connection pool."""
    global _client
    client, _client = _client, None
    if client is None:
        return
    close_result = client.aclose()
    if inspect.isawaitable(close_result):
        await close_result
    logger.info("http_client_closed")
