import httpx
import pytest
import respx

from app.shared.core.config import get_settings
from app.shared.core.http import (
    USER_AGENT,
    close_http_client,
    get_http_client,
    init_http_client,
)


@pytest.fixture(autouse=True)
async def cleanup_http_singleton():
    """Ensure a clean singleton state for every test."""
    await close_http_client()
    yield
    await close_http_client()


@pytest.mark.asyncio
async def test_http_client_singleton():
    await init_http_client()
    client1 = get_http_client()
    client2 = get_http_client()

    assert client1 is client2
    assert client1.is_closed is False

    await close_http_client()
    # Lazily re-created after close.
    client3 = get_http_client()
    assert client3 is not client1
    assert client3.is_closed is False


@pytest.mark.asyncio
async def test_http_client_settings():
    await init_http_client()
    client = get_http_client()

    assert client.timeout.read == get_settings().GATEWAY_TIMEOUT_SECONDS
    assert client.timeout.connect == 10.0
    assert client.headers["User-Agent"] == USER_AGENT

    with respx.mock:
        respx.get("https://gateway.test/v1/ping").mock(return_value=httpx.Response(200))
        response = await client.get("https://gateway.test/v1/ping")
        assert response.status_code == 200


@pytest.mark.asyncio
async def test_init_is_idempotent():
    await init_http_client()
    first = get_http_client()
    await init_http_client()

    assert get_http_client() is first


@pytest.mark.asyncio
async def test_close_without_client_is_noop():
    await close_http_client()
    await close_http_client()
