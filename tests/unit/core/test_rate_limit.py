from unittest.mock import MagicMock

from starlette.datastructures import Headers

from app.shared.core.rate_limit import context_aware_key, get_limiter


def mock_request(headers=None):
    req = MagicMock()
    req.headers = Headers(headers or {})
    req.client = MagicMock()
    req.client.host = "127.0.0.1"
    return req


def test_context_aware_key_prefers_token_hash():
    key = context_aware_key(mock_request({"Authorization": "Bearer abc.def"}))

    assert key.startswith("token:")
    assert len(key) == len("token:") + 16
    assert "abc" not in key


def test_context_aware_key_falls_back_to_ip():
    assert context_aware_key(mock_request()) == "127.0.0.1"
    assert context_aware_key(mock_request({"Authorization": "Basic xyz"})) == "127.0.0.1"


def test_limiter_disabled_under_tests():
    limiter = get_limiter()

    assert limiter is get_limiter()
    assert limiter.enabled is False
