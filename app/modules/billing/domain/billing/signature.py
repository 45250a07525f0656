"""Webhook signature verification for gateway deliveries."""

from __future__ import annotations

import hashlib
import hmac
import time
from typing import Optional

from .gateway_shared import logger

SIGNATURE_SCHEME = "v1"
DEFAULT_TOLERANCE_SECONDS = 300


def compute_signature(raw_body: bytes, secret: str, timestamp: int) -> str:
    """HMAC-SHA256 over `<timestamp>.<raw body>`, hex encoded."""
    signed_payload = str(timestamp).encode() + b"." + raw_body
    return hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()


def build_signature_header(raw_body: bytes, secret: str, timestamp: int) -> str:
    return f"t={timestamp},{SIGNATURE_SCHEME}={compute_signature(raw_body, secret, timestamp)}"


def _parse_header(signature_header: str) -> tuple[Optional[int], list[str]]:
    timestamp: Optional[int] = None
    signatures: list[str] = []
    for item in signature_header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == SIGNATURE_SCHEME and value:
            signatures.append(value)
    return timestamp, signatures


def verify_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    *,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """
    Check that `raw_body` was signed by the gateway.

    `raw_body` must be the exact bytes received, before any JSON parsing.
    The header carries a unix timestamp and one or more `v1` signatures
    (several during secret rotation). Deliveries older or newer than
    `tolerance_seconds` are rejected to stop replays. Never raises.
    """
    if not signature_header:
        logger.warning("webhook_signature_missing")
        return False
    if not secret:
        logger.error("webhook_secret_not_configured")
        return False

    timestamp, signatures = _parse_header(signature_header)
    if timestamp is None or not signatures:
        logger.warning("webhook_signature_malformed")
        return False

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        logger.warning(
            "webhook_signature_outside_tolerance",
            age_seconds=int(current - timestamp),
            tolerance_seconds=tolerance_seconds,
        )
        return False

    expected = compute_signature(raw_body, secret, timestamp)
    is_valid = any(hmac.compare_digest(expected, candidate) for candidate in signatures)
    if not is_valid:
        logger.warning("webhook_signature_mismatch", provided_prefix=signatures[0][:8])
    return is_valid
