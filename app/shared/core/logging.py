import logging
import re
import sys
from typing import Any, cast

import structlog
from opentelemetry import trace

from app.shared.core.config import get_settings

_EMAIL_RE = re.compile(r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+")
# 13-19 digit runs, optionally grouped, are treated as card numbers.
_CARD_RE = re.compile(r"(?<!\d)(?:\d[ -]?){12,18}\d(?!\d)")

_SENSITIVE_KEYS = {
    "password",
    "token",
    "secret",
    "authorization",
    "api_key",
    "apikey",
    "signature",
    "card_number",
    "cvc",
    "iban",
    "account_number",
    "contact_email",
    "email",
}
_SENSITIVE_SUFFIXES = ("_token", "_secret", "_password", "_key", "_signature")


def _is_sensitive_key(key: Any) -> bool:
    normalized = str(key).lower().strip().replace("-", "_")
    if normalized in _SENSITIVE_KEYS or normalized.endswith(_SENSITIVE_SUFFIXES):
        return True
    return any(part in _SENSITIVE_KEYS for part in normalized.split("_") if part)


def _redact_text(text: str) -> str:
    text = _EMAIL_RE.sub("[EMAIL_REDACTED]", text)
    return _CARD_RE.sub("[CARD_REDACTED]", text)


def _redact(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            key: ("[REDACTED]" if _is_sensitive_key(key) else _redact(value))
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [_redact(item) for item in data]
    if isinstance(data, str):
        return _redact_text(data)
    return data


def pii_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Redact secrets, signatures, emails and card numbers before rendering.

    Webhook payloads and gateway errors are logged in places; they must never
    carry cardholder data or signing material into log sinks.
    """
    redacted = _redact(event_dict)
    if isinstance(redacted, dict):
        return cast(dict[str, Any], redacted)
    return {}


def add_otel_trace_id(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Integrate OTel Trace IDs into structured logs."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
    return event_dict


def setup_logging() -> None:
    settings = get_settings()

    base_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        add_otel_trace_id,
        pii_redactor,
    ]

    if settings.DEBUG:
        renderer: Any = structlog.dev.ConsoleRenderer()
        processors = base_processors + [renderer]
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        processors = base_processors + [structlog.processors.dict_tracebacks, renderer]
        min_level = logging.INFO

    structlog.configure(
        processors=cast(Any, processors),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Route stdlib logging (uvicorn, celery, sqlalchemy) to the same stream.
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=min_level)
