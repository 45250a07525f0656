"""
Unified error handling.

Converts exceptions into the JSON error envelope, records an OpenTelemetry
span, increments the API error counter and logs the outcome.
"""

from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from opentelemetry import trace

from app.shared.core.config import get_settings
from app.shared.core.exceptions import ParleyException, ValidationError
from app.shared.core.ops_metrics import API_ERRORS_TOTAL

logger = structlog.get_logger()
tracer = trace.get_tracer(__name__)

# Messages that are safe to return verbatim in production.
SAFE_CODES = {
    "auth_error",
    "not_authenticated",
    "token_expired",
    "invalid_token",
    "forbidden",
    "tenant_required",
    "not_found",
    "subscription_not_found",
    "refund_not_found",
    "webhook_event_not_found",
    "conflict",
    "validation_error",
    "invalid_transition",
    "plan_unchanged",
    "direction_mismatch",
    "cancellation_already_scheduled",
    "refund_not_eligible",
    "refund_limit_exceeded",
    "amount_exceeds_refundable",
    "charge_not_owned",
    "currency_mismatch",
    "charge_fully_refunded",
    "retry_limit_reached",
    "webhook_in_flight",
}


def _classify(request: Request, exc: Exception, error_id: str) -> ParleyException:
    if isinstance(exc, ParleyException):
        return exc
    if isinstance(exc, RequestValidationError):
        validation_error = ValidationError(
            "Invalid request parameters",
            details={"errors": jsonable_encoder(exc.errors())},
        )
        validation_error.status_code = 422
        return validation_error
    logger.exception(
        "unhandled_raw_exception",
        error=str(exc),
        error_id=error_id,
        path=request.url.path,
    )
    return ParleyException(
        "An unexpected internal error occurred",
        code="internal_error",
        status_code=500,
    )


def handle_exception(
    request: Request, exc: Exception, error_id: Optional[str] = None
) -> JSONResponse:
    """
    Classifies and records exceptions, returning a standardized JSON response.
    """
    error_id = error_id or str(uuid4())
    settings = get_settings()
    is_prod = settings.ENVIRONMENT.lower() in ("production", "staging")

    parley_exc = _classify(request, exc, error_id)
    message = parley_exc.message
    response_details: Optional[Dict[str, Any]] = parley_exc.details or None
    if is_prod and parley_exc.code not in SAFE_CODES:
        message = "An error occurred while processing your request"
        response_details = None

    with tracer.start_as_current_span("handle_exception") as span:
        span.set_attribute("error.id", error_id)
        span.set_attribute("error.code", parley_exc.code)
        span.set_attribute("http.path", request.url.path)
        span.set_attribute("http.method", request.method)
        span.record_exception(exc)
        span.set_status(trace.Status(trace.StatusCode.ERROR, parley_exc.code))

    API_ERRORS_TOTAL.labels(
        path=request.url.path,
        method=request.method,
        status_code=parley_exc.status_code,
    ).inc()

    log = logger.warning if parley_exc.status_code < 500 else logger.error
    log(
        "api_error",
        error_id=error_id,
        code=parley_exc.code,
        message=parley_exc.message,
        status_code=parley_exc.status_code,
        disposition=parley_exc.disposition,
        path=request.url.path,
        details=parley_exc.details,
    )

    return JSONResponse(
        status_code=parley_exc.status_code,
        content={
            "error": {
                "message": message,
                "code": parley_exc.code,
                "id": error_id,
                "disposition": parley_exc.disposition,
                "retryable": bool(parley_exc.retryable),
                "details": response_details,
            }
        },
    )
