from typing import Optional, Dict, Any


class ParleyException(Exception):
    """Base exception for all Parley errors."""

    # invalid_request: the caller must change the request.
    # retry_later: the system will self-heal; the same request may be retried.
    # operator_required: a human has to look at it.
    disposition = "operator_required"
    retryable = False

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class ValidationError(ParleyException):
    """Raised when a request is malformed or violates a business rule."""

    disposition = "invalid_request"

    def __init__(
        self,
        message: str,
        code: str = "validation_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=400, details=details)


class AuthenticationError(ParleyException):
    """Raised when a signature or credential cannot be verified."""

    disposition = "invalid_request"

    def __init__(
        self,
        message: str,
        code: str = "auth_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=401, details=details)


class AuthorizationError(ParleyException):
    """Raised when an authenticated actor lacks permission."""

    disposition = "invalid_request"

    def __init__(
        self,
        message: str,
        code: str = "forbidden",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=403, details=details)


class ResourceNotFoundError(ParleyException):
    """Raised when a requested resource is not found."""

    disposition = "invalid_request"

    def __init__(
        self,
        message: str,
        code: str = "not_found",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=404, details=details)


class ConflictError(ParleyException):
    """Raised when a transition is not permitted from the current state."""

    disposition = "invalid_request"

    def __init__(
        self,
        message: str,
        code: str = "conflict",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=409, details=details)


class GatewayError(ParleyException):
    """
    Raised when a payment gateway call fails.

    `retryable` follows the gateway's own classification: timeouts, connection
    failures, rate limiting and 5xx responses are retryable; other rejections
    are not.
    """

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        code: str = "gateway_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message,
            code=code,
            status_code=503 if retryable else 502,
            details=details,
        )
        self.retryable = retryable
        self.disposition = "retry_later" if retryable else "operator_required"


class TransientInfraError(ParleyException):
    """Raised on datastore or network hiccups; always retryable."""

    disposition = "retry_later"
    retryable = True

    def __init__(
        self,
        message: str,
        code: str = "transient_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=503, details=details)


class ConfigurationError(ParleyException):
    """Raised when application configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        code: str = "config_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=500, details=details)
