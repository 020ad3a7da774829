"""Error classification and structured error responses.

Every rejected request gets the same JSON body shape::

    {"error": true, "type": ..., "message": ..., "code": ...,
     "timestamp": ..., "request_id": ..., "retryable": ...}

``details`` and ``stack`` are added only outside production.
"""

import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from matchguard.app.core.config import settings
from matchguard.app.core.identity import get_client_ip, get_user_id
from matchguard.app.core.logging import get_logger
from matchguard.app.exceptions import (
    GuardException,
    RateLimitExceededError,
    StoreError,
    ValidationException,
)

logger = get_logger(__name__)

DEFAULT_RETRY_AFTER = 60
NETWORK_ERROR_CODES = frozenset({"ECONNREFUSED", "ECONNRESET", "ENOTFOUND", "ETIMEDOUT"})


class ErrorType(str, Enum):
    VALIDATION = "validation_error"
    AUTHENTICATION = "authentication_error"
    AUTHORIZATION = "authorization_error"
    NOT_FOUND = "not_found_error"
    RATE_LIMIT = "rate_limit_error"
    PAYMENT = "stripe_error"
    DATABASE = "database_error"
    NETWORK = "network_error"
    INTERNAL = "internal_error"
    BUSINESS_LOGIC = "business_logic_error"
    SECURITY = "security_error"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


STATUS_CODES: dict[ErrorType, int] = {
    ErrorType.VALIDATION: 400,
    ErrorType.AUTHENTICATION: 401,
    ErrorType.AUTHORIZATION: 403,
    ErrorType.NOT_FOUND: 404,
    ErrorType.RATE_LIMIT: 429,
    ErrorType.PAYMENT: 400,
    ErrorType.BUSINESS_LOGIC: 400,
    ErrorType.DATABASE: 500,
    ErrorType.NETWORK: 500,
    ErrorType.INTERNAL: 500,
    ErrorType.SECURITY: 403,
}

LOG_LEVELS: dict[ErrorSeverity, int] = {
    ErrorSeverity.LOW: logging.INFO,
    ErrorSeverity.MEDIUM: logging.WARNING,
    ErrorSeverity.HIGH: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}

# Provider error type -> (severity, user message, retryable)
PAYMENT_ERRORS: dict[str, tuple[ErrorSeverity, str, bool]] = {
    "StripeCardError": (
        ErrorSeverity.LOW,
        "Your card was declined. Please try a different payment method.",
        False,
    ),
    "StripeRateLimitError": (
        ErrorSeverity.HIGH,
        "Too many requests. Please wait a moment and try again.",
        True,
    ),
    "StripeInvalidRequestError": (
        ErrorSeverity.MEDIUM,
        "Invalid payment request. Please contact support.",
        False,
    ),
    "StripeAPIError": (
        ErrorSeverity.HIGH,
        "Payment service temporarily unavailable. Please try again.",
        True,
    ),
    "StripeConnectionError": (
        ErrorSeverity.HIGH,
        "Connection error. Please check your internet and try again.",
        True,
    ),
    "StripeAuthenticationError": (
        ErrorSeverity.CRITICAL,
        "Payment authentication failed. Please contact support.",
        False,
    ),
}


@dataclass
class ErrorContext:
    user_id: Optional[str] = None
    request_id: Optional[str] = None
    endpoint: Optional[str] = None
    method: Optional[str] = None
    user_agent: Optional[str] = None
    ip: Optional[str] = None
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_request(cls, request: Request) -> "ErrorContext":
        return cls(
            user_id=get_user_id(request),
            request_id=getattr(request.state, "request_id", None),
            endpoint=request.url.path,
            method=request.method,
            user_agent=request.headers.get("user-agent"),
            ip=get_client_ip(request),
        )


@dataclass
class StructuredError:
    type: ErrorType
    severity: ErrorSeverity
    message: str
    code: str
    status_code: int
    context: ErrorContext
    details: Optional[dict[str, Any]] = None
    stack: Optional[str] = None
    retryable: bool = False
    user_message: Optional[str] = None
    headers: dict[str, str] = field(default_factory=dict)


def _attr_str(exc: BaseException, name: str) -> str:
    value = getattr(exc, name, None)
    return value if isinstance(value, str) else ""


def _status_of(exc: BaseException) -> Optional[int]:
    for name in ("status_code", "status"):
        value = getattr(exc, name, None)
        if isinstance(value, int):
            return value
    return None


def is_payment_error(exc: BaseException) -> bool:
    return (
        type(exc).__name__.startswith("Stripe")
        or _attr_str(exc, "type").startswith("Stripe")
        or _attr_str(exc, "code").startswith("stripe_")
    )


def is_database_error(exc: BaseException) -> bool:
    code = _attr_str(exc, "code")
    return isinstance(exc, StoreError) or code.startswith("23") or code.startswith("PGRST")


def is_network_error(exc: BaseException) -> bool:
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    if _attr_str(exc, "code") in NETWORK_ERROR_CODES:
        return True
    return bool(getattr(exc, "syscall", None) or getattr(exc, "errno", None))


def is_authentication_error(exc: BaseException) -> bool:
    message = str(exc)
    return _status_of(exc) == 401 or "Unauthorized" in message or "Authentication" in message


def is_rate_limit_error(exc: BaseException) -> bool:
    return (
        isinstance(exc, RateLimitExceededError)
        or _status_of(exc) == 429
        or "rate limit" in str(exc).lower()
    )


def _validation(exc: BaseException, context: ErrorContext) -> StructuredError:
    if isinstance(exc, ValidationException):
        errors = [
            {k: v for k, v in e.to_dict().items() if k != "value"} for e in exc.errors
        ]
        security = exc.is_security_violation
        return StructuredError(
            type=ErrorType.VALIDATION,
            severity=ErrorSeverity.MEDIUM if security else ErrorSeverity.LOW,
            message="Input validation failed",
            code=exc.code,
            status_code=exc.status_code,
            context=context,
            details={"field_errors": errors},
            retryable=exc.status_code >= 500,
            user_message=exc.errors[0].message if exc.errors else None,
        )

    raw = exc.errors() if hasattr(exc, "errors") else []
    errors = [
        {
            "field": ".".join(str(p) for p in err.get("loc", ())),
            "message": err.get("msg", ""),
            "code": err.get("type", ""),
        }
        for err in raw
    ]
    return StructuredError(
        type=ErrorType.VALIDATION,
        severity=ErrorSeverity.LOW,
        message="Input validation failed",
        code="validation_error",
        status_code=400,
        context=context,
        details={"field_errors": errors},
        user_message="Please check your input and try again.",
    )


def _rate_limit(exc: BaseException, context: ErrorContext) -> StructuredError:
    retry_after = getattr(exc, "retry_after", None) or DEFAULT_RETRY_AFTER
    limit = getattr(exc, "limit", 0)
    headers = (
        exc.headers
        if isinstance(exc, RateLimitExceededError)
        else {
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": "0",
            "Retry-After": str(retry_after),
        }
    )
    return StructuredError(
        type=ErrorType.RATE_LIMIT,
        severity=ErrorSeverity.MEDIUM,
        message="Rate limit exceeded",
        code="rate_limit_exceeded",
        status_code=429,
        context=context,
        details={
            "limit": limit,
            "remaining": getattr(exc, "remaining", 0),
            "retry_after": retry_after,
        },
        retryable=True,
        user_message="Too many requests. Please wait a moment and try again.",
        headers=dict(headers),
    )


def _payment(exc: BaseException, context: ErrorContext) -> StructuredError:
    error_type = _attr_str(exc, "type") or type(exc).__name__
    severity, user_message, retryable = PAYMENT_ERRORS.get(
        error_type,
        (ErrorSeverity.MEDIUM, "Payment processing error. Please try again.", False),
    )
    return StructuredError(
        type=ErrorType.PAYMENT,
        severity=severity,
        message=f"Payment provider error: {exc}",
        code=error_type.upper(),
        status_code=STATUS_CODES[ErrorType.PAYMENT],
        context=context,
        details={
            "provider_code": getattr(exc, "code", None),
            "decline_code": getattr(exc, "decline_code", None),
        },
        retryable=retryable,
        user_message=user_message,
    )


def _database(exc: BaseException, context: ErrorContext) -> StructuredError:
    code = _attr_str(exc, "code")
    severity = ErrorSeverity.HIGH
    user_message = "Database error. Please try again."
    if code == "23505":
        severity = ErrorSeverity.MEDIUM
        user_message = "This record already exists."
    elif code == "23503":
        severity = ErrorSeverity.MEDIUM
        user_message = "Invalid reference. Please check your data."
    elif code == "PGRST301":
        severity = ErrorSeverity.LOW
        user_message = "Record not found."

    return StructuredError(
        type=ErrorType.DATABASE,
        severity=severity,
        message=f"Database error: {exc}",
        code=code.upper() or "DATABASE_ERROR",
        status_code=_status_of(exc) or STATUS_CODES[ErrorType.DATABASE],
        context=context,
        details={"hint": getattr(exc, "hint", None), "detail": getattr(exc, "detail", None)},
        retryable=code not in ("23505", "23503"),
        user_message=user_message,
    )


def _network(exc: BaseException, context: ErrorContext) -> StructuredError:
    return StructuredError(
        type=ErrorType.NETWORK,
        severity=ErrorSeverity.MEDIUM,
        message=f"Network error: {exc}",
        code="NETWORK_ERROR",
        status_code=STATUS_CODES[ErrorType.NETWORK],
        context=context,
        details={"errno": getattr(exc, "errno", None), "syscall": getattr(exc, "syscall", None)},
        retryable=True,
        user_message="Connection error. Please check your internet and try again.",
    )


def _authentication(exc: BaseException, context: ErrorContext) -> StructuredError:
    return StructuredError(
        type=ErrorType.AUTHENTICATION,
        severity=ErrorSeverity.MEDIUM,
        message=f"Authentication error: {exc}",
        code="AUTH_FAILED",
        status_code=401,
        context=context,
        user_message="Please sign in and try again.",
    )


def _http(exc: StarletteHTTPException, context: ErrorContext) -> StructuredError:
    error_type = {
        403: ErrorType.AUTHORIZATION,
        404: ErrorType.NOT_FOUND,
    }.get(exc.status_code)
    if error_type is None:
        error_type = ErrorType.INTERNAL if exc.status_code >= 500 else ErrorType.BUSINESS_LOGIC
    return StructuredError(
        type=error_type,
        severity=ErrorSeverity.LOW if exc.status_code < 500 else ErrorSeverity.HIGH,
        message=str(exc.detail),
        code=error_type.value,
        status_code=exc.status_code,
        context=context,
        retryable=exc.status_code >= 500,
        headers=dict(exc.headers or {}),
    )


def _internal(exc: BaseException, context: ErrorContext) -> StructuredError:
    return StructuredError(
        type=ErrorType.INTERNAL,
        severity=ErrorSeverity.HIGH,
        message=f"Internal error: {exc}",
        code="INTERNAL_ERROR",
        status_code=_status_of(exc) or 500,
        context=context,
        stack="".join(traceback.format_exception(exc)),
        retryable=True,
        user_message="Something went wrong. Please try again.",
    )


def classify_error(
    exc: BaseException, context: Optional[ErrorContext] = None
) -> StructuredError:
    """Classify an exception by its type and shape."""
    context = context or ErrorContext()

    if isinstance(exc, (ValidationException, PydanticValidationError, RequestValidationError)):
        return _validation(exc, context)
    if is_rate_limit_error(exc):
        return _rate_limit(exc, context)
    if is_payment_error(exc):
        return _payment(exc, context)
    if is_database_error(exc):
        return _database(exc, context)
    if is_network_error(exc):
        return _network(exc, context)
    if is_authentication_error(exc):
        return _authentication(exc, context)
    if isinstance(exc, StarletteHTTPException):
        return _http(exc, context)
    return _internal(exc, context)


def log_error(error: StructuredError) -> None:
    extra = {
        "request_id": error.context.request_id,
        "user_id": error.context.user_id,
        "path": error.context.endpoint,
        "method": error.context.method,
        "status_code": error.status_code,
        "error_type": error.type.value,
        "error_code": error.code,
    }
    logger.log(LOG_LEVELS[error.severity], error.message, extra=extra)


def to_response(error: StructuredError) -> JSONResponse:
    """Render a classified error as a JSON response."""
    body: dict[str, Any] = {
        "error": True,
        "type": error.type.value,
        "message": error.user_message or error.message,
        "code": error.code,
        "timestamp": error.context.timestamp,
        "request_id": error.context.request_id,
        "retryable": error.retryable,
    }
    if error.type == ErrorType.VALIDATION and error.details:
        body["errors"] = error.details["field_errors"]
    if settings.debug or not settings.is_production:
        body["details"] = error.details
        body["stack"] = error.stack

    headers = dict(error.headers)
    if error.retryable:
        headers.setdefault("Retry-After", str(DEFAULT_RETRY_AFTER))

    return JSONResponse(status_code=error.status_code, content=body, headers=headers)


def handle_exception(request: Request, exc: BaseException) -> JSONResponse:
    error = classify_error(exc, ErrorContext.from_request(request))
    log_error(error)
    return to_response(error)


def register_exception_handlers(app: FastAPI) -> None:
    """Route every error through classify_error and to_response."""

    @app.exception_handler(GuardException)
    async def guard_exception_handler(request: Request, exc: GuardException) -> JSONResponse:
        return handle_exception(request, exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return handle_exception(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        return handle_exception(request, exc)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Last-resort handler. Tracebacks are logged and only returned
        outside production."""
        request_id = getattr(request.state, "request_id", "unknown")
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={"request_id": request_id, "exception_type": type(exc).__name__},
        )
        return to_response(classify_error(exc, ErrorContext.from_request(request)))
