"""Input validation and sanitization for the subscription APIs."""

from matchguard.app.middleware.validation.metrics import (
    ValidationMetricsCollector,
    validation_metrics,
)
from matchguard.app.middleware.validation.sanitizer import InputSanitizer
from matchguard.app.middleware.validation.schemas import (
    CancelRequest,
    CheckoutRequest,
    PortalRequest,
    ReactivateRequest,
    SubscriptionStatusQuery,
    UsageRequest,
    WebhookEvent,
)
from matchguard.app.middleware.validation.security import SECURITY_PATTERNS, scan_payload
from matchguard.app.middleware.validation.validator import (
    RequestValidator,
    errors_from_pydantic,
    with_validation,
)

__all__ = [
    "CancelRequest",
    "CheckoutRequest",
    "InputSanitizer",
    "PortalRequest",
    "ReactivateRequest",
    "RequestValidator",
    "SECURITY_PATTERNS",
    "SubscriptionStatusQuery",
    "UsageRequest",
    "ValidationMetricsCollector",
    "WebhookEvent",
    "errors_from_pydantic",
    "scan_payload",
    "validation_metrics",
    "with_validation",
]
