"""Custom exceptions for the protection stack."""

from dataclasses import asdict, dataclass
from typing import Any, Optional

_MISSING = object()


class GuardException(Exception):
    """Base class for matchguard exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code and code for consistent HTTP response handling.
    """
    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str = "Request protection error"):
        self.message = message
        super().__init__(message)


@dataclass
class ValidationError:
    """A single field-level validation failure.

    Never persisted; collected into a ValidationException.
    """
    field: str
    message: str
    code: str
    value: Any = _MISSING

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.value is _MISSING:
            data.pop("value")
        return data


class ValidationException(GuardException):
    """Raised with every validation error found in one pass.

    Maps to HTTP 400 by default; oversized payloads use 413.
    """

    def __init__(self, errors: list[ValidationError], status_code: int = 400):
        self.errors = list(errors)
        self.status_code = status_code
        self.code = self.errors[0].code if self.errors else "validation_error"
        super().__init__("Validation failed")

    @property
    def is_security_violation(self) -> bool:
        return any(e.code == "security_violation" for e in self.errors)


class RateLimitExceededError(GuardException):
    """Raised when a caller exhausts the quota of an endpoint class.

    Maps to HTTP 429 Too Many Requests and carries the retry metadata.
    """
    status_code = 429
    code = "rate_limit_error"

    def __init__(
        self,
        limit: int,
        reset_time: int,
        retry_after: Optional[int] = None,
        remaining: int = 0,
    ):
        self.limit = limit
        self.remaining = remaining
        self.reset_time = reset_time
        self.retry_after = retry_after or 60
        super().__init__(
            f"Rate limit exceeded. Retry after {self.retry_after} seconds."
        )

    @property
    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(self.reset_time),
            "Retry-After": str(self.retry_after),
        }


class StoreError(GuardException):
    """Raised by a TTL store backend when a read or write fails."""
    status_code = 503
    code = "store_error"
