"""Rate limiting data models.

This module contains the endpoint classes, per-class configuration and the
window state kept in the store.
"""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Optional

from starlette.requests import Request

KeyGenerator = Callable[[Request], str]


class EndpointClass(str, Enum):
    """Protected endpoint classes, each with its own quota."""
    WEBHOOK = "webhook"
    SUBSCRIPTION_READ = "subscription_read"
    CHECKOUT_CREATE = "checkout_create"
    PORTAL_ACCESS = "portal_access"
    SUBSCRIPTION_MODIFY = "subscription_modify"
    GENERAL = "general"


@dataclass(frozen=True)
class RateLimitConfig:
    """Static quota for one endpoint class.

    fail_open=None defers to settings.rate_limit_fail_open.
    """
    window_seconds: float
    max_requests: int
    key_generator: Optional[KeyGenerator] = None
    fail_open: Optional[bool] = None


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    success: bool
    limit: int
    remaining: int
    reset_time: int
    retry_after: Optional[int] = None


@dataclass
class RateLimitRecord:
    """Counter for one key within one window.

    A record past its window_end is never reused: the next request starts
    a fresh window.
    """
    key: str
    count: int
    window_start: float
    window_end: float

    def is_expired(self, now: float) -> bool:
        return now > self.window_end

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RateLimitRecord":
        return cls(
            key=data["key"],
            count=int(data["count"]),
            window_start=float(data["window_start"]),
            window_end=float(data["window_end"]),
        )


@dataclass
class RateLimitAnalytics:
    """Read-only view of a caller's current window."""
    endpoint: str
    limit: int
    current: int
    remaining: int
    reset_at: float
    is_limited: bool
