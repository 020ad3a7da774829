"""Rate limiting for the subscription and webhook APIs.

Each endpoint class has its own quota and key generator. Windows live in a
shared TTL store that is swept periodically.
"""

from matchguard.app.middleware.rate_limit.configs import RATE_LIMIT_CONFIGS
from matchguard.app.middleware.rate_limit.limiter import (
    RATE_LIMIT_TIERS,
    RateLimiter,
    RateLimitTier,
    create_rate_limiter,
    get_rate_limit_store,
    parse_window,
    rate_limit_by_user_type,
    rate_limit_headers,
    reset_rate_limit_store,
)
from matchguard.app.middleware.rate_limit.models import (
    EndpointClass,
    RateLimitAnalytics,
    RateLimitConfig,
    RateLimitRecord,
    RateLimitResult,
)

__all__ = [
    # Models
    "EndpointClass",
    "RateLimitAnalytics",
    "RateLimitConfig",
    "RateLimitRecord",
    "RateLimitResult",
    "RateLimitTier",
    # Registry
    "RATE_LIMIT_CONFIGS",
    "RATE_LIMIT_TIERS",
    # Main classes and helpers
    "RateLimiter",
    "create_rate_limiter",
    "get_rate_limit_store",
    "reset_rate_limit_store",
    "parse_window",
    "rate_limit_by_user_type",
    "rate_limit_headers",
]
