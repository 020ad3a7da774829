"""Per-endpoint-class rate limit registry and key generators."""

from types import MappingProxyType
from typing import Mapping

from starlette.requests import Request

from matchguard.app.core.identity import get_client_ip, get_user_id
from matchguard.app.middleware.rate_limit.models import EndpointClass, RateLimitConfig


def webhook_key(request: Request) -> str:
    # One global bucket: every delivery comes from the payments provider.
    return "webhook:stripe"


def subscription_read_key(request: Request) -> str:
    return f"sub:read:{get_user_id(request)}"


def checkout_key(request: Request) -> str:
    return f"checkout:{get_user_id(request)}"


def portal_key(request: Request) -> str:
    return f"portal:{get_user_id(request)}"


def subscription_modify_key(request: Request) -> str:
    return f"sub:modify:{get_user_id(request)}"


def general_key(request: Request) -> str:
    return f"ip:{get_client_ip(request)}:{request.url.path}"


RATE_LIMIT_CONFIGS: Mapping[EndpointClass, RateLimitConfig] = MappingProxyType({
    # Provider webhooks - high limit, keyed globally
    EndpointClass.WEBHOOK: RateLimitConfig(
        window_seconds=60, max_requests=100, key_generator=webhook_key
    ),
    # Subscription status checks - moderate limit
    EndpointClass.SUBSCRIPTION_READ: RateLimitConfig(
        window_seconds=60, max_requests=30, key_generator=subscription_read_key
    ),
    # Checkout creation - tightest, each call may open a payment session
    EndpointClass.CHECKOUT_CREATE: RateLimitConfig(
        window_seconds=60, max_requests=5, key_generator=checkout_key
    ),
    # Billing portal access
    EndpointClass.PORTAL_ACCESS: RateLimitConfig(
        window_seconds=60, max_requests=10, key_generator=portal_key
    ),
    # Cancel / reactivate
    EndpointClass.SUBSCRIPTION_MODIFY: RateLimitConfig(
        window_seconds=60, max_requests=3, key_generator=subscription_modify_key
    ),
    # General / public API, per IP
    EndpointClass.GENERAL: RateLimitConfig(
        window_seconds=60, max_requests=60, key_generator=general_key
    ),
})
