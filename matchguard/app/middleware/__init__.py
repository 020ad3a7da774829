"""Middleware package for matchguard."""

from matchguard.app.middleware.chain import ProtectedEndpoint
from matchguard.app.middleware.rate_limit.middleware import RateLimitMiddleware
from matchguard.app.middleware.request_id import RequestIdMiddleware, get_request_id
from matchguard.app.middleware.request_size import RequestSizeLimitMiddleware

__all__ = [
    "ProtectedEndpoint",
    "RateLimitMiddleware",
    "RequestIdMiddleware",
    "RequestSizeLimitMiddleware",
    "get_request_id",
]
