"""ASGI middleware applying the general per-IP quota to unclassified API requests."""

from typing import Iterable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from matchguard.app.core.store import TTLStore
from matchguard.app.errors import ErrorContext, classify_error, to_response
from matchguard.app.exceptions import RateLimitExceededError
from matchguard.app.middleware.rate_limit.limiter import (
    create_rate_limiter,
    rate_limit_headers,
)
from matchguard.app.middleware.rate_limit.models import EndpointClass


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Enforce the GENERAL endpoint class on paths under ``path_prefix``.

    Paths under ``exclude_prefixes`` are served by routes with their own
    endpoint-class limiter (checkout, webhook, ...) and are skipped, so each
    request counts against exactly one quota.
    """

    def __init__(
        self,
        app,
        path_prefix: str = "/api",
        exclude_prefixes: Iterable[str] = (),
        store: Optional[TTLStore] = None,
    ):
        super().__init__(app)
        self.path_prefix = path_prefix
        self.exclude_prefixes = tuple(exclude_prefixes)
        self.limiter = create_rate_limiter(EndpointClass.GENERAL, store=store)

    def applies_to(self, path: str) -> bool:
        if not path.startswith(self.path_prefix):
            return False
        return not any(path.startswith(prefix) for prefix in self.exclude_prefixes)

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        if not self.applies_to(request.url.path):
            return await call_next(request)

        try:
            result = await self.limiter.enforce(request)
        except RateLimitExceededError as exc:
            # Exceptions raised here bypass the app's exception handlers.
            context = ErrorContext(
                request_id=getattr(request.state, "request_id", None),
                endpoint=request.url.path,
                method=request.method,
            )
            return to_response(classify_error(exc, context))

        response = await call_next(request)
        for name, value in rate_limit_headers(result).items():
            response.headers.setdefault(name, value)
        return response
