"""Composed protection for a single route.

Order: rate limit, then validation, then idempotency, then the business
processor. Each stage can reject the request by raising; the exception
handlers turn the rejection into a structured JSON error.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from matchguard.app.middleware.idempotency.handler import IdempotencyHandler
from matchguard.app.middleware.rate_limit.limiter import RateLimiter, rate_limit_headers
from matchguard.app.middleware.validation.validator import RequestValidator

REPLAY_HEADER = "X-Idempotent-Replay"

Processor = Callable[[Optional[BaseModel]], Awaitable[tuple[Any, int]]]


@dataclass
class ProtectedEndpoint:
    """Protection settings for one route.

    Attributes:
        rate_limiter: Endpoint-class limiter, or None for no route quota
        schema: Pydantic model for the body or query string
        source: Where the schema input comes from
        idempotency: Handler for side-effecting routes
        required_headers: Headers that must be present
        security_scan: False for signed provider payloads, whose content is
            checked by signature instead of by pattern
    """

    rate_limiter: Optional[RateLimiter] = None
    schema: Optional[type[BaseModel]] = None
    source: Literal["body", "query"] = "body"
    idempotency: Optional[IdempotencyHandler] = None
    required_headers: tuple[str, ...] = ()
    security_scan: bool = True

    async def validate(self, request: Request) -> Optional[BaseModel]:
        RequestValidator.validate_headers(request, self.required_headers)
        if self.schema is None:
            return None
        if self.source == "query":
            return RequestValidator.validate_query(request, self.schema)
        return await RequestValidator.validate_body(
            request, self.schema, check_patterns=self.security_scan
        )

    async def handle(self, request: Request, processor: Processor) -> JSONResponse:
        """Run the chain and render the processor's ``(body, status)`` result."""
        headers: dict[str, str] = {}
        if self.rate_limiter is not None:
            result = await self.rate_limiter.enforce(request)
            headers.update(rate_limit_headers(result))

        data = await self.validate(request)

        if self.idempotency is None:
            content, status_code = await processor(data)
        else:
            body = (
                data.model_dump(mode="json", by_alias=True, exclude_none=True)
                if data is not None
                else None
            )
            outcome = await self.idempotency.with_idempotency(
                request, lambda: processor(data), body=body
            )
            content, status_code = outcome.response, outcome.status_code
            if outcome.was_idempotent:
                headers[REPLAY_HEADER] = "true"

        return JSONResponse(content=content, status_code=status_code, headers=headers)
