"""Transport-level request body cap.

Runs before any body is parsed, so oversized uploads are rejected without
being buffered. The serialized-JSON cap applied by the validator is a
separate, smaller limit.
"""

import json
from datetime import datetime, timezone

from starlette.types import Receive, Scope, Send

from matchguard.app.core.logging import get_logger

logger = get_logger(__name__)


class BodyTooLargeError(Exception):
    """Raised by SizeLimitedReceive once the byte budget is spent."""


class SizeLimitedReceive:
    """Wraps the ASGI receive callable and counts body bytes as they arrive.

    Covers chunked transfer encoding, where no Content-Length is sent.
    """

    def __init__(self, receive: Receive, max_size: int):
        self._receive = receive
        self._max_size = max_size
        self._bytes_read = 0

    async def __call__(self) -> dict:
        message = await self._receive()
        if message["type"] == "http.request":
            self._bytes_read += len(message.get("body", b""))
            if self._bytes_read > self._max_size:
                raise BodyTooLargeError(
                    f"Request body too large. Maximum allowed: {self._max_size} bytes"
                )
        return message


class RequestSizeLimitMiddleware:
    """Reject request bodies larger than ``max_body_size`` with HTTP 413.

    Usage:
        app.add_middleware(RequestSizeLimitMiddleware, max_body_size=1024 * 1024)
    """

    def __init__(self, app, max_body_size: int = 1024 * 1024):
        self.app = app
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        # Fast path: trust a declared Content-Length
        for name, value in scope.get("headers", []):
            if name.lower() == b"content-length":
                try:
                    declared = int(value.decode())
                except ValueError:
                    break
                if declared > self.max_body_size:
                    logger.warning(
                        "Rejected request with oversized Content-Length",
                        extra={"path": scope.get("path"), "content_length": declared},
                    )
                    await self._send_413(send)
                    return
                break

        try:
            await self.app(scope, SizeLimitedReceive(receive, self.max_body_size), send)
        except BodyTooLargeError as exc:
            logger.warning(str(exc), extra={"path": scope.get("path")})
            await self._send_413(send, message=str(exc))

    async def _send_413(self, send: Send, message: str | None = None) -> None:
        body = json.dumps(
            {
                "error": True,
                "type": "validation_error",
                "message": message
                or f"Request body too large. Maximum allowed: {self.max_body_size} bytes",
                "code": "payload_too_large",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "request_id": None,
                "retryable": False,
            }
        ).encode()
        await send(
            {
                "type": "http.response.start",
                "status": 413,
                "headers": [
                    [b"content-type", b"application/json"],
                    [b"content-length", str(len(body)).encode()],
                ],
            }
        )
        await send({"type": "http.response.body", "body": body})
