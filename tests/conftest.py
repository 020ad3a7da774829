"""Shared fixtures for matchguard tests."""

from typing import Optional

import pytest
from starlette.requests import Request

from matchguard.app.middleware.idempotency import (
    idempotency_analytics,
    reset_idempotency_store,
)
from matchguard.app.middleware.rate_limit import reset_rate_limit_store
from matchguard.app.middleware.validation import validation_metrics
from matchguard.app.services.payments import reset_payment_provider

# Aligned to a 300s boundary so the idempotency time buckets are stable
START_TIME = 1_700_000_100.0


class FakeClock:
    """Manually advanced clock for window and TTL tests."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_request(
    method: str = "POST",
    path: str = "/api/test",
    headers: Optional[dict[str, str]] = None,
    body: bytes = b"",
    query_string: bytes = b"",
    client: Optional[tuple[str, int]] = ("203.0.113.7", 50000),
) -> Request:
    """Build a Starlette request without an app."""
    raw_headers = [
        (name.lower().encode(), value.encode()) for name, value in (headers or {}).items()
    ]
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "query_string": query_string,
        "headers": raw_headers,
        "client": client,
        "server": ("testserver", 80),
    }

    async def receive() -> dict:
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def request_factory():
    return make_request


@pytest.fixture(autouse=True)
def reset_shared_state():
    """Fresh stores, counters and provider for every test."""
    reset_rate_limit_store()
    reset_idempotency_store()
    reset_payment_provider()
    idempotency_analytics.reset()
    validation_metrics.reset()
    yield
    reset_rate_limit_store()
    reset_idempotency_store()
    reset_payment_provider()
