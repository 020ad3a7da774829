"""Idempotency key generators.

Every generator is deterministic for a given request, body and time bucket,
so logically equivalent retries map to the same key.
"""

import hashlib
import json
from typing import Any

from starlette.requests import Request

from matchguard.app.core.identity import get_user_id
from matchguard.app.middleware.idempotency.models import IdempotencyKeyGenerator

SIGNATURE_HEADER = "stripe-signature"
PLAN_HEADER = "x-plan-id"
PAYMENT_HEADER = "x-payment-id"

DEFAULT_BUCKET_SECONDS = 300


def short_hash(data: str) -> str:
    """First 16 hex chars of the SHA-256 digest."""
    return hashlib.sha256(data.encode()).hexdigest()[:16]


def canonical_json(body: Any) -> str:
    """Serialize body with sorted keys and no insignificant whitespace."""
    return json.dumps(
        body, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
    )


def time_bucket(now: float, width_seconds: int) -> int:
    return int(now // width_seconds)


def parse_signature_header(signature: str) -> dict[str, list[str]]:
    """Parse ``t=123,v1=abc,v1=def`` into {"t": ["123"], "v1": ["abc", "def"]}."""
    parts: dict[str, list[str]] = {}
    for item in signature.split(","):
        name, sep, value = item.strip().partition("=")
        if sep and name:
            parts.setdefault(name, []).append(value)
    return parts


def webhook_signature(request: Request, body: Any, now: float) -> str:
    """Key a webhook delivery by its signed timestamp and signature.

    Independent of the payload, so a redelivered event maps to the same key.
    """
    signature = request.headers.get(SIGNATURE_HEADER) or ""
    timestamp = parse_signature_header(signature).get("t", [""])[0]
    return f"stripe:webhook:{timestamp}:{short_hash(signature)}"


def subscription_operation(
    operation: str, bucket_seconds: int = 60
) -> IdempotencyKeyGenerator:
    """Collapse repeated submissions of one operation by one user per bucket."""

    def generate(request: Request, body: Any, now: float) -> str:
        user_id = get_user_id(request)
        return f"subscription:{operation}:{user_id}:{time_bucket(now, bucket_seconds)}"

    return generate


def checkout_operation(request: Request, body: Any, now: float) -> str:
    user_id = get_user_id(request)
    plan_id = request.headers.get(PLAN_HEADER)
    if not plan_id and isinstance(body, dict):
        plan_id = body.get("planId")
    bucket = time_bucket(now, DEFAULT_BUCKET_SECONDS)
    return f"checkout:{user_id}:{plan_id or 'unknown'}:{bucket}"


def body_hash(request: Request, body: Any, now: float) -> str:
    """Key by user and canonical body content, for operations with no natural id."""
    return f"body:{get_user_id(request)}:{short_hash(canonical_json(body))}"


def payment_operation(request: Request, body: Any, now: float) -> str:
    payment_id = request.headers.get(PAYMENT_HEADER) or "unknown"
    return f"payment:{payment_id}"


def default_key(request: Request, body: Any, now: float) -> str:
    components = [request.method, request.url.path, get_user_id(request)]
    if body:
        components.append(short_hash(canonical_json(body)))
    components.append(str(time_bucket(now, DEFAULT_BUCKET_SECONDS)))
    return ":".join(components)
