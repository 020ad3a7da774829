"""Idempotency registry. TTLs track how long a client may plausibly retry."""

from enum import Enum
from types import MappingProxyType
from typing import Mapping

from matchguard.app.middleware.idempotency.keys import (
    checkout_operation,
    payment_operation,
    subscription_operation,
    webhook_signature,
)
from matchguard.app.middleware.idempotency.models import IdempotencyConfig

HOUR = 60 * 60


class IdempotencyClass(str, Enum):
    STRIPE_WEBHOOK = "stripe_webhook"
    SUBSCRIPTION_CREATE = "subscription_create"
    CHECKOUT_CREATE = "checkout_create"
    SUBSCRIPTION_MODIFY = "subscription_modify"
    PAYMENT_PROCESS = "payment_process"


IDEMPOTENCY_CONFIGS: Mapping[IdempotencyClass, IdempotencyConfig] = MappingProxyType({
    IdempotencyClass.STRIPE_WEBHOOK: IdempotencyConfig(
        ttl_seconds=24 * HOUR,
        key_generator=webhook_signature,
    ),
    IdempotencyClass.SUBSCRIPTION_CREATE: IdempotencyConfig(
        ttl_seconds=HOUR,
        key_generator=subscription_operation("create"),
    ),
    # Short TTL, but this is the one guarding against double charges
    IdempotencyClass.CHECKOUT_CREATE: IdempotencyConfig(
        ttl_seconds=30 * 60,
        key_generator=checkout_operation,
    ),
    IdempotencyClass.SUBSCRIPTION_MODIFY: IdempotencyConfig(
        ttl_seconds=HOUR,
        key_generator=subscription_operation("modify"),
        enabled_methods=frozenset({"POST", "PUT", "PATCH"}),
    ),
    IdempotencyClass.PAYMENT_PROCESS: IdempotencyConfig(
        ttl_seconds=24 * HOUR,
        key_generator=payment_operation,
    ),
})
