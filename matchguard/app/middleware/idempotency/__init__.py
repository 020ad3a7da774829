"""Idempotency protection for webhooks and payment-adjacent operations."""

from matchguard.app.middleware.idempotency.configs import (
    IDEMPOTENCY_CONFIGS,
    IdempotencyClass,
)
from matchguard.app.middleware.idempotency.handler import (
    IdempotencyAnalytics,
    IdempotencyHandler,
    clear_idempotency_cache,
    create_idempotency_handler,
    get_idempotency_stats,
    get_idempotency_store,
    idempotency_analytics,
    reset_idempotency_store,
)
from matchguard.app.middleware.idempotency.models import (
    IdempotencyCheck,
    IdempotencyConfig,
    IdempotencyOutcome,
    IdempotencyRecord,
)

__all__ = [
    "IDEMPOTENCY_CONFIGS",
    "IdempotencyClass",
    "IdempotencyAnalytics",
    "IdempotencyHandler",
    "IdempotencyCheck",
    "IdempotencyConfig",
    "IdempotencyOutcome",
    "IdempotencyRecord",
    "clear_idempotency_cache",
    "create_idempotency_handler",
    "get_idempotency_stats",
    "get_idempotency_store",
    "idempotency_analytics",
    "reset_idempotency_store",
]
