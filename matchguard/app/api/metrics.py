"""Protection metrics for dashboards."""

from typing import Any

from fastapi import APIRouter, Request

from matchguard.app.core.identity import get_user_id
from matchguard.app.middleware.idempotency import get_idempotency_stats, idempotency_analytics
from matchguard.app.middleware.rate_limit import (
    EndpointClass,
    create_rate_limiter,
    get_rate_limit_store,
)
from matchguard.app.middleware.validation import validation_metrics

router = APIRouter()


@router.get("/protection")
async def protection_metrics(request: Request) -> dict[str, Any]:
    """Idempotency, validation and rate-limit counters.

    ``rate_limits`` shows the caller's own windows without counting this
    request against them.
    """
    rate_limits = {}
    for endpoint_class in EndpointClass:
        analytics = await create_rate_limiter(endpoint_class).get_analytics(request)
        rate_limits[endpoint_class.value] = {
            "limit": analytics.limit,
            "current": analytics.current,
            "remaining": analytics.remaining,
            "reset_at": analytics.reset_at,
            "is_limited": analytics.is_limited,
        }

    store_stats = await get_rate_limit_store().stats()
    return {
        "user_id": get_user_id(request),
        "idempotency": {
            **idempotency_analytics.get_analytics(),
            **(await get_idempotency_stats()),
        },
        "validation": validation_metrics.get_metrics(),
        "rate_limit": {
            "active_windows": store_stats["total_records"],
            "endpoints": rate_limits,
        },
    }
