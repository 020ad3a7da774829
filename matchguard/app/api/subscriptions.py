"""Subscription API endpoints.

Every route runs behind a ProtectedEndpoint. The caller's identity arrives
in the ``x-user-id`` header set by the auth provider upstream.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from matchguard.app.core.config import settings
from matchguard.app.core.identity import ANONYMOUS, get_user_id
from matchguard.app.core.logging import get_log_context, get_logger
from matchguard.app.middleware.chain import ProtectedEndpoint
from matchguard.app.middleware.idempotency import (
    IdempotencyClass,
    create_idempotency_handler,
)
from matchguard.app.middleware.idempotency.keys import subscription_operation
from matchguard.app.middleware.rate_limit import EndpointClass, create_rate_limiter
from matchguard.app.middleware.validation import (
    CancelRequest,
    CheckoutRequest,
    PortalRequest,
    ReactivateRequest,
    SubscriptionStatusQuery,
)
from matchguard.app.services.payments import (
    FREE_PLAN,
    PLANS,
    PaymentProvider,
    get_payment_provider,
)

logger = get_logger(__name__)
router = APIRouter()

checkout_endpoint = ProtectedEndpoint(
    rate_limiter=create_rate_limiter(EndpointClass.CHECKOUT_CREATE),
    schema=CheckoutRequest,
    idempotency=create_idempotency_handler(IdempotencyClass.CHECKOUT_CREATE),
)
portal_endpoint = ProtectedEndpoint(
    rate_limiter=create_rate_limiter(EndpointClass.PORTAL_ACCESS),
    schema=PortalRequest,
)
cancel_endpoint = ProtectedEndpoint(
    rate_limiter=create_rate_limiter(EndpointClass.SUBSCRIPTION_MODIFY),
    schema=CancelRequest,
    idempotency=create_idempotency_handler(
        IdempotencyClass.SUBSCRIPTION_MODIFY,
        key_generator=subscription_operation("cancel"),
    ),
)
reactivate_endpoint = ProtectedEndpoint(
    rate_limiter=create_rate_limiter(EndpointClass.SUBSCRIPTION_MODIFY),
    schema=ReactivateRequest,
    idempotency=create_idempotency_handler(
        IdempotencyClass.SUBSCRIPTION_MODIFY,
        key_generator=subscription_operation("reactivate"),
    ),
)
status_endpoint = ProtectedEndpoint(
    rate_limiter=create_rate_limiter(EndpointClass.SUBSCRIPTION_READ),
    schema=SubscriptionStatusQuery,
    source="query",
)


def require_user(request: Request) -> str:
    user_id = get_user_id(request)
    if user_id == ANONYMOUS:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id


@router.post("/checkout")
async def create_checkout(
    request: Request,
    user_id: str = Depends(require_user),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> JSONResponse:
    """Create a hosted checkout session for a paid plan."""

    async def process(data: CheckoutRequest) -> tuple[dict[str, Any], int]:
        plan = PLANS[data.plan_id]
        metadata = {**(data.metadata or {}), "userId": user_id, "planId": plan.id}
        session = await provider.create_checkout_session(
            user_id,
            plan,
            success_url=data.success_url or f"{settings.app_base_url}/dashboard?checkout=success",
            cancel_url=data.cancel_url or f"{settings.app_base_url}/pricing?checkout=canceled",
            metadata=metadata,
        )
        return session, 200

    return await checkout_endpoint.handle(request, process)


@router.post("/portal")
async def create_portal(
    request: Request,
    user_id: str = Depends(require_user),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> JSONResponse:
    async def process(data: PortalRequest) -> tuple[dict[str, Any], int]:
        if await provider.get_subscription(user_id) is None:
            raise HTTPException(status_code=404, detail="No billing account found")
        session = await provider.create_portal_session(
            user_id, data.return_url or f"{settings.app_base_url}/settings/billing"
        )
        return session, 200

    return await portal_endpoint.handle(request, process)


@router.post("/cancel")
async def cancel_subscription(
    request: Request,
    user_id: str = Depends(require_user),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> JSONResponse:
    """Cancel the caller's subscription at the end of the current period."""

    async def process(data: CancelRequest) -> tuple[dict[str, Any], int]:
        current = await provider.get_subscription(user_id)
        if current is None or current.id != data.subscription_id:
            raise HTTPException(
                status_code=404, detail="Subscription not found or not owned by user"
            )
        if current.status == "canceled":
            raise HTTPException(status_code=400, detail="Subscription is already canceled")

        subscription = await provider.cancel_subscription(
            data.subscription_id, user_id, reason=data.reason
        )
        logger.info(
            f"Canceled subscription {subscription.id}",
            extra=get_log_context(user_id=user_id, feedback=data.feedback),
        )
        return {
            "success": True,
            "message": "Subscription canceled successfully",
            "accessUntil": subscription.current_period_end,
            "subscription": subscription.to_dict(),
        }, 200

    return await cancel_endpoint.handle(request, process)


@router.post("/reactivate")
async def reactivate_subscription(
    request: Request,
    user_id: str = Depends(require_user),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> JSONResponse:
    async def process(data: ReactivateRequest) -> tuple[dict[str, Any], int]:
        current = await provider.get_subscription(user_id)
        if current is None or current.id != data.subscription_id:
            raise HTTPException(
                status_code=404, detail="Subscription not found or not owned by user"
            )
        if not current.cancel_at_period_end:
            raise HTTPException(status_code=400, detail="Subscription is not canceled")

        subscription = await provider.reactivate_subscription(data.subscription_id, user_id)
        return {
            "success": True,
            "message": "Subscription reactivated successfully",
            "subscription": subscription.to_dict(),
        }, 200

    return await reactivate_endpoint.handle(request, process)


@router.get("/status")
async def get_status(
    request: Request,
    user_id: str = Depends(require_user),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> JSONResponse:
    """Current plan and subscription. Users without one are on the free plan."""

    async def process(query: SubscriptionStatusQuery) -> tuple[dict[str, Any], int]:
        subscription = await provider.get_subscription(user_id)
        active = subscription is not None and subscription.status == "active"
        plan = PLANS[subscription.plan_id] if active else FREE_PLAN
        body: dict[str, Any] = {
            "hasActiveSubscription": active,
            "planId": plan.id,
            "planDetails": {
                "name": plan.name,
                "price": plan.price,
                "currency": plan.currency,
                "description": plan.description,
            },
            "subscription": subscription.to_dict() if subscription else None,
        }
        if query.include_features:
            body["planDetails"]["features"] = list(plan.features)
        return body, 200

    return await status_endpoint.handle(request, process)
