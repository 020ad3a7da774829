"""Payments provider webhook endpoint.

Deliveries are keyed by their signature header, so a redelivered event is
answered from the idempotency cache instead of being applied twice.
"""

from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from matchguard.app.core.logging import get_logger
from matchguard.app.middleware.chain import ProtectedEndpoint
from matchguard.app.middleware.idempotency import (
    IdempotencyClass,
    create_idempotency_handler,
)
from matchguard.app.middleware.idempotency.keys import SIGNATURE_HEADER
from matchguard.app.middleware.rate_limit import EndpointClass, create_rate_limiter
from matchguard.app.middleware.validation import WebhookEvent
from matchguard.app.services.payments import PaymentProvider, get_payment_provider

logger = get_logger(__name__)
router = APIRouter()

stripe_webhook_endpoint = ProtectedEndpoint(
    rate_limiter=create_rate_limiter(EndpointClass.WEBHOOK),
    schema=WebhookEvent,
    idempotency=create_idempotency_handler(IdempotencyClass.STRIPE_WEBHOOK),
    required_headers=(SIGNATURE_HEADER,),
    security_scan=False,
)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    provider: PaymentProvider = Depends(get_payment_provider),
) -> JSONResponse:
    async def process(event: WebhookEvent) -> tuple[dict[str, Any], int]:
        provider.verify_webhook(await request.body(), request.headers[SIGNATURE_HEADER])
        handled = await provider.handle_webhook_event(event.model_dump(mode="json"))
        logger.info(f"Webhook {event.type} ({event.id}) handled={handled}")
        return {"received": True, "eventId": event.id, "handled": handled}, 200

    return await stripe_webhook_endpoint.handle(request, process)
