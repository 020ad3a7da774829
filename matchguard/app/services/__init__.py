"""Services package for matchguard.

Provides the payments provider contract and plan catalog used by the
subscription API.
"""

from matchguard.app.services.payments import (
    FREE_PLAN,
    PLANS,
    MockPaymentProvider,
    PaymentProvider,
    PaymentProviderError,
    Plan,
    Subscription,
    get_payment_provider,
    reset_payment_provider,
    sign_webhook_payload,
)

__all__ = [
    "FREE_PLAN",
    "PLANS",
    "MockPaymentProvider",
    "PaymentProvider",
    "PaymentProviderError",
    "Plan",
    "Subscription",
    "get_payment_provider",
    "reset_payment_provider",
    "sign_webhook_payload",
]
