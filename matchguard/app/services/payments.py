"""Payments provider contract, plan catalog and an in-memory provider.

The hosted payments provider is a black box. Routes talk to it through
PaymentProvider; MockPaymentProvider keeps subscriptions in memory and
counts side effects so callers can assert at-most-once execution.
"""

import hashlib
import hmac
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional

from matchguard.app.core.config import settings
from matchguard.app.core.logging import get_log_context, get_logger
from matchguard.app.exceptions import GuardException
from matchguard.app.middleware.idempotency.keys import parse_signature_header

logger = get_logger(__name__)


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    description: str
    price: int
    currency: str
    features: tuple[str, ...]
    price_id: Optional[str] = None

    @property
    def is_free(self) -> bool:
        return self.price_id is None


PLANS: Mapping[str, Plan] = MappingProxyType({
    "INTENTION": Plan(
        id="INTENTION",
        name="Intention",
        description="Perfect for starting your matrimonial journey",
        price=0,
        currency="sgd",
        features=("5 daily matches", "Basic messaging", "Standard filters", "Profile creation"),
    ),
    "PATIENCE": Plan(
        id="PATIENCE",
        name="Patience",
        description="Most popular choice for serious seekers",
        price=29,
        currency="sgd",
        features=(
            "Unlimited matches",
            "See who likes you",
            "Advanced filters",
            "Priority support",
            "Enhanced messaging",
        ),
        price_id="price_patience_monthly",
    ),
    "RELIANCE": Plan(
        id="RELIANCE",
        name="Reliance",
        description="Premium experience for committed users",
        price=59,
        currency="sgd",
        features=(
            "Everything in Patience",
            "Video calls (supervised)",
            "Profile boost",
            "Family scheduler",
            "Advisor chat",
            "Priority matching",
        ),
        price_id="price_reliance_monthly",
    ),
})

FREE_PLAN = PLANS["INTENTION"]


class PaymentProviderError(GuardException):
    """Error reported by the payments provider.

    ``type`` carries the provider's error class name (``StripeCardError``,
    ``StripeInvalidRequestError``, ...) and drives error classification.
    ``code`` is the provider's own error code, if any.
    """
    status_code = 400

    def __init__(
        self,
        message: str,
        type: str = "StripeAPIError",
        code: Optional[str] = None,
        decline_code: Optional[str] = None,
    ):
        self.type = type
        self.code = code
        self.decline_code = decline_code
        super().__init__(message)


@dataclass
class Subscription:
    id: str
    user_id: str
    customer_id: str
    plan_id: str
    status: str = "active"
    current_period_end: float = 0.0
    cancel_at_period_end: bool = False
    canceled_at: Optional[float] = None
    metadata: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "planId": self.plan_id,
            "status": self.status,
            "customerId": self.customer_id,
            "currentPeriodEnd": self.current_period_end,
            "cancelAtPeriodEnd": self.cancel_at_period_end,
            "canceledAt": self.canceled_at,
        }


class PaymentProvider(ABC):
    """Operations the subscription API needs from the payments provider."""

    @abstractmethod
    async def create_checkout_session(
        self,
        user_id: str,
        plan: Plan,
        success_url: str,
        cancel_url: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> dict[str, str]:
        """Start a hosted checkout. Returns ``{"sessionId", "url"}``."""

    @abstractmethod
    async def create_portal_session(self, user_id: str, return_url: str) -> dict[str, str]:
        """Open the hosted billing portal. Returns ``{"url"}``."""

    @abstractmethod
    async def get_subscription(self, user_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def cancel_subscription(
        self, subscription_id: str, user_id: str, reason: Optional[str] = None
    ) -> Subscription:
        """Cancel at period end."""

    @abstractmethod
    async def reactivate_subscription(self, subscription_id: str, user_id: str) -> Subscription:
        pass

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: str) -> None:
        """Raise PaymentProviderError unless the signature header is valid."""

    @abstractmethod
    async def handle_webhook_event(self, event: dict[str, Any]) -> bool:
        """Apply a verified event. Returns False for ignored event types."""


class MockPaymentProvider(PaymentProvider):
    """In-memory provider for development and tests.

    Session and event counters record how many side effects actually ran.
    """

    PERIOD_SECONDS = 30 * 24 * 60 * 60
    CHECKOUT_URL = "https://checkout.stripe.test/c/pay"
    PORTAL_URL = "https://billing.stripe.test/p/session"

    def __init__(
        self,
        webhook_secret: Optional[str] = None,
        tolerance: Optional[int] = None,
        clock=time.time,
    ):
        self.webhook_secret = (
            settings.stripe_webhook_secret if webhook_secret is None else webhook_secret
        )
        self.tolerance = tolerance or settings.webhook_timestamp_tolerance
        self._clock = clock
        self.subscriptions: dict[str, Subscription] = {}
        self.checkout_sessions: list[dict[str, Any]] = []
        self.portal_sessions: list[dict[str, Any]] = []
        self.processed_events: list[str] = []

    def _customer_id(self, user_id: str) -> str:
        return f"cus_{hashlib.sha256(user_id.encode()).hexdigest()[:14]}"

    async def create_checkout_session(
        self,
        user_id: str,
        plan: Plan,
        success_url: str,
        cancel_url: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> dict[str, str]:
        if plan.is_free:
            raise PaymentProviderError(
                "Free plan does not require checkout",
                type="StripeInvalidRequestError",
                code="parameter_invalid",
            )
        session_id = f"cs_test_{uuid.uuid4().hex}"
        session = {
            "sessionId": session_id,
            "url": f"{self.CHECKOUT_URL}/{session_id}",
        }
        self.checkout_sessions.append(
            {
                **session,
                "userId": user_id,
                "planId": plan.id,
                "successUrl": success_url,
                "cancelUrl": cancel_url,
                "metadata": dict(metadata or {}),
            }
        )
        logger.info(
            f"Checkout session created for plan {plan.id}",
            extra=get_log_context(user_id=user_id),
        )
        return session

    async def create_portal_session(self, user_id: str, return_url: str) -> dict[str, str]:
        session_id = f"bps_{uuid.uuid4().hex[:24]}"
        session = {"url": f"{self.PORTAL_URL}/{session_id}"}
        self.portal_sessions.append({**session, "userId": user_id, "returnUrl": return_url})
        return session

    async def get_subscription(self, user_id: str) -> Optional[Subscription]:
        for subscription in self.subscriptions.values():
            if subscription.user_id == user_id:
                return subscription
        return None

    def _owned(self, subscription_id: str, user_id: str) -> Subscription:
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None or subscription.user_id != user_id:
            raise PaymentProviderError(
                f"No such subscription: '{subscription_id}'",
                type="StripeInvalidRequestError",
                code="resource_missing",
            )
        return subscription

    async def cancel_subscription(
        self, subscription_id: str, user_id: str, reason: Optional[str] = None
    ) -> Subscription:
        subscription = self._owned(subscription_id, user_id)
        subscription.cancel_at_period_end = True
        subscription.status = "canceled"
        subscription.canceled_at = self._clock()
        subscription.metadata["cancelReason"] = reason or "User requested"
        return subscription

    async def reactivate_subscription(self, subscription_id: str, user_id: str) -> Subscription:
        subscription = self._owned(subscription_id, user_id)
        subscription.cancel_at_period_end = False
        subscription.status = "active"
        subscription.canceled_at = None
        return subscription

    def add_subscription(self, user_id: str, plan_id: str) -> Subscription:
        """Create an active subscription directly."""
        subscription = Subscription(
            id=f"sub_{uuid.uuid4().hex[:14]}",
            user_id=user_id,
            customer_id=self._customer_id(user_id),
            plan_id=plan_id,
            current_period_end=self._clock() + self.PERIOD_SECONDS,
        )
        self.subscriptions[subscription.id] = subscription
        return subscription

    def verify_webhook(self, payload: bytes, signature: str) -> None:
        parts = parse_signature_header(signature)
        timestamps = parts.get("t") or []
        signatures = parts.get("v1") or []
        if not timestamps or not signatures:
            raise PaymentProviderError(
                "Unable to extract timestamp and signatures from header",
                type="StripeSignatureVerificationError",
            )

        try:
            timestamp = int(timestamps[0])
        except ValueError as e:
            raise PaymentProviderError(
                "Invalid signature timestamp", type="StripeSignatureVerificationError"
            ) from e
        if abs(self._clock() - timestamp) > self.tolerance:
            raise PaymentProviderError(
                "Timestamp outside the tolerance zone",
                type="StripeSignatureVerificationError",
            )

        if not self.webhook_secret:
            return
        expected = hmac.new(
            self.webhook_secret.encode(),
            f"{timestamp}.".encode() + payload,
            hashlib.sha256,
        ).hexdigest()
        if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
            raise PaymentProviderError(
                "No signatures found matching the expected signature for payload",
                type="StripeSignatureVerificationError",
            )

    async def handle_webhook_event(self, event: dict[str, Any]) -> bool:
        event_type = event["type"]
        obj = event["data"]["object"]
        self.processed_events.append(event["id"])

        if event_type == "checkout.session.completed":
            metadata = obj.get("metadata") or {}
            user_id = metadata.get("userId")
            plan_id = metadata.get("planId")
            if not user_id or plan_id not in PLANS:
                logger.warning(f"Checkout event {event['id']} missing user or plan metadata")
                return False
            subscription = Subscription(
                id=obj.get("subscription") or f"sub_{uuid.uuid4().hex[:14]}",
                user_id=user_id,
                customer_id=obj.get("customer") or self._customer_id(user_id),
                plan_id=plan_id,
                current_period_end=self._clock() + self.PERIOD_SECONDS,
            )
            self.subscriptions[subscription.id] = subscription
            return True

        if event_type in ("customer.subscription.updated", "customer.subscription.deleted"):
            subscription = self.subscriptions.get(obj.get("id", ""))
            if subscription is None:
                return False
            if event_type == "customer.subscription.deleted":
                subscription.status = "canceled"
            else:
                subscription.status = obj.get("status", subscription.status)
                subscription.cancel_at_period_end = bool(
                    obj.get("cancel_at_period_end", subscription.cancel_at_period_end)
                )
            return True

        logger.debug(f"Ignoring webhook event type {event_type}")
        return False


def sign_webhook_payload(payload: bytes, secret: str, timestamp: int) -> str:
    """Build a signature header the way the provider does."""
    digest = hmac.new(
        secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


# Process-wide provider (singleton pattern)
_provider_instance: Optional[PaymentProvider] = None


def get_payment_provider() -> PaymentProvider:
    """FastAPI dependency returning the shared provider."""
    global _provider_instance
    if _provider_instance is None:
        _provider_instance = MockPaymentProvider()
    return _provider_instance


def reset_payment_provider() -> None:
    global _provider_instance
    _provider_instance = None
