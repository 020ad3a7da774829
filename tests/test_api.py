"""End-to-end tests for the protected subscription and webhook routes."""

import json
import time

import pytest
from fastapi.testclient import TestClient

from matchguard.app.api.subscriptions import (
    cancel_endpoint,
    checkout_endpoint,
    reactivate_endpoint,
)
from matchguard.app.main import create_app
from matchguard.app.middleware.chain import REPLAY_HEADER
from matchguard.app.services.payments import (
    MockPaymentProvider,
    get_payment_provider,
    sign_webhook_payload,
)

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def provider():
    return MockPaymentProvider(webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def app(provider):
    app = create_app()
    app.dependency_overrides[get_payment_provider] = lambda: provider
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def frozen(monkeypatch, clock):
    """Drive the route limiters and idempotency handlers from the fake clock."""
    for endpoint in (checkout_endpoint, cancel_endpoint, reactivate_endpoint):
        monkeypatch.setattr(endpoint.rate_limiter, "_clock", clock)
        monkeypatch.setattr(endpoint.idempotency, "_clock", clock)
    return clock


def as_user(user_id="user_1", **headers):
    return {"x-user-id": user_id, **headers}


class TestCheckout:
    def test_retries_replay_then_rate_limit(self, client, provider, frozen):
        responses = [
            client.post(
                "/api/subscriptions/checkout",
                json={"planId": "PATIENCE"},
                headers=as_user(),
            )
            for _ in range(6)
        ]

        assert [r.status_code for r in responses] == [200] * 5 + [429]
        first = responses[0]
        assert first.json()["url"].startswith("https://checkout.stripe.test/")
        assert REPLAY_HEADER not in first.headers
        assert first.headers["X-RateLimit-Limit"] == "5"
        assert first.headers["X-RateLimit-Remaining"] == "4"

        for replay in responses[1:5]:
            assert replay.headers[REPLAY_HEADER] == "true"
            assert replay.json() == first.json()
        assert len(provider.checkout_sessions) == 1

        limited = responses[5]
        assert limited.headers["Retry-After"] == "60"
        assert limited.headers["X-RateLimit-Remaining"] == "0"
        body = limited.json()
        assert body["error"] is True
        assert body["type"] == "rate_limit_error"
        assert body["code"] == "rate_limit_exceeded"
        assert body["retryable"] is True

    def test_quota_returns_after_window(self, client, frozen):
        for _ in range(6):
            client.post(
                "/api/subscriptions/checkout", json={"planId": "PATIENCE"}, headers=as_user()
            )

        frozen.advance(61)
        response = client.post(
            "/api/subscriptions/checkout", json={"planId": "PATIENCE"}, headers=as_user()
        )

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Remaining"] == "4"

    def test_different_plans_are_separate_operations(self, client, provider, frozen):
        client.post("/api/subscriptions/checkout", json={"planId": "PATIENCE"}, headers=as_user())
        response = client.post(
            "/api/subscriptions/checkout", json={"planId": "RELIANCE"}, headers=as_user()
        )

        assert REPLAY_HEADER not in response.headers
        assert [s["planId"] for s in provider.checkout_sessions] == ["PATIENCE", "RELIANCE"]

    def test_session_carries_user_metadata_and_default_urls(self, client, provider, frozen):
        client.post(
            "/api/subscriptions/checkout",
            json={"planId": "RELIANCE", "metadata": {"source": "pricing"}},
            headers=as_user("user_9"),
        )

        session = provider.checkout_sessions[0]
        assert session["metadata"] == {"source": "pricing", "userId": "user_9", "planId": "RELIANCE"}
        assert session["successUrl"].endswith("/dashboard?checkout=success")

    def test_free_plan_rejected(self, client, provider):
        response = client.post(
            "/api/subscriptions/checkout", json={"planId": "INTENTION"}, headers=as_user()
        )

        assert response.status_code == 400
        body = response.json()
        assert body["type"] == "validation_error"
        assert body["code"] == "free_plan"
        assert body["errors"] == [
            {"field": "planId", "message": "Free plan does not require checkout", "code": "free_plan"}
        ]
        assert provider.checkout_sessions == []

    def test_malicious_payload_rejected(self, client, provider):
        response = client.post(
            "/api/subscriptions/checkout",
            json={"planId": "PATIENCE", "metadata": {"note": "<script>alert(1)</script>"}},
            headers=as_user(),
        )

        assert response.status_code == 400
        assert response.json()["code"] == "security_violation"
        assert provider.checkout_sessions == []

    def test_invalid_json(self, client):
        response = client.post(
            "/api/subscriptions/checkout",
            content=b"{planId",
            headers=as_user(**{"content-type": "application/json"}),
        )

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_json"

    def test_anonymous_caller_rejected(self, client):
        response = client.post("/api/subscriptions/checkout", json={"planId": "PATIENCE"})

        assert response.status_code == 401
        assert response.json()["type"] == "authentication_error"


class TestSubscriptionLifecycle:
    def test_cancel_is_replayed_within_bucket(self, client, provider, frozen):
        subscription = provider.add_subscription("user_1", "PATIENCE")
        payload = {"subscriptionId": subscription.id, "reason": "<b>Found my match</b>"}

        first = client.post("/api/subscriptions/cancel", json=payload, headers=as_user())
        second = client.post("/api/subscriptions/cancel", json=payload, headers=as_user())

        assert first.status_code == 200
        body = first.json()
        assert body["success"] is True
        assert body["subscription"]["status"] == "canceled"
        assert body["accessUntil"] == subscription.current_period_end
        assert subscription.metadata["cancelReason"] == "Found my match"
        assert second.headers[REPLAY_HEADER] == "true"
        assert second.json() == body

    def test_cancel_then_reactivate(self, client, provider, frozen):
        subscription = provider.add_subscription("user_1", "PATIENCE")
        payload = {"subscriptionId": subscription.id}

        cancel = client.post("/api/subscriptions/cancel", json=payload, headers=as_user())
        reactivate = client.post("/api/subscriptions/reactivate", json=payload, headers=as_user())

        assert cancel.status_code == 200
        assert reactivate.status_code == 200
        assert REPLAY_HEADER not in reactivate.headers
        assert reactivate.json()["subscription"]["status"] == "active"
        assert subscription.cancel_at_period_end is False

    def test_cancel_twice_after_bucket(self, client, provider, frozen):
        subscription = provider.add_subscription("user_1", "PATIENCE")
        payload = {"subscriptionId": subscription.id}
        client.post("/api/subscriptions/cancel", json=payload, headers=as_user())

        frozen.advance(61)
        response = client.post("/api/subscriptions/cancel", json=payload, headers=as_user())

        assert response.status_code == 400
        assert response.json()["message"] == "Subscription is already canceled"

    def test_cancel_someone_elses_subscription(self, client, provider):
        subscription = provider.add_subscription("user_2", "PATIENCE")

        response = client.post(
            "/api/subscriptions/cancel",
            json={"subscriptionId": subscription.id},
            headers=as_user("user_1"),
        )

        assert response.status_code == 404
        assert response.json()["type"] == "not_found_error"
        assert subscription.status == "active"

    def test_reactivate_active_subscription(self, client, provider):
        subscription = provider.add_subscription("user_1", "PATIENCE")

        response = client.post(
            "/api/subscriptions/reactivate",
            json={"subscriptionId": subscription.id},
            headers=as_user(),
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Subscription is not canceled"

    def test_cancel_validation_reports_all_fields(self, client):
        response = client.post(
            "/api/subscriptions/cancel",
            json={"subscriptionId": "cus_1", "reason": "r" * 501, "feedback": "f" * 2001},
            headers=as_user(),
        )

        assert response.status_code == 400
        assert {e["field"] for e in response.json()["errors"]} == {
            "subscriptionId",
            "reason",
            "feedback",
        }

    def test_modify_quota_is_shared_by_cancel_and_reactivate(self, client, provider, frozen):
        subscription = provider.add_subscription("user_1", "PATIENCE")
        payload = {"subscriptionId": subscription.id}

        statuses = []
        for path in ("cancel", "reactivate", "cancel"):
            frozen.advance(1)
            statuses.append(
                client.post(f"/api/subscriptions/{path}", json=payload, headers=as_user()).status_code
            )
        frozen.advance(1)
        limited = client.post("/api/subscriptions/reactivate", json=payload, headers=as_user())

        assert statuses == [200, 200, 200]
        assert limited.status_code == 429


class TestStatusAndPortal:
    def test_free_plan_status(self, client):
        response = client.get(
            "/api/subscriptions/status", params={"includeFeatures": "true"}, headers=as_user()
        )

        assert response.status_code == 200
        body = response.json()
        assert body["hasActiveSubscription"] is False
        assert body["planId"] == "INTENTION"
        assert body["planDetails"]["price"] == 0
        assert "Basic messaging" in body["planDetails"]["features"]
        assert body["subscription"] is None
        assert response.headers["X-RateLimit-Limit"] == "30"

    def test_paid_plan_status_without_features(self, client, provider):
        provider.add_subscription("user_1", "RELIANCE")

        body = client.get("/api/subscriptions/status", headers=as_user()).json()

        assert body["hasActiveSubscription"] is True
        assert body["planId"] == "RELIANCE"
        assert "features" not in body["planDetails"]
        assert body["subscription"]["planId"] == "RELIANCE"

    def test_invalid_query(self, client):
        response = client.get(
            "/api/subscriptions/status", params={"includeFeatures": "maybe"}, headers=as_user()
        )
        assert response.status_code == 400

    def test_portal_requires_billing_account(self, client):
        response = client.post("/api/subscriptions/portal", json={}, headers=as_user())

        assert response.status_code == 404
        assert response.json()["message"] == "No billing account found"

    def test_portal_session(self, client, provider):
        provider.add_subscription("user_1", "PATIENCE")

        response = client.post(
            "/api/subscriptions/portal",
            json={"returnUrl": "https://app.example.com/settings"},
            headers=as_user(),
        )

        assert response.status_code == 200
        assert response.json()["url"].startswith(MockPaymentProvider.PORTAL_URL)
        assert provider.portal_sessions[0]["returnUrl"] == "https://app.example.com/settings"


class TestStripeWebhook:
    @staticmethod
    def checkout_completed(event_id="evt_1"):
        return {
            "id": event_id,
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "subscription": "sub_fromwebhook",
                    "customer": "cus_1",
                    "metadata": {"userId": "user_1", "planId": "PATIENCE"},
                }
            },
            "created": 1700000000,
        }

    @staticmethod
    def post(client, event, signature=None):
        payload = json.dumps(event).encode()
        if signature is None:
            signature = sign_webhook_payload(payload, WEBHOOK_SECRET, int(time.time()))
        return client.post(
            "/api/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": signature, "content-type": "application/json"},
        )

    def test_redelivery_is_applied_once(self, client, provider):
        event = self.checkout_completed()
        payload = json.dumps(event).encode()
        signature = sign_webhook_payload(payload, WEBHOOK_SECRET, int(time.time()))

        first = self.post(client, event, signature)
        second = self.post(client, event, signature)

        assert first.status_code == 200
        assert first.json() == {"received": True, "eventId": "evt_1", "handled": True}
        assert second.headers[REPLAY_HEADER] == "true"
        assert second.json() == first.json()
        assert provider.processed_events == ["evt_1"]
        assert provider.subscriptions["sub_fromwebhook"].plan_id == "PATIENCE"

    def test_single_sender_gets_the_webhook_quota(self, client, provider):
        responses = [
            self.post(client, {"id": f"evt_{i}", "type": "invoice.paid", "data": {"object": {}}, "created": 1})
            for i in range(70)
        ]

        assert [r.status_code for r in responses] == [200] * 70
        assert {r.headers["X-RateLimit-Limit"] for r in responses} == {"100"}
        assert len(provider.processed_events) == 70

    def test_unclassified_api_paths_keep_general_quota(self, client):
        response = client.get("/api/metrics/protection", headers=as_user())
        assert response.headers["X-RateLimit-Limit"] == "60"

    def test_unhandled_event_type(self, client, provider):
        event = {"id": "evt_2", "type": "invoice.paid", "data": {"object": {}}, "created": 1}

        response = self.post(client, event)

        assert response.json()["handled"] is False
        assert provider.processed_events == ["evt_2"]

    def test_bad_signature_rejected_and_not_cached(self, client, provider):
        event = self.checkout_completed()
        forged = f"t={int(time.time())},v1={'0' * 64}"

        first = self.post(client, event, forged)
        second = self.post(client, event, forged)

        assert first.status_code == second.status_code == 400
        assert first.json()["code"] == "STRIPESIGNATUREVERIFICATIONERROR"
        assert REPLAY_HEADER not in second.headers
        assert provider.processed_events == []

    def test_stale_timestamp_rejected(self, client, provider):
        event = self.checkout_completed()
        payload = json.dumps(event).encode()
        stale = sign_webhook_payload(payload, WEBHOOK_SECRET, int(time.time()) - 3600)

        response = self.post(client, event, stale)

        assert response.status_code == 400
        assert provider.processed_events == []

    def test_missing_signature_header(self, client):
        response = client.post("/api/webhooks/stripe", json=self.checkout_completed())

        assert response.status_code == 400
        assert response.json()["code"] == "missing_headers"

    def test_malformed_event(self, client):
        response = self.post(client, {"id": "evt_3", "type": "x", "created": 1})

        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "data"


class TestOperationalEndpoints:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert set(body["components"]) == {"rate_limit_store", "idempotency_store"}

    def test_health_runs_with_lifespan(self, app):
        with TestClient(app) as client:
            assert client.get("/health").json()["status"] == "ok"

    def test_protection_metrics(self, client):
        client.post("/api/subscriptions/checkout", json={"planId": "PATIENCE"}, headers=as_user())
        client.post("/api/subscriptions/checkout", json={"planId": "INTENTION"}, headers=as_user())

        body = client.get("/api/metrics/protection", headers=as_user()).json()

        assert body["user_id"] == "user_1"
        assert body["validation"]["total_validations"] == 2
        assert body["validation"]["failed_validations"] == 1
        assert body["idempotency"]["total_requests"] == 1
        assert body["idempotency"]["total_records"] == 1
        checkout = body["rate_limit"]["endpoints"]["checkout_create"]
        assert checkout["current"] == 2
        assert checkout["remaining"] == 3
        assert body["rate_limit"]["active_windows"] >= 1

    def test_request_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_is_generated(self, client):
        assert client.get("/health").headers["X-Request-ID"]

    def test_error_body_carries_request_id(self, client):
        response = client.post(
            "/api/subscriptions/checkout",
            json={"planId": "INTENTION"},
            headers=as_user(**{"X-Request-ID": "req-err"}),
        )
        assert response.json()["request_id"] == "req-err"

    def test_oversized_body_rejected_before_parsing(self, client):
        response = client.post(
            "/api/subscriptions/checkout",
            content=b"x" * (1024 * 1024 + 1),
            headers=as_user(**{"content-type": "application/json"}),
        )

        assert response.status_code == 413
        assert response.json()["code"] == "payload_too_large"
