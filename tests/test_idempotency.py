"""Tests for idempotency keys and the check-process-store handler."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from matchguard.app.core.store import InMemoryTTLStore
from matchguard.app.exceptions import StoreError
from matchguard.app.middleware.idempotency import (
    IDEMPOTENCY_CONFIGS,
    IdempotencyAnalytics,
    IdempotencyClass,
    IdempotencyConfig,
    IdempotencyHandler,
    IdempotencyRecord,
    clear_idempotency_cache,
    create_idempotency_handler,
    get_idempotency_stats,
)
from matchguard.app.middleware.idempotency.keys import (
    body_hash,
    canonical_json,
    checkout_operation,
    default_key,
    parse_signature_header,
    payment_operation,
    short_hash,
    subscription_operation,
    time_bucket,
    webhook_signature,
)


@pytest.fixture
def store(clock):
    return InMemoryTTLStore(clock=clock)


@pytest.fixture
def analytics():
    return IdempotencyAnalytics()


@pytest.fixture
def checkout_handler(store, clock, analytics):
    handler = create_idempotency_handler(
        IdempotencyClass.CHECKOUT_CREATE, store=store, clock=clock
    )
    handler.analytics = analytics
    return handler


def counting_processor(response, status_code=200):
    calls = []

    async def processor():
        calls.append(1)
        return response, status_code

    return processor, calls


class TestKeyHelpers:
    def test_short_hash_is_sixteen_hex_chars(self):
        digest = short_hash("payload")
        assert len(digest) == 16
        assert digest == short_hash("payload")
        assert digest != short_hash("payload2")

    def test_canonical_json_ignores_key_order(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == canonical_json({"a": [1, 2], "b": 1})
        assert canonical_json({"a": 1}) == '{"a":1}'

    def test_time_bucket(self):
        assert time_bucket(599.9, 300) == 1
        assert time_bucket(600.0, 300) == 2

    def test_parse_signature_header(self):
        parsed = parse_signature_header("t=1700000000,v1=abc,v1=def,v0=old")
        assert parsed == {"t": ["1700000000"], "v1": ["abc", "def"], "v0": ["old"]}

    def test_parse_signature_header_ignores_garbage(self):
        assert parse_signature_header("garbage,=x") == {}


class TestKeyGenerators:
    def test_webhook_key_ignores_payload(self, request_factory, clock):
        request = request_factory(headers={"stripe-signature": "t=1700000000,v1=abc"})
        first = webhook_signature(request, {"id": "evt_1"}, clock.now)
        second = webhook_signature(request, {"id": "evt_2"}, clock.now + 3600)
        assert first == second
        assert first.startswith("stripe:webhook:1700000000:")

    def test_webhook_key_differs_by_signature(self, request_factory, clock):
        a = request_factory(headers={"stripe-signature": "t=1,v1=abc"})
        b = request_factory(headers={"stripe-signature": "t=1,v1=abd"})
        assert webhook_signature(a, None, clock.now) != webhook_signature(b, None, clock.now)

    def test_webhook_key_without_signature(self, request_factory, clock):
        key = webhook_signature(request_factory(), None, clock.now)
        assert key == f"stripe:webhook::{short_hash('')}"

    def test_subscription_operation_buckets_by_minute(self, request_factory, clock):
        generate = subscription_operation("cancel")
        request = request_factory(headers={"x-user-id": "user_1"})
        key = generate(request, None, clock.now)

        assert key == f"subscription:cancel:user_1:{int(clock.now // 60)}"
        assert generate(request, None, clock.now + 59) == key
        assert generate(request, None, clock.now + 60) != key

    def test_operations_have_distinct_keys(self, request_factory, clock):
        request = request_factory(headers={"x-user-id": "user_1"})
        cancel = subscription_operation("cancel")(request, None, clock.now)
        reactivate = subscription_operation("reactivate")(request, None, clock.now)
        assert cancel != reactivate

    def test_checkout_key_prefers_plan_header(self, request_factory, clock):
        request = request_factory(
            headers={"x-user-id": "user_1", "x-plan-id": "RELIANCE"}
        )
        key = checkout_operation(request, {"planId": "PATIENCE"}, clock.now)
        assert key == f"checkout:user_1:RELIANCE:{int(clock.now // 300)}"

    def test_checkout_key_falls_back_to_body_plan(self, request_factory, clock):
        request = request_factory(headers={"x-user-id": "user_1"})
        key = checkout_operation(request, {"planId": "PATIENCE"}, clock.now)
        assert key.startswith("checkout:user_1:PATIENCE:")

    def test_checkout_key_unknown_plan(self, request_factory, clock):
        key = checkout_operation(request_factory(), None, clock.now)
        assert key.startswith("checkout:anonymous:unknown:")

    def test_body_hash_is_order_insensitive(self, request_factory, clock):
        request = request_factory(headers={"x-user-id": "user_1"})
        assert body_hash(request, {"a": 1, "b": 2}, clock.now) == body_hash(
            request, {"b": 2, "a": 1}, clock.now
        )

    def test_payment_key(self, request_factory, clock):
        request = request_factory(headers={"x-payment-id": "pi_123"})
        assert payment_operation(request, None, clock.now) == "payment:pi_123"
        assert payment_operation(request_factory(), None, clock.now) == "payment:unknown"

    def test_default_key_components(self, request_factory, clock):
        request = request_factory(path="/api/things", headers={"x-user-id": "u"})
        bucket = int(clock.now // 300)

        assert default_key(request, None, clock.now) == f"POST:/api/things:u:{bucket}"
        body_digest = short_hash('{"x":1}')
        with_body = default_key(request, {"x": 1}, clock.now)
        assert with_body == f"POST:/api/things:u:{body_digest}:{bucket}"


class TestRegistry:
    def test_every_class_is_configured(self):
        assert set(IDEMPOTENCY_CONFIGS) == set(IdempotencyClass)

    def test_ttls(self):
        ttls = {cls: cfg.ttl_seconds for cls, cfg in IDEMPOTENCY_CONFIGS.items()}
        assert ttls[IdempotencyClass.STRIPE_WEBHOOK] == 86400
        assert ttls[IdempotencyClass.CHECKOUT_CREATE] == 1800
        assert ttls[IdempotencyClass.SUBSCRIPTION_MODIFY] == 3600

    def test_modify_covers_put_and_patch(self):
        methods = IDEMPOTENCY_CONFIGS[IdempotencyClass.SUBSCRIPTION_MODIFY].enabled_methods
        assert methods == {"POST", "PUT", "PATCH"}


class TestIdempotencyHandler:
    @pytest.mark.asyncio
    async def test_first_request_is_processed_and_stored(self, checkout_handler, store, request_factory):
        request = request_factory(headers={"x-user-id": "user_1", "x-plan-id": "PATIENCE"})
        processor, calls = counting_processor({"url": "https://pay/1"})

        outcome = await checkout_handler.with_idempotency(request, processor)

        assert outcome.was_idempotent is False
        assert outcome.response == {"url": "https://pay/1"}
        assert outcome.status_code == 200
        assert len(calls) == 1
        assert len(await store.keys()) == 1

    @pytest.mark.asyncio
    async def test_retry_replays_first_response(self, checkout_handler, request_factory, clock):
        request = request_factory(headers={"x-user-id": "user_1", "x-plan-id": "PATIENCE"})
        first, first_calls = counting_processor({"url": "https://pay/1"}, 201)
        second, second_calls = counting_processor({"url": "https://pay/2"})

        await checkout_handler.with_idempotency(request, first)
        clock.advance(30)
        outcome = await checkout_handler.with_idempotency(request, second)

        assert outcome.was_idempotent is True
        assert outcome.response == {"url": "https://pay/1"}
        assert outcome.status_code == 201
        assert second_calls == []

    @pytest.mark.asyncio
    async def test_record_expires_after_ttl(self, checkout_handler, request_factory, clock):
        request = request_factory(headers={"x-user-id": "user_1", "x-plan-id": "PATIENCE"})
        processor, calls = counting_processor({"ok": True})

        await checkout_handler.with_idempotency(request, processor)
        clock.advance(checkout_handler.config.ttl_seconds + 1)
        await checkout_handler.with_idempotency(request, processor)

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_uncovered_method_is_always_processed(self, checkout_handler, store, request_factory):
        request = request_factory(method="GET", headers={"x-user-id": "user_1"})

        check = await checkout_handler.check_idempotency(request)

        assert check.should_process is True
        assert check.idempotency_key == ""
        assert await checkout_handler.store_response("", {"x": 1}, 200) is False
        assert await store.keys() == []

    @pytest.mark.asyncio
    async def test_disabled_flag_skips_store(self, checkout_handler, store, request_factory):
        request = request_factory(headers={"x-user-id": "user_1"})
        processor, calls = counting_processor({"ok": True})

        with patch("matchguard.app.middleware.idempotency.handler.settings") as mock_settings:
            mock_settings.idempotency_enabled = False
            await checkout_handler.with_idempotency(request, processor)
            await checkout_handler.with_idempotency(request, processor)

        assert len(calls) == 2
        assert await store.keys() == []

    @pytest.mark.asyncio
    async def test_store_is_write_once(self, checkout_handler, store):
        assert await checkout_handler.store_response("k", {"n": 1}, 200) is True
        assert await checkout_handler.store_response("k", {"n": 2}, 200) is False

        record = IdempotencyRecord.from_dict(await store.get("k"))
        assert record.response == {"n": 1}
        assert record.expires_at - record.created_at == checkout_handler.config.ttl_seconds

    @pytest.mark.asyncio
    async def test_server_errors_are_not_stored(self, checkout_handler, store, request_factory):
        request = request_factory(headers={"x-user-id": "user_1"})
        processor, calls = counting_processor({"error": True}, 502)

        first = await checkout_handler.with_idempotency(request, processor)
        second = await checkout_handler.with_idempotency(request, processor)

        assert first.status_code == 502
        assert second.was_idempotent is False
        assert len(calls) == 2
        assert await store.keys() == []

    @pytest.mark.asyncio
    async def test_client_errors_are_stored(self, checkout_handler, request_factory):
        request = request_factory(headers={"x-user-id": "user_1"})
        processor, calls = counting_processor({"error": "bad plan"}, 400)

        await checkout_handler.with_idempotency(request, processor)
        outcome = await checkout_handler.with_idempotency(request, processor)

        assert outcome.was_idempotent is True
        assert outcome.status_code == 400
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_processor_exception_propagates_and_is_not_stored(
        self, checkout_handler, store, request_factory
    ):
        request = request_factory(headers={"x-user-id": "user_1"})

        async def failing():
            raise RuntimeError("provider down")

        with pytest.raises(RuntimeError, match="provider down"):
            await checkout_handler.with_idempotency(request, failing)

        assert await store.keys() == []

    @pytest.mark.asyncio
    async def test_store_errors_propagate(self, request_factory):
        broken = MagicMock()
        broken.get = AsyncMock(side_effect=StoreError("store unavailable"))
        handler = create_idempotency_handler(IdempotencyClass.CHECKOUT_CREATE, store=broken)
        processor, calls = counting_processor({"ok": True})

        with pytest.raises(StoreError):
            await handler.with_idempotency(request_factory(), processor)

        assert calls == []

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_keep_first_stored_response(
        self, checkout_handler, store, request_factory
    ):
        """Duplicates that overlap in flight both run; the store keeps one record."""
        request = request_factory(headers={"x-user-id": "user_1", "x-plan-id": "PATIENCE"})
        release = asyncio.Event()
        calls = []

        async def slow_processor():
            calls.append(1)
            n = len(calls)
            await release.wait()
            return {"n": n}, 200

        tasks = [
            asyncio.create_task(checkout_handler.with_idempotency(request, slow_processor))
            for _ in range(2)
        ]
        while len(calls) < 2:
            await asyncio.sleep(0)
        release.set()
        outcomes = await asyncio.gather(*tasks)

        assert len(calls) == 2
        assert all(not o.was_idempotent for o in outcomes)
        stored = IdempotencyRecord.from_dict(await store.get((await store.keys())[0]))
        assert stored.response in ({"n": 1}, {"n": 2})

        replay = await checkout_handler.with_idempotency(request, slow_processor)
        assert replay.was_idempotent is True
        assert replay.response == stored.response

    @pytest.mark.asyncio
    async def test_key_generator_override(self, store, clock, request_factory):
        cancel = create_idempotency_handler(
            IdempotencyClass.SUBSCRIPTION_MODIFY,
            store=store,
            clock=clock,
            key_generator=subscription_operation("cancel"),
        )
        reactivate = create_idempotency_handler(
            IdempotencyClass.SUBSCRIPTION_MODIFY,
            store=store,
            clock=clock,
            key_generator=subscription_operation("reactivate"),
        )
        request = request_factory(headers={"x-user-id": "user_1"})

        await cancel.with_idempotency(request, counting_processor({"op": "cancel"})[0])
        outcome = await reactivate.with_idempotency(
            request, counting_processor({"op": "reactivate"})[0]
        )

        assert outcome.was_idempotent is False
        assert outcome.response == {"op": "reactivate"}
        assert cancel.config.ttl_seconds == reactivate.config.ttl_seconds == 3600

    @pytest.mark.asyncio
    async def test_handler_without_generator_uses_default_key(self, store, clock, request_factory):
        handler = IdempotencyHandler(IdempotencyConfig(ttl_seconds=60), store=store, clock=clock)
        request = request_factory(path="/api/x", headers={"x-user-id": "u"})

        await handler.with_idempotency(request, counting_processor({})[0], body={"a": 1})

        assert (await store.keys())[0].startswith("POST:/api/x:u:")


class TestAnalytics:
    @pytest.mark.asyncio
    async def test_hit_rate(self, checkout_handler, analytics, request_factory):
        request = request_factory(headers={"x-user-id": "user_1"})
        processor, _ = counting_processor({"ok": True})
        for _ in range(4):
            await checkout_handler.with_idempotency(request, processor)

        data = analytics.get_analytics()
        assert data["total_requests"] == 4
        assert data["idempotent_responses"] == 3
        assert data["cache_hit_rate"] == 75.0
        assert data["cache_miss_rate"] == 25.0
        assert data["average_response_time_ms"] >= 0

    def test_empty_analytics(self, analytics):
        data = analytics.get_analytics()
        assert data["cache_hit_rate"] == 0.0
        assert data["cache_miss_rate"] == 100.0
        assert data["average_response_time_ms"] == 0.0

    @pytest.mark.asyncio
    async def test_response_time_window(self):
        analytics = IdempotencyAnalytics(window=2)
        for ms in (100.0, 2.0, 4.0):
            await analytics.record_request(False, ms)
        assert analytics.get_analytics()["average_response_time_ms"] == 3.0
        assert analytics.total_requests == 3

    @pytest.mark.asyncio
    async def test_stats_and_clear(self, store):
        await store.set("a", {"response": "x"}, ttl=60)

        stats = await get_idempotency_stats(store)
        assert stats["total_records"] == 1
        assert stats["store_size"] > 0

        await clear_idempotency_cache(store)
        assert (await get_idempotency_stats(store))["total_records"] == 0
