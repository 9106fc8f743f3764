"""
Tests for outbound platform webhooks and order status synchronisation.

Tests cover:
- Callback URL derivation from the platform profile
- Signed delivery and the persisted payload snapshot
- Exponential backoff and permanent failure
- Manual retry and cleanup
- Backend state changes translated into order events
"""
from __future__ import annotations

import json
from datetime import timedelta

import pytest

from ucp_commerce.exceptions import DeliveryAlreadySentError, DeliveryNotFoundError
from ucp_commerce.models.checkout import LineItemRequest, utcnow
from ucp_commerce.models.orders import OrderStateChange, OrderStateType, UCPOrderStatus
from ucp_commerce.models.webhooks import OrderEvent, WebhookDeliveryStatus
from ucp_commerce.models.payments import PaymentAttempt, PaymentCredential
from ucp_commerce.services.order_status import OrderStatusTranslator
from ucp_commerce.services.webhooks import RetryConfig, webhook_url_for


class FakeClock:
    def __init__(self) -> None:
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


async def complete_order(checkout, session_id: str) -> str:
    attempt = PaymentAttempt(
        handler_id="business-tokenizer",
        credential=PaymentCredential(type="card", token="tok_visa_ok"),
    )
    view = await checkout.complete(session_id, attempt)
    return view["order"]["id"]


class TestWebhookUrl:
    def test_profile_suffix_is_replaced(self):
        assert (
            webhook_url_for("https://agent.example/.well-known/ucp", "order.shipped")
            == "https://agent.example/webhooks/order/shipped"
        )

    def test_plain_base_url(self):
        assert webhook_url_for("https://agent.example/", "order.updated") == "https://agent.example/webhooks/order/updated"


class TestRetryConfig:
    """Backoff doubles from the initial delay and is capped."""

    def test_exponential_backoff(self):
        config = RetryConfig(initial_delay_seconds=1.0, backoff_multiplier=2.0, jitter_factor=0)
        assert [config.get_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_delay_is_capped(self):
        config = RetryConfig(initial_delay_seconds=1.0, max_delay_seconds=10.0, jitter_factor=0)
        assert config.get_delay(20) == 10.0

    def test_jitter_stays_in_band(self):
        config = RetryConfig(initial_delay_seconds=10.0, jitter_factor=0.1)
        for _ in range(20):
            assert 9.0 <= config.get_delay(1) <= 11.0


class TestWebhookDelivery:
    """Tests for WebhookDeliveryService."""

    @pytest.mark.asyncio
    async def test_delivery_is_signed_and_persisted(self, container, platform, ready_session):
        result = await container.webhooks.queue_order_webhook(
            "default", "order.shipped", ready_session, {"id": "order-1", "status": "shipped"}
        )

        assert result.success
        assert len(platform.requests) == 1
        request = platform.requests[0]
        assert str(request.url) == "https://agent.example/webhooks/order/shipped"
        assert request.headers["X-UCP-Event"] == "order.shipped"
        assert request.headers["X-UCP-Delivery-ID"] == result.delivery_id

        claims = container.signer.verify(request.headers["X-UCP-Signature"])
        assert claims["event"] == "order.shipped"

        body = json.loads(request.content)
        assert body["order"]["ucp_session_id"] == ready_session

        stored = await container.deliveries.get(result.delivery_id)
        assert stored.status == WebhookDeliveryStatus.SENT
        assert stored.attempts == 1
        assert stored.delivered_at is not None

    @pytest.mark.asyncio
    async def test_no_profile_url_means_no_delivery(self, container, checkout, platform):
        view = await checkout.create("default", [LineItemRequest(product_id="product-1")])
        result = await container.webhooks.queue_order_webhook("default", "order.updated", view["id"], {"id": "o"})

        assert not result.success
        assert result.delivery_id == ""
        assert platform.requests == []
        assert await container.deliveries.find_many() == []

    @pytest.mark.asyncio
    async def test_failure_schedules_retry(self, container, platform, ready_session):
        platform.status_code = 503
        before = utcnow()

        result = await container.webhooks.queue_order_webhook(
            "default", "order.updated", ready_session, {"id": "order-1"}
        )

        assert not result.success
        assert result.error == "Initial delivery failed, queued for retry"
        stored = await container.deliveries.get(result.delivery_id)
        assert stored.status == WebhookDeliveryStatus.RETRYING
        assert stored.attempts == 1
        assert stored.last_error.startswith("HTTP 503")
        assert stored.next_retry_at >= before + timedelta(seconds=1)

    @pytest.mark.asyncio
    async def test_retry_queue_replays_snapshot(self, container, platform, ready_session):
        platform.status_code = 500
        result = await container.webhooks.queue_order_webhook(
            "default", "order.updated", ready_session, {"id": "order-1", "status": "confirmed"}
        )

        # Nothing is due until the backoff elapses
        assert await container.webhooks.process_retry_queue() == 0

        container.webhooks._clock = lambda: utcnow() + timedelta(hours=2)
        platform.status_code = 200
        assert await container.webhooks.process_retry_queue() == 1

        stored = await container.deliveries.get(result.delivery_id)
        assert stored.status == WebhookDeliveryStatus.SENT
        assert stored.attempts == 2
        first, second = (json.loads(r.content) for r in platform.requests)
        assert first == second

    @pytest.mark.asyncio
    async def test_permanent_failure_after_max_attempts(self, container, platform, ready_session):
        platform.status_code = 500
        service = container.webhooks
        clock = FakeClock()
        service._clock = clock

        result = await service.queue_order_webhook("default", "order.updated", ready_session, {"id": "order-1"})
        for _ in range(service.retry_config.max_attempts + 2):
            clock.advance(hours=2)
            await service.process_retry_queue()

        stored = await container.deliveries.get(result.delivery_id)
        assert stored.status == WebhookDeliveryStatus.FAILED
        assert stored.attempts == service.retry_config.max_attempts
        assert len(platform.requests) == service.retry_config.max_attempts

    @pytest.mark.asyncio
    async def test_crashing_delivery_does_not_block_queue(self, container, platform, ready_session, monkeypatch):
        platform.status_code = 500
        service = container.webhooks
        clock = FakeClock()
        service._clock = clock

        broken = await service.queue_order_webhook("default", "order.updated", ready_session, {"id": "order-1"})
        clock.advance(minutes=1)
        healthy = await service.queue_order_webhook("default", "order.updated", ready_session, {"id": "order-2"})

        sign = service._headers

        def headers(delivery):
            if delivery.delivery_id == broken.delivery_id:
                raise ValueError("unsignable payload")
            return sign(delivery)

        monkeypatch.setattr(service, "_headers", headers)
        platform.status_code = 200

        clock.advance(hours=2)
        assert await service.process_retry_queue() == 2
        assert (await container.deliveries.get(healthy.delivery_id)).status == WebhookDeliveryStatus.SENT

        stored = await container.deliveries.get(broken.delivery_id)
        assert stored.status == WebhookDeliveryStatus.RETRYING
        assert stored.attempts == 2
        assert stored.last_error == "Delivery error: unsignable payload"

        for _ in range(service.retry_config.max_attempts):
            clock.advance(hours=2)
            await service.process_retry_queue()

        stored = await container.deliveries.get(broken.delivery_id)
        assert stored.status == WebhookDeliveryStatus.FAILED
        assert stored.attempts == service.retry_config.max_attempts

    @pytest.mark.asyncio
    async def test_manual_retry(self, container, platform, ready_session):
        platform.status_code = 500
        result = await container.webhooks.queue_order_webhook(
            "default", "order.updated", ready_session, {"id": "order-1"}
        )

        platform.status_code = 204
        retried = await container.webhooks.retry_delivery(result.delivery_id)
        assert retried.success

        with pytest.raises(DeliveryAlreadySentError):
            await container.webhooks.retry_delivery(result.delivery_id)
        with pytest.raises(DeliveryNotFoundError):
            await container.webhooks.retry_delivery("whd_missing")

    @pytest.mark.asyncio
    async def test_stats_and_cleanup(self, container, platform, ready_session):
        await container.webhooks.queue_order_webhook("default", "order.updated", ready_session, {"id": "a"})
        platform.status_code = 500
        await container.webhooks.queue_order_webhook("default", "order.updated", ready_session, {"id": "b"})

        stats = await container.webhooks.get_stats("default")
        assert stats == {"total": 2, "sent": 1, "failed": 0, "pending": 1}

        # Sent deliveries younger than the retention window survive
        assert await container.webhooks.cleanup() == 0
        container.webhooks._clock = lambda: utcnow() + timedelta(days=31)
        assert await container.webhooks.cleanup() == 1


class TestOrderStatusTranslator:
    """Tests for OrderStatusTranslator."""

    @pytest.fixture
    def translator(self) -> OrderStatusTranslator:
        return OrderStatusTranslator()

    @pytest.mark.parametrize(
        "state_type,state,event,status",
        [
            (OrderStateType.DELIVERY, "shipped", OrderEvent.SHIPPED, "shipped"),
            (OrderStateType.DELIVERY, "shipped_partially", OrderEvent.SHIPPED, "shipped"),
            (OrderStateType.DELIVERY, "delivered", OrderEvent.DELIVERED, "delivered"),
            (OrderStateType.DELIVERY, "returned", OrderEvent.UPDATED, "returned"),
            (OrderStateType.TRANSACTION, "paid", OrderEvent.UPDATED, "confirmed"),
            (OrderStateType.TRANSACTION, "refunded", OrderEvent.UPDATED, "refunded"),
            (OrderStateType.TRANSACTION, "failed", OrderEvent.CANCELED, "canceled"),
            (OrderStateType.ORDER, "open", OrderEvent.UPDATED, "confirmed"),
            (OrderStateType.ORDER, "in_progress", OrderEvent.UPDATED, "processing"),
            (OrderStateType.ORDER, "completed", OrderEvent.DELIVERED, "delivered"),
            (OrderStateType.ORDER, "cancelled", OrderEvent.CANCELED, "canceled"),
        ],
    )
    def test_translate(self, translator, state_type, state, event, status):
        assert translator.translate(state_type, state) == (event, status)

    def test_unmapped_order_state_is_an_update(self, translator):
        assert translator.translate(OrderStateType.ORDER, "archived") == (OrderEvent.UPDATED, "pending")

    def test_unmapped_delivery_state_emits_nothing(self, translator):
        event, status = translator.translate(OrderStateType.DELIVERY, "open")
        assert event is None
        assert status == "open"

    def test_backend_actions(self, translator):
        assert translator.to_backend_action(UCPOrderStatus.CANCELED) == "cancel"
        assert translator.to_backend_action(UCPOrderStatus.DELIVERED) == "complete"
        assert translator.to_backend_action(UCPOrderStatus.SHIPPED) is None

    def test_tracking_urls(self, translator):
        assert translator.tracking_url("DHL Express", "123") == "https://www.dhl.com/en/express/tracking.html?AWB=123"
        assert translator.tracking_url("Local courier", "123") is None
        assert translator.tracking_url(None, "123") is None

        tracking = translator.build_tracking(["3S123"], "PostNL")
        assert tracking[0].to_dict() == {
            "carrier": "PostNL",
            "tracking_number": "3S123",
            "tracking_url": "https://postnl.nl/tracktrace/?B=3S123",
        }


class TestOrderStatusSync:
    """Tests for OrderStatusSyncService."""

    @pytest.mark.asyncio
    async def test_shipment_pushed_with_tracking(self, container, checkout, platform, ready_session):
        order_id = await complete_order(checkout, ready_session)

        result = await container.order_status.handle_state_change(
            "default",
            OrderStateChange(
                order_id=order_id,
                new_state="shipped",
                state_type=OrderStateType.DELIVERY,
                tracking_codes=["JVGL123"],
                carrier="DHL",
            ),
        )

        assert result.success
        assert result.event == "order.shipped"
        body = json.loads(platform.requests[-1].content)
        assert body["event"] == "order.shipped"
        assert body["order"]["order_number"] == "ORD-10001"
        assert body["order"]["tracking"][0]["tracking_number"] == "JVGL123"

    @pytest.mark.asyncio
    async def test_unknown_order(self, container):
        result = await container.order_status.handle_state_change(
            "default", OrderStateChange(order_id="not-ucp", new_state="shipped", state_type=OrderStateType.DELIVERY)
        )
        assert not result.success

    @pytest.mark.asyncio
    async def test_unmapped_state_sends_nothing(self, container, checkout, platform, ready_session):
        order_id = await complete_order(checkout, ready_session)
        result = await container.order_status.handle_state_change(
            "default", OrderStateChange(order_id=order_id, new_state="open", state_type=OrderStateType.TRANSACTION)
        )
        assert result.success
        assert result.event is None
        assert platform.requests == []

    @pytest.mark.asyncio
    async def test_order_placed_only_for_ucp_orders(self, container, checkout, platform, ready_session):
        order_id = await complete_order(checkout, ready_session)

        result = await container.order_status.handle_order_placed("default", order_id)
        assert result.event == "order.updated"
        assert result.status == "confirmed"

        foreign = await container.order_status.handle_order_placed("default", "foreign-order")
        assert foreign.success
        assert foreign.event is None

    @pytest.mark.asyncio
    async def test_sync_from_platform(self, container, checkout, backend, ready_session):
        order_id = await complete_order(checkout, ready_session)

        result = await container.order_status.sync_from_platform("default", order_id, "canceled")
        assert result.success
        assert (await backend.get_order(order_id)).state == "cancelled"

        assert not (await container.order_status.sync_from_platform("default", order_id, "shipped")).success
        assert not (await container.order_status.sync_from_platform("default", order_id, "teleported")).success

    @pytest.mark.asyncio
    async def test_get_order_status(self, container, checkout, ready_session):
        order_id = await complete_order(checkout, ready_session)
        status = await container.order_status.get_order_status("default", order_id)
        assert status == {"status": "confirmed"}
        assert await container.order_status.get_order_status("default", "missing") is None
