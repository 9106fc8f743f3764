"""Prometheus metrics: collectors, service instrumentation and the /metrics endpoint."""
from __future__ import annotations

import json
from datetime import timedelta

import pytest

from conftest import PLATFORM_PROFILE
from ucp_commerce.exceptions import PaymentError
from ucp_commerce.metrics import (
    checkout_sessions_cancelled_total,
    checkout_sessions_completed_total,
    checkout_sessions_created_total,
    http_requests_total,
    payment_duration_seconds,
    payments_processed_total,
    record_webhook_delivery,
    webhook_delivery_duration_seconds,
    webhook_retry_queue_size,
    webhooks_delivered_total,
    webhooks_received_total,
)
from ucp_commerce.models.checkout import LineItemRequest, utcnow
from ucp_commerce.models.payments import PaymentAttempt, PaymentCredential
from ucp_commerce.signing import compute_hmac_signature


def attempt(token: str = "tok_visa_ok") -> PaymentAttempt:
    return PaymentAttempt(handler_id="business-tokenizer", credential=PaymentCredential(type="card", token=token))


def test_record_webhook_delivery_observes_histogram():
    before_count = webhooks_delivered_total.labels(event="order.test", status="failed")._value.get()
    before_sum = webhook_delivery_duration_seconds.labels(event="order.test")._sum.get()

    record_webhook_delivery("order.test", False, 0.25)

    assert webhooks_delivered_total.labels(event="order.test", status="failed")._value.get() == before_count + 1
    assert webhook_delivery_duration_seconds.labels(event="order.test")._sum.get() >= before_sum + 0.25


class TestCheckoutMetrics:
    @pytest.mark.asyncio
    async def test_created_and_cancelled(self, checkout):
        created = checkout_sessions_created_total.labels(shop_id="default")._value.get()
        cancelled = checkout_sessions_cancelled_total.labels(shop_id="default")._value.get()

        view = await checkout.create("default", [LineItemRequest(product_id="product-1", quantity=1)])
        await checkout.cancel(view["id"])

        assert checkout_sessions_created_total.labels(shop_id="default")._value.get() == created + 1
        assert checkout_sessions_cancelled_total.labels(shop_id="default")._value.get() == cancelled + 1

    @pytest.mark.asyncio
    async def test_completion_counts_payment_and_session(self, checkout, ready_session):
        completed = checkout_sessions_completed_total.labels(shop_id="default")._value.get()
        captured = payments_processed_total.labels(handler_id="business-tokenizer", outcome="captured")._value.get()
        timed = payment_duration_seconds.labels(handler_id="business-tokenizer")._sum.get()

        await checkout.complete(ready_session, attempt())

        assert checkout_sessions_completed_total.labels(shop_id="default")._value.get() == completed + 1
        assert (
            payments_processed_total.labels(handler_id="business-tokenizer", outcome="captured")._value.get()
            == captured + 1
        )
        assert payment_duration_seconds.labels(handler_id="business-tokenizer")._sum.get() >= timed

    @pytest.mark.asyncio
    async def test_declined_payment_is_not_a_completion(self, checkout, ready_session):
        completed = checkout_sessions_completed_total.labels(shop_id="default")._value.get()
        failed = payments_processed_total.labels(handler_id="business-tokenizer", outcome="failed")._value.get()

        with pytest.raises(PaymentError):
            await checkout.complete(ready_session, attempt("tok_fail"))

        assert checkout_sessions_completed_total.labels(shop_id="default")._value.get() == completed
        assert (
            payments_processed_total.labels(handler_id="business-tokenizer", outcome="failed")._value.get()
            == failed + 1
        )


class TestWebhookMetrics:
    @pytest.mark.asyncio
    async def test_delivery_outcomes_and_retry_queue(self, container, platform, ready_session):
        sent = webhooks_delivered_total.labels(event="order.updated", status="success")._value.get()
        failed = webhooks_delivered_total.labels(event="order.updated", status="failed")._value.get()

        platform.status_code = 500
        await container.webhooks.queue_order_webhook("default", "order.updated", ready_session, {"id": "order-1"})
        assert webhooks_delivered_total.labels(event="order.updated", status="failed")._value.get() == failed + 1

        container.webhooks._clock = lambda: utcnow() + timedelta(hours=2)
        platform.status_code = 200
        assert await container.webhooks.process_retry_queue() == 1

        assert webhook_retry_queue_size._value.get() == 1
        assert webhooks_delivered_total.labels(event="order.updated", status="success")._value.get() == sent + 1


class TestMetricsEndpoint:
    @pytest.mark.asyncio
    async def test_exposition(self, client):
        await client.get("/.well-known/ucp")
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "ucp_http_requests_total" in response.text
        assert "ucp_checkout_sessions_created_total" in response.text
        assert "ucp_webhook_retry_queue_size" in response.text

    @pytest.mark.asyncio
    async def test_requests_are_labelled_by_route(self, client):
        labels = {"method": "POST", "endpoint": "/api/v1/checkout-sessions", "status": "201"}
        before = http_requests_total.labels(**labels)._value.get()

        response = await client.post(
            "/api/v1/checkout-sessions",
            json={"line_items": [{"product_id": "product-1", "quantity": 1}]},
            headers={"UCP-Agent": f'profile_url="{PLATFORM_PROFILE}"'},
        )

        assert response.status_code == 201
        assert http_requests_total.labels(**labels)._value.get() == before + 1

    @pytest.mark.asyncio
    async def test_verified_backend_webhook_is_counted(self, client, settings):
        before = webhooks_received_total.labels(event="order-state-changed", shop_id="default")._value.get()
        body = json.dumps({"source": {"shopId": "default"}, "data": {"payload": []}}).encode()

        response = await client.post(
            "/webhooks/backend/order-state-changed",
            content=body,
            headers={
                "Content-Type": "application/json",
                "shopware-shop-signature": compute_hmac_signature(settings.app_secret, body),
            },
        )

        assert response.status_code == 200
        assert webhooks_received_total.labels(event="order-state-changed", shop_id="default")._value.get() == before + 1
