"""
HTTP API tests.

Exercise the FastAPI app end to end through an in-process ASGI client:
discovery profile, checkout sessions, MCP transport, backend webhooks,
app registration, admin and health endpoints.
"""
from __future__ import annotations

import json
from urllib.parse import urlencode

import pytest

from conftest import PLATFORM_PROFILE, address_payload
from ucp_commerce.signing import compute_hmac_signature

UCP_AGENT = f'profile_url="{PLATFORM_PROFILE}"'


async def create_session(client, **headers) -> dict:
    response = await client.post(
        "/api/v1/checkout-sessions",
        json={"line_items": [{"product_id": "product-1", "quantity": 2}]},
        headers={"UCP-Agent": UCP_AGENT, **headers},
    )
    assert response.status_code == 201
    return response.json()


async def ready_via_api(client) -> str:
    session = await create_session(client)
    response = await client.patch(
        f"/api/v1/checkout-sessions/{session['id']}",
        json={"shipping_address": address_payload(), "selected_fulfillment_option_id": "standard-shipping"},
    )
    assert response.status_code == 200
    return session["id"]


def payment(token: str = "tok_visa_ok", handler_id: str = "business-tokenizer") -> dict:
    return {
        "payment_data": {
            "handler_id": handler_id,
            "type": "card",
            "brand": "visa",
            "last_digits": "4242",
            "credential": {"type": "card", "token": token},
        }
    }


def signed(secret: str, event: dict) -> dict:
    body = json.dumps(event).encode()
    return {
        "content": body,
        "headers": {
            "Content-Type": "application/json",
            "shopware-shop-signature": compute_hmac_signature(secret, body),
        },
    }


class TestProfile:
    @pytest.mark.asyncio
    async def test_profile_document(self, client):
        response = await client.get("/.well-known/ucp")

        assert response.status_code == 200
        assert response.headers["Cache-Control"] == "public, max-age=300"
        assert response.headers["X-UCP-Version"] == "2026-01-11"

        profile = response.json()
        service = profile["ucp"]["services"]["dev.ucp.shopping"]
        assert service["rest"]["endpoint"] == "http://test-server/api/v1"
        assert service["mcp"]["endpoint"] == "http://test-server/mcp"
        assert [h["id"] for h in profile["payment"]["handlers"]] == ["google-pay", "business-tokenizer"]
        key = profile["signing_keys"][0]
        assert key["kty"] == "EC"
        assert key["crv"] == "P-256"

    @pytest.mark.asyncio
    async def test_admin_change_invalidates_cache(self, client):
        await client.get("/.well-known/ucp")
        response = await client.put(
            "/admin/shops/default/payment-handlers",
            json={"handlers": [{"handler_id": "business-tokenizer", "enabled": True}]},
        )
        assert response.status_code == 200

        profile = (await client.get("/.well-known/ucp")).json()
        assert [h["id"] for h in profile["payment"]["handlers"]] == ["business-tokenizer"]


class TestCheckoutSessionsApi:
    """Tests for /api/v1/checkout-sessions."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, client, container):
        session = await create_session(client)

        assert session["status"] == "incomplete"
        assert session["ucp"]["version"] == "2026-01-11"
        stored = await container.sessions.get(session["id"])
        assert stored.platform_profile_url == PLATFORM_PROFILE

        response = await client.get(f"/api/v1/checkout-sessions/{session['id']}")
        assert response.status_code == 200
        assert response.json()["id"] == session["id"]

    @pytest.mark.asyncio
    async def test_capabilities_from_agent_header(self, client, container):
        agent = f'{UCP_AGENT}, capabilities="dev.ucp.shopping.checkout"'
        session = await create_session(client, **{"UCP-Agent": agent})
        stored = await container.sessions.get(session["id"])
        assert stored.platform_capabilities == ["dev.ucp.shopping.checkout"]
        assert stored.active_capabilities == [
            "dev.ucp.shopping.checkout",
            "dev.ucp.shopping.checkout.fulfillment",
            "dev.ucp.shopping.checkout.discounts",
        ]

    @pytest.mark.asyncio
    async def test_missing_session(self, client):
        response = await client.get("/api/v1/checkout-sessions/cs_missing")
        assert response.status_code == 404
        assert response.json()["error"] == "session_not_found"

    @pytest.mark.asyncio
    async def test_request_validation(self, client):
        response = await client.post("/api/v1/checkout-sessions", json={"line_items": []})
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "validation_error"
        assert body["details"]["errors"]

    @pytest.mark.asyncio
    async def test_invalid_address(self, client):
        session = await create_session(client)
        response = await client.patch(
            f"/api/v1/checkout-sessions/{session['id']}",
            json={"shipping_address": address_payload(postal_code="")},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_address"

    @pytest.mark.asyncio
    async def test_discount_codes(self, client):
        session_id = await ready_via_api(client)
        response = await client.patch(
            f"/api/v1/checkout-sessions/{session_id}",
            json={"discounts": {"codes": ["WELCOME10"]}},
        )
        assert response.json()["discounts"]["codes"] == ["WELCOME10"]

    @pytest.mark.asyncio
    async def test_complete(self, client):
        session_id = await ready_via_api(client)
        response = await client.post(f"/api/v1/checkout-sessions/{session_id}/complete", json=payment())

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["order"]["order_number"] == "ORD-10001"

    @pytest.mark.asyncio
    async def test_complete_declined(self, client):
        session_id = await ready_via_api(client)
        response = await client.post(
            f"/api/v1/checkout-sessions/{session_id}/complete", json=payment("tok_decline")
        )
        assert response.status_code == 402
        assert response.json()["error"] == "card_declined"

    @pytest.mark.asyncio
    async def test_complete_incomplete_session(self, client):
        session = await create_session(client)
        response = await client.post(f"/api/v1/checkout-sessions/{session['id']}/complete", json=payment())
        assert response.status_code == 400
        assert response.json()["error"] == "session_incomplete"

    @pytest.mark.asyncio
    async def test_escalation_and_resume(self, client):
        session_id = await ready_via_api(client)
        response = await client.post(
            f"/api/v1/checkout-sessions/{session_id}/complete", json=payment("tok_3ds_card")
        )
        body = response.json()
        assert body["status"] == "requires_escalation"
        assert body["continue_url"].startswith("http://test-server/mock-3ds")

        response = await client.post(f"/api/v1/checkout-sessions/{session_id}/resume", json={"success": True})
        assert response.status_code == 200
        assert response.json()["status"] == "completed"

    @pytest.mark.asyncio
    async def test_cancel(self, client):
        session = await create_session(client)
        response = await client.delete(f"/api/v1/checkout-sessions/{session['id']}")
        assert response.status_code == 204

        response = await client.patch(
            f"/api/v1/checkout-sessions/{session['id']}",
            json={"selected_fulfillment_option_id": "pickup"},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "session_cancelled"

    @pytest.mark.asyncio
    async def test_request_id_header(self, client):
        response = await client.get("/health/live", headers={"X-Request-ID": "req_fixed"})
        assert response.headers["X-Request-ID"] == "req_fixed"

        generated = await client.get("/health/live")
        assert generated.headers["X-Request-ID"].startswith("req_")


class TestMcpApi:
    """Tests for the /mcp endpoints."""

    @pytest.mark.asyncio
    async def test_tools_call(self, client):
        response = await client.post(
            "/mcp",
            json={
                "jsonrpc": "2.0",
                "id": 1,
                "method": "tools/call",
                "params": {
                    "name": "create_checkout",
                    "arguments": {"line_items": [{"product_id": "product-2", "quantity": 1}]},
                },
            },
            headers={"x-ucp-profile": PLATFORM_PROFILE},
        )
        assert response.status_code == 200
        result = response.json()["result"]
        assert json.loads(result["content"][0]["text"])["status"] == "incomplete"

    @pytest.mark.asyncio
    async def test_parse_error(self, client):
        response = await client.post("/mcp", content=b"{not json", headers={"Content-Type": "application/json"})
        assert response.json()["error"]["code"] == -32700

    @pytest.mark.asyncio
    async def test_non_object_meta_is_invalid_params(self, client):
        response = await client.post(
            "/mcp",
            json={"jsonrpc": "2.0", "id": 9, "method": "tools/call", "params": {"name": "get_checkout", "_meta": 42}},
        )
        assert response.status_code == 200
        assert response.json()["error"]["code"] == -32602

    @pytest.mark.asyncio
    async def test_sse_stream(self, client):
        response = await client.post("/mcp/sse", json={"jsonrpc": "2.0", "id": 5, "method": "ping"})

        assert response.headers["content-type"].startswith("text/event-stream")
        frames = [f for f in response.text.split("\n\n") if f]
        assert frames[0].startswith("event: progress")
        assert frames[1].startswith("event: result")
        result = json.loads(frames[1].split("data: ", 1)[1])
        assert result == {"jsonrpc": "2.0", "id": 5, "result": {"pong": True}}

    @pytest.mark.asyncio
    async def test_openrpc(self, client):
        response = await client.get("/mcp/openrpc")
        assert response.json()["openrpc"] == "1.3.2"


class TestBackendWebhooksApi:
    """Inbound backend events are verified and forwarded to the platform."""

    @staticmethod
    async def completed_order(client) -> tuple[str, str]:
        session_id = await ready_via_api(client)
        body = (await client.post(f"/api/v1/checkout-sessions/{session_id}/complete", json=payment())).json()
        return session_id, body["order"]["id"]

    @pytest.mark.asyncio
    async def test_order_placed(self, client, settings, platform):
        session_id, order_id = await self.completed_order(client)
        event = {
            "source": {"shopId": "default"},
            "data": {"payload": [{"id": order_id, "orderNumber": "ORD-10001", "customFields": {"ucp_session_id": session_id}}]},
        }

        response = await client.post("/webhooks/backend/order-placed", **signed(settings.app_secret, event))

        assert response.status_code == 200
        body = response.json()
        assert body["received"] is True
        assert body["results"][0]["event"] == "order.updated"
        assert str(platform.requests[-1].url) == "https://agent.example/webhooks/order/updated"

    @pytest.mark.asyncio
    async def test_non_ucp_order_skipped(self, client, settings, platform):
        event = {
            "source": {"shopId": "default"},
            "data": {"payload": [{"id": "foreign", "customFields": {"other": 1}}]},
        }
        response = await client.post("/webhooks/backend/order-placed", **signed(settings.app_secret, event))
        assert response.json() == {"received": True, "results": []}
        assert platform.requests == []

    @pytest.mark.asyncio
    async def test_delivery_shipped(self, client, settings, platform):
        _, order_id = await self.completed_order(client)
        event = {
            "source": {"shopId": "default"},
            "data": {"payload": [{
                "order": {"id": order_id},
                "fromStateMachineState": {"technicalName": "open"},
                "toStateMachineState": {"technicalName": "shipped"},
                "trackingCodes": ["1Z999"],
                "shippingMethod": {"name": "UPS"},
            }]},
        }

        response = await client.post(
            "/webhooks/backend/order-delivery-state-changed", **signed(settings.app_secret, event)
        )

        assert response.json()["results"][0]["event"] == "order.shipped"
        sent = json.loads(platform.requests[-1].content)
        assert sent["order"]["tracking"] == [{
            "carrier": "UPS",
            "tracking_number": "1Z999",
            "tracking_url": "https://www.ups.com/track?tracknum=1Z999",
        }]

    @pytest.mark.asyncio
    async def test_order_state_cancelled(self, client, settings):
        _, order_id = await self.completed_order(client)
        event = {
            "source": {"shopId": "default"},
            "data": {"payload": [{"entityId": order_id, "toStateMachineState": {"technicalName": "cancelled"}}]},
        }
        response = await client.post("/webhooks/backend/order-state-changed", **signed(settings.app_secret, event))
        assert response.json()["results"][0]["event"] == "order.canceled"

    @pytest.mark.asyncio
    async def test_transaction_refunded(self, client, settings):
        _, order_id = await self.completed_order(client)
        event = {
            "source": {"shopId": "default"},
            "data": {"payload": [{"order": {"id": order_id}, "toStateMachineState": {"technicalName": "refunded"}}]},
        }
        response = await client.post(
            "/webhooks/backend/order-transaction-state-changed", **signed(settings.app_secret, event)
        )
        assert response.json()["results"][0]["status"] == "refunded"

    @pytest.mark.asyncio
    async def test_bad_signature(self, client):
        event = {"source": {"shopId": "default"}, "data": {"payload": []}}
        response = await client.post("/webhooks/backend/order-placed", **signed("wrong-secret", event))
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_signature"

    @pytest.mark.asyncio
    async def test_shop_id_required(self, client, settings):
        response = await client.post("/webhooks/backend/order-placed", **signed(settings.app_secret, {"data": {}}))
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_delivery_inspection_and_retry(self, client, container, platform, ready_session):
        platform.status_code = 500
        result = await container.webhooks.queue_order_webhook("default", "order.updated", ready_session, {"id": "o-1"})

        listing = (await client.get("/webhooks/deliveries", params={"status": "retrying"})).json()
        assert listing["count"] == 1
        assert listing["deliveries"][0]["id"] == result.delivery_id

        stats = (await client.get("/webhooks/stats")).json()
        assert stats == {"shop_id": "default", "stats": {"total": 1, "sent": 0, "failed": 0, "pending": 1}}

        platform.status_code = 200
        retried = await client.post(f"/webhooks/deliveries/{result.delivery_id}/retry")
        assert retried.json() == {"success": True, "delivery_id": result.delivery_id}

        again = await client.post(f"/webhooks/deliveries/{result.delivery_id}/retry")
        assert again.status_code == 400
        assert again.json()["error"] == "delivery_already_sent"


class TestRegistrationApi:
    """Backend app registration handshake."""

    SHOP_URL = "https://shop.example"

    async def register(self, client, settings, shop_id: str = "shop-1"):
        query = urlencode({"shop-id": shop_id, "shop-url": self.SHOP_URL, "timestamp": "1700000000"})
        return await client.get(
            f"/backend/registration?{query}",
            headers={"shopware-app-signature": compute_hmac_signature(settings.app_secret, query)},
        )

    @pytest.mark.asyncio
    async def test_handshake(self, client, container, settings):
        response = await self.register(client, settings)
        assert response.status_code == 200
        body = response.json()
        assert body["proof"] == compute_hmac_signature(
            settings.app_secret, f"shop-1{self.SHOP_URL}{settings.app_name}"
        )
        assert len(body["secret"]) == 64
        assert body["confirmation_url"] == "http://test-server/backend/registration/confirm"

        confirm = await client.post("/backend/registration/confirm", json={
            "shopId": "shop-1",
            "shopUrl": self.SHOP_URL,
            "apiKey": "SWIA-key",
            "secretKey": "backend-secret",
        })
        assert confirm.status_code == 204

        shop = await container.shops.get("shop-1")
        assert shop.api_key == "SWIA-key"
        assert shop.secret_key == "backend-secret"
        assert await container.registrations.get("shop-1") is None

    @pytest.mark.asyncio
    async def test_registered_shop_secret_verifies_webhooks(self, client, settings):
        await self.register(client, settings)
        await client.post("/backend/registration/confirm", json={
            "shopId": "shop-1", "shopUrl": self.SHOP_URL, "apiKey": "k", "secretKey": "backend-secret",
        })
        event = {"source": {"shopId": "shop-1"}, "data": {"payload": []}}

        ok = await client.post("/webhooks/backend/order-state-changed", **signed("backend-secret", event))
        assert ok.status_code == 200
        rejected = await client.post("/webhooks/backend/order-state-changed", **signed(settings.app_secret, event))
        assert rejected.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_signature(self, client):
        query = urlencode({"shop-id": "shop-1", "shop-url": self.SHOP_URL, "timestamp": "1"})
        response = await client.get(f"/backend/registration?{query}", headers={"shopware-app-signature": "00"})
        assert response.status_code == 401

        missing = await client.get(f"/backend/registration?{query}")
        assert missing.status_code == 401
        assert missing.json()["message"] == "Missing signature"

    @pytest.mark.asyncio
    async def test_confirm_without_registration(self, client):
        response = await client.post("/backend/registration/confirm", json={
            "shopId": "ghost", "shopUrl": self.SHOP_URL, "apiKey": "k", "secretKey": "s",
        })
        assert response.status_code == 400
        assert response.json()["error"] == "registration_not_found"

    @pytest.mark.asyncio
    async def test_confirm_url_mismatch(self, client, settings):
        await self.register(client, settings)
        response = await client.post("/backend/registration/confirm", json={
            "shopId": "shop-1", "shopUrl": "https://evil.example", "apiKey": "k", "secretKey": "s",
        })
        assert response.status_code == 400
        assert response.json()["message"] == "Shop URL mismatch"

    @pytest.mark.asyncio
    async def test_lifecycle_hooks(self, client, container, settings):
        await self.register(client, settings)
        await client.post("/backend/registration/confirm", json={
            "shopId": "shop-1", "shopUrl": self.SHOP_URL, "apiKey": "k", "secretKey": "s",
        })

        assert (await client.post("/backend/deactivate", json={"shopId": "shop-1"})).status_code == 204
        assert (await container.shops.get("shop-1")).active is False

        assert (await client.post("/backend/uninstall", json={"shopId": "shop-1"})).status_code == 204
        assert await container.shops.get("shop-1") is None

        missing = await client.post("/backend/uninstall", json={})
        assert missing.status_code == 400
        assert missing.json()["message"] == "Shop ID required"


class TestAdminApi:
    """Payment handler administration."""

    @pytest.mark.asyncio
    async def test_list_handlers(self, client):
        handlers = (await client.get("/admin/payment-handlers")).json()["handlers"]
        assert {h["id"]: h["configured"] for h in handlers} == {
            "google-pay": True,
            "business-tokenizer": True,
            "mollie": False,
        }

    @pytest.mark.asyncio
    async def test_handler_detail(self, client):
        body = (await client.get("/admin/payment-handlers/google-pay")).json()
        assert body["handler"]["name"] == "com.google.pay"
        assert body["handler"]["config_schema"]["type"] == "object"
        assert body["config"]["merchant_id"] == "merchant-123"

        missing = await client.get("/admin/payment-handlers/bitcoin")
        assert missing.status_code == 404
        assert missing.json()["error"] == "handler_not_found"

    @pytest.mark.asyncio
    async def test_connection_test(self, client):
        body = (await client.post("/admin/payment-handlers/mollie/test")).json()
        assert body["success"] is False

    @pytest.mark.asyncio
    async def test_shop_handler_toggle(self, client):
        before = (await client.get("/admin/shops/shop-a/payment-handlers")).json()
        assert before["customized"] is False

        response = await client.post(
            "/admin/shops/shop-a/payment-handlers/google-pay/enable", json={"enabled": False}
        )
        assert response.json() == {"success": True, "message": "Handler disabled"}

        after = (await client.get("/admin/shops/shop-a/payment-handlers")).json()
        assert after["customized"] is True
        assert after["handlers"][0]["handler_id"] == "google-pay"
        assert after["handlers"][0]["enabled"] is False

    @pytest.mark.asyncio
    async def test_unknown_handler_toggle(self, client):
        response = await client.post(
            "/admin/shops/shop-a/payment-handlers/bitcoin/enable", json={"enabled": False}
        )
        assert response.status_code == 404


class TestHealthApi:
    @pytest.mark.asyncio
    async def test_health(self, client):
        body = (await client.get("/health")).json()
        assert body["status"] == "healthy"
        assert body["version"] == "1.0.0"
        assert body["environment"] == "dev"

    @pytest.mark.asyncio
    async def test_ready(self, client):
        response = await client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["checks"] == {"database": "in_memory", "cache": "up"}
