"""
Tests for the in-memory stores, the cache and the mock commerce backend.
"""
from __future__ import annotations

from datetime import timedelta

import pytest

from ucp_commerce.backend.client import CartItemInput
from ucp_commerce.backend.memory import InMemoryCommerceBackend
from ucp_commerce.cache import InMemoryCache, RedisCache, create_cache
from ucp_commerce.exceptions import BackendError
from ucp_commerce.models.checkout import CheckoutSession, CheckoutStatus, utcnow
from ucp_commerce.stores.sessions import InMemoryCheckoutSessionStore, create_session_store
from ucp_commerce.stores.shops import InMemoryShopStore, PendingRegistrationStore, ShopCredentials


class FakeTime:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestInMemoryCache:
    """Tests for InMemoryCache."""

    @pytest.mark.asyncio
    async def test_ttl_expiry(self):
        clock = FakeTime()
        cache = InMemoryCache(clock=clock)
        await cache.set("k", "v", ttl=10)

        assert await cache.get("k") == "v"
        clock.now += 11
        assert await cache.get("k") is None
        assert not await cache.exists("k")

    @pytest.mark.asyncio
    async def test_json_and_prefix_delete(self):
        cache = InMemoryCache()
        await cache.set_json("ucp:profile:a", {"x": 1})
        await cache.set_json("ucp:profile:b", [1, 2])
        await cache.set("other", "keep")

        assert await cache.get_json("ucp:profile:a") == {"x": 1}
        assert await cache.delete_prefix("ucp:profile:") == 2
        assert await cache.get("other") == "keep"
        assert await cache.delete("other")
        assert not await cache.delete("other")

    def test_factory(self):
        assert isinstance(create_cache(None), InMemoryCache)
        assert isinstance(create_cache("redis://localhost:6379/0"), RedisCache)


class TestPendingRegistrationStore:
    @pytest.mark.asyncio
    async def test_entry_expires(self):
        clock = FakeTime()
        registrations = PendingRegistrationStore(InMemoryCache(clock=clock), ttl_seconds=600)
        await registrations.put("shop-1", "https://shop.example", "secret")

        entry = await registrations.get("shop-1")
        assert entry["shop_url"] == "https://shop.example"
        assert entry["shop_secret"] == "secret"

        clock.now += 601
        assert await registrations.get("shop-1") is None


class TestShopStore:
    @pytest.mark.asyncio
    async def test_upsert_deactivate_delete(self):
        store = InMemoryShopStore()
        await store.upsert(ShopCredentials(shop_id="s", shop_url="https://s", api_key="k", secret_key="x"))
        await store.upsert(ShopCredentials(shop_id="s", shop_url="https://s", api_key="k2", secret_key="x"))

        assert (await store.get("s")).api_key == "k2"
        assert [s.shop_id for s in await store.list_active()] == ["s"]
        assert "secret_key" not in (await store.get("s")).to_dict()

        assert await store.deactivate("s")
        assert await store.list_active() == []
        assert await store.delete("s")
        assert not await store.deactivate("s")


class TestCheckoutSessionStore:
    """Tests for InMemoryCheckoutSessionStore."""

    @pytest.fixture
    def store(self) -> InMemoryCheckoutSessionStore:
        return InMemoryCheckoutSessionStore()

    @staticmethod
    def session(session_id: str, **kwargs) -> CheckoutSession:
        return CheckoutSession(session_id=session_id, shop_id="shop", cart_token=f"cart-{session_id}", **kwargs)

    def test_factory(self):
        assert isinstance(create_session_store(""), InMemoryCheckoutSessionStore)
        assert isinstance(create_session_store("memory://"), InMemoryCheckoutSessionStore)

    @pytest.mark.asyncio
    async def test_returned_copies_are_detached(self, store):
        await store.create(self.session("cs_1"))
        loaded = await store.get("cs_1")
        loaded.status = CheckoutStatus.COMPLETED
        assert (await store.get("cs_1")).status == CheckoutStatus.INCOMPLETE

    @pytest.mark.asyncio
    async def test_update_ignores_unknown_fields(self, store):
        await store.create(self.session("cs_1"))
        updated = await store.update("cs_1", buyer_email="a@example.com", order_id="forged")
        assert updated.buyer_email == "a@example.com"
        assert updated.order_id is None
        assert await store.update("cs_missing", buyer_email="x") is None

    @pytest.mark.asyncio
    async def test_complete_only_from_in_progress(self, store):
        await store.create(self.session("cs_1"))
        assert await store.complete("cs_1", "order-1", "ORD-1", "tx") is None

        await store.transition_status("cs_1", {CheckoutStatus.INCOMPLETE}, CheckoutStatus.COMPLETE_IN_PROGRESS)
        completed = await store.complete("cs_1", "order-1", "ORD-1", "tx", payment_handler_id="business-tokenizer")
        assert completed.status == CheckoutStatus.COMPLETED
        assert completed.completed_at is not None

        assert await store.find_by_order_id("shop", "order-1") is not None
        assert await store.find_by_order_id("other-shop", "order-1") is None

    @pytest.mark.asyncio
    async def test_expire_leaves_terminal_sessions(self, store):
        await store.create(self.session("cs_done", status=CheckoutStatus.COMPLETED))
        assert await store.expire("cs_done") is None
        assert (await store.get("cs_done")).status == CheckoutStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_only_without_payment_in_flight(self, store):
        await store.create(self.session("cs_paying", status=CheckoutStatus.COMPLETE_IN_PROGRESS))
        await store.create(self.session("cs_done", status=CheckoutStatus.COMPLETED))
        await store.create(self.session("cs_open"))

        assert await store.cancel("cs_paying") is None
        assert await store.cancel("cs_done") is None
        assert (await store.cancel("cs_open")).status == CheckoutStatus.CANCELED
        assert await store.cancel("cs_missing") is None

    @pytest.mark.asyncio
    async def test_delete_expired_keeps_completed(self, store):
        past = utcnow() - timedelta(hours=1)
        await store.create(self.session("cs_old", expires_at=past))
        await store.create(self.session("cs_done", expires_at=past, status=CheckoutStatus.COMPLETED))
        await store.create(self.session("cs_fresh"))

        assert await store.delete_expired() == 1
        assert await store.get("cs_old") is None
        assert await store.get("cs_done") is not None

    @pytest.mark.asyncio
    async def test_stats(self, store):
        await store.create(self.session("cs_1", status=CheckoutStatus.COMPLETED))
        await store.create(self.session("cs_2"))
        await store.create(self.session("cs_3", status=CheckoutStatus.CANCELED))
        await store.create(self.session("cs_4"))

        stats = await store.get_stats("shop")
        assert stats["total"] == 4
        assert stats["completed"] == 1
        assert stats["incomplete"] == 2
        assert stats["conversion_rate"] == 25.0

        listed = await store.find_by_shop("shop", status=CheckoutStatus.INCOMPLETE)
        assert {s.session_id for s in listed} == {"cs_2", "cs_4"}


class TestInMemoryCommerceBackend:
    """Tests for the mock commerce backend."""

    @pytest.mark.asyncio
    async def test_cart_totals(self):
        backend = InMemoryCommerceBackend()
        cart = await backend.create_cart()
        cart = await backend.add_line_items(cart.token, [CartItemInput(id="product-2", referenced_id="product-2", quantity=2)])
        assert cart.position_price == 99.98

        cart = await backend.set_shipping_method(cart.token, "express-shipping")
        assert cart.total_price == 109.93
        assert cart.taxes[0].tax_rate > 0

    @pytest.mark.asyncio
    async def test_unknown_shipping_method(self):
        backend = InMemoryCommerceBackend()
        cart = await backend.create_cart()
        with pytest.raises(BackendError):
            await backend.set_shipping_method(cart.token, "teleport")

    @pytest.mark.asyncio
    async def test_orders(self):
        backend = InMemoryCommerceBackend()
        cart = await backend.create_cart()
        await backend.add_line_items(cart.token, [CartItemInput(id="product-1", referenced_id="product-1", quantity=1)])

        order = await backend.create_order(cart.token)
        assert order.order_number == "ORD-10001"
        assert backend.products["product-1"].available_stock == 99

        with pytest.raises(BackendError):
            await backend.create_order(cart.token)

        await backend.transition_order_state(order.id, "process")
        assert (await backend.get_order(order.id)).state == "in_progress"
        with pytest.raises(BackendError):
            await backend.transition_order_state(order.id, "explode")

    @pytest.mark.asyncio
    async def test_empty_cart_cannot_be_ordered(self):
        backend = InMemoryCommerceBackend()
        cart = await backend.create_cart()
        with pytest.raises(BackendError):
            await backend.create_order(cart.token)
