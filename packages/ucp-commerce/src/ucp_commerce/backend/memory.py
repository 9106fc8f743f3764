"""In-process commerce backend used in development, demos and tests.

Prices are gross with 21% VAT included. Carts and orders live in the
instance, so one backend object must be shared by every request that should
see the same carts.
"""
from __future__ import annotations

import asyncio
import copy
import itertools
import logging
import uuid
from typing import Any, Dict, List, Optional

from ..exceptions import BackendError
from .client import (
    BackendAddress,
    CalculatedTax,
    Cart,
    CartDelivery,
    CartError,
    CartItemInput,
    CartLineItem,
    Country,
    CountryState,
    Order,
    OrderDelivery,
    Product,
    Salutation,
    ShippingMethod,
)

logger = logging.getLogger(__name__)

TAX_RATE = 21.0


def default_products() -> Dict[str, Product]:
    return {
        "product-1": Product(
            id="product-1", product_number="PROD-001", name="Test Product 1",
            description="A great test product", gross_price=29.99, available_stock=100,
        ),
        "product-2": Product(
            id="product-2", product_number="PROD-002", name="Test Product 2",
            description="Another test product", gross_price=49.99, available_stock=50,
        ),
        "test-product-1": Product(
            id="test-product-1", product_number="TEST-001", name="Test Item",
            description="A test item", gross_price=19.99, available_stock=999,
        ),
    }


def default_shipping_methods() -> List[ShippingMethod]:
    return [
        ShippingMethod(
            id="standard-shipping", name="Standard Shipping",
            description="Delivery in 3-5 business days", min_days=3, max_days=5, price=4.95,
        ),
        ShippingMethod(
            id="express-shipping", name="Express Shipping",
            description="Next day delivery", min_days=1, max_days=1, price=9.95,
        ),
        ShippingMethod(
            id="pickup", name="Store Pickup",
            description="Pick up at our store", min_days=0, max_days=0, price=0.0,
        ),
    ]


def default_countries() -> List[Country]:
    return [
        Country(id="nl", name="Netherlands", iso="NL"),
        Country(id="de", name="Germany", iso="DE"),
        Country(id="be", name="Belgium", iso="BE"),
        Country(id="us", name="United States", iso="US"),
    ]


# Order state machine transitions accepted by the backend
TRANSITIONS = {
    "process": "in_progress",
    "complete": "completed",
    "cancel": "cancelled",
    "reopen": "open",
}


def _included_tax(gross: float) -> float:
    return round(gross * TAX_RATE / (100 + TAX_RATE), 2)


class InMemoryCommerceBackend:
    """Commerce backend with a fixed catalog, shipping table and promotions."""

    def __init__(
        self,
        products: Optional[Dict[str, Product]] = None,
        shipping_methods: Optional[List[ShippingMethod]] = None,
        countries: Optional[List[Country]] = None,
        promotions: Optional[Dict[str, float]] = None,
    ) -> None:
        self.products = products if products is not None else default_products()
        self.shipping_methods = shipping_methods if shipping_methods is not None else default_shipping_methods()
        self.countries = countries if countries is not None else default_countries()
        # code -> percentage off the product positions
        self.promotions = promotions if promotions is not None else {"WELCOME10": 10.0}

        self._carts: Dict[str, Cart] = {}
        self._selected_shipping: Dict[str, str] = {}
        self._addresses: Dict[str, Dict[str, BackendAddress]] = {}
        self._orders: Dict[str, Order] = {}
        self._ordered_carts: set[str] = set()
        self._order_numbers = itertools.count(10001)
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Cart
    # ------------------------------------------------------------------

    def _cart(self, cart_token: str) -> Cart:
        cart = self._carts.get(cart_token)
        if cart is None:
            raise BackendError("Cart not found", details={"cart_token": cart_token})
        return cart

    def _recalculate(self, cart: Cart) -> None:
        products = [li for li in cart.line_items if li.type == "product"]
        positions = round(sum(li.total_price for li in products), 2)

        for item in cart.line_items:
            if item.type == "promotion":
                pct = self.promotions.get(item.payload.get("code", ""), 0.0)
                item.total_price = item.unit_price = -round(positions * pct / 100, 2)
            item.tax = _included_tax(item.total_price)
            item.tax_rate = TAX_RATE

        discounts = sum(li.total_price for li in cart.line_items if li.type == "promotion")

        cart.deliveries = []
        method_id = self._selected_shipping.get(cart.token)
        if method_id:
            method = next((m for m in self.shipping_methods if m.id == method_id), None)
            cart.deliveries.append(
                CartDelivery(shipping_method_id=method_id, shipping_cost=method.price if method else 0.0)
            )
        shipping = sum(d.shipping_cost for d in cart.deliveries)

        cart.position_price = positions
        cart.total_price = round(positions + discounts + shipping, 2)
        cart.taxes = (
            [CalculatedTax(tax=_included_tax(cart.total_price), tax_rate=TAX_RATE, price=cart.total_price)]
            if cart.total_price > 0 else []
        )

    async def create_cart(self) -> Cart:
        cart = Cart(token=f"mock-cart-{uuid.uuid4()}")
        self._carts[cart.token] = cart
        return copy.deepcopy(cart)

    async def get_cart(self, cart_token: str) -> Cart:
        return copy.deepcopy(self._cart(cart_token))

    async def add_line_items(self, cart_token: str, items: List[CartItemInput]) -> Cart:
        async with self._lock:
            cart = self._cart(cart_token)
            cart.errors = []
            for item in items:
                if item.type == "promotion":
                    self._add_promotion(cart, item.referenced_id)
                    continue
                product = self.products.get(item.referenced_id)
                if product is None:
                    raise BackendError(f"Product {item.referenced_id} not found")
                existing = next(
                    (li for li in cart.line_items if li.type == "product" and li.referenced_id == product.id),
                    None,
                )
                if existing is not None:
                    existing.quantity += item.quantity
                    existing.total_price = round(existing.unit_price * existing.quantity, 2)
                    continue
                cart.line_items.append(
                    CartLineItem(
                        id=uuid.uuid4().hex,
                        referenced_id=product.id,
                        label=product.name,
                        description=product.description,
                        quantity=item.quantity,
                        unit_price=product.gross_price,
                        total_price=round(product.gross_price * item.quantity, 2),
                    )
                )
            self._recalculate(cart)
            return copy.deepcopy(cart)

    def _add_promotion(self, cart: Cart, code: str) -> None:
        if code not in self.promotions:
            cart.errors.append(
                CartError(message_key="promotion-not-found", message=f'Promotion code "{code}" is not valid')
            )
            return
        if any(li.type == "promotion" and li.payload.get("code") == code for li in cart.line_items):
            return
        cart.line_items.append(
            CartLineItem(
                id=f"promotion-{code}",
                referenced_id=code,
                label=f"Coupon: {code}",
                quantity=1,
                unit_price=0.0,
                total_price=0.0,
                type="promotion",
                payload={"code": code},
            )
        )

    async def remove_line_items(self, cart_token: str, ids: List[str]) -> Cart:
        async with self._lock:
            cart = self._cart(cart_token)
            cart.line_items = [li for li in cart.line_items if li.id not in ids]
            self._recalculate(cart)
            return copy.deepcopy(cart)

    async def set_shipping_method(self, cart_token: str, shipping_method_id: str) -> Cart:
        async with self._lock:
            cart = self._cart(cart_token)
            if not any(m.id == shipping_method_id and m.active for m in self.shipping_methods):
                raise BackendError(
                    "Shipping method not available",
                    details={"shipping_method_id": shipping_method_id},
                )
            self._selected_shipping[cart_token] = shipping_method_id
            self._recalculate(cart)
            return copy.deepcopy(cart)

    async def set_shipping_address(self, cart_token: str, address: BackendAddress) -> None:
        self._cart(cart_token)
        self._addresses.setdefault(cart_token, {})["shipping"] = address

    async def set_billing_address(self, cart_token: str, address: BackendAddress) -> None:
        self._cart(cart_token)
        self._addresses.setdefault(cart_token, {})["billing"] = address

    # ------------------------------------------------------------------
    # Catalog and reference data
    # ------------------------------------------------------------------

    async def get_product(self, product_id: str) -> Optional[Product]:
        product = self.products.get(product_id)
        return copy.deepcopy(product) if product else None

    async def get_shipping_methods(self) -> List[ShippingMethod]:
        return [copy.deepcopy(m) for m in self.shipping_methods if m.active]

    async def get_country_by_iso(self, iso: str) -> Optional[Country]:
        return next((c for c in self.countries if c.iso.upper() == iso.upper() and c.active), None)

    async def get_country_state(self, country_id: str, short_code: str) -> Optional[CountryState]:
        return CountryState(
            id=f"{country_id}-{short_code}", country_id=country_id,
            short_code=short_code, name=short_code,
        )

    async def get_default_salutation(self) -> Optional[Salutation]:
        return Salutation(id="not_specified", key="not_specified")

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def create_order(self, cart_token: str) -> Order:
        async with self._lock:
            cart = self._cart(cart_token)
            products = [li for li in cart.line_items if li.type == "product"]
            if not products:
                raise BackendError("Cannot create an order from an empty cart")
            if cart_token in self._ordered_carts:
                raise BackendError("Cart has already been ordered", details={"cart_token": cart_token})
            for item in products:
                product = self.products.get(item.referenced_id or "")
                if product is not None:
                    product.available_stock = max(0, product.available_stock - item.quantity)

            method_id = self._selected_shipping.get(cart_token)
            method = next((m for m in self.shipping_methods if m.id == method_id), None)
            order = Order(
                id=uuid.uuid4().hex,
                order_number=f"ORD-{next(self._order_numbers)}",
                amount_total=cart.total_price,
                deliveries=[OrderDelivery(shipping_method_name=method.name if method else None)],
                transaction_state="open",
            )
            self._orders[order.id] = order
            # The cart stays readable for projections of the completed session
            self._ordered_carts.add(cart_token)

        logger.info(f"Created mock order: order_id={order.id}, number={order.order_number}")
        return copy.deepcopy(order)

    async def get_order(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        return copy.deepcopy(order) if order else None

    async def update_order_custom_fields(self, order_id: str, custom_fields: Dict[str, Any]) -> None:
        order = self._orders.get(order_id)
        if order is None:
            raise BackendError("Order not found", details={"order_id": order_id})
        order.custom_fields.update(custom_fields)

    async def transition_order_state(self, order_id: str, transition: str) -> None:
        order = self._orders.get(order_id)
        if order is None:
            raise BackendError("Order not found", details={"order_id": order_id})
        if transition not in TRANSITIONS:
            raise BackendError(f"Unknown order transition: {transition}")
        order.state = TRANSITIONS[transition]

    async def close(self) -> None:
        return None
