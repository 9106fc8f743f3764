"""HTTP commerce backend speaking the Shopware store and admin APIs.

Admin calls authenticate with an OAuth client-credentials token cached until
shortly before expiry. Store API calls carry the sales channel access key
and the cart's context token.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from ..exceptions import BackendError
from ..models.checkout import utcnow
from ..stores.shops import ShopCredentials
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

TOKEN_EXPIRY_BUFFER_SECONDS = 60


def _parse_dt(value: Optional[str]) -> datetime:
    if not value:
        return utcnow()
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def parse_cart(data: Dict[str, Any]) -> Cart:
    price = data.get("price") or {}
    items = []
    for raw in data.get("lineItems") or []:
        item_price = raw.get("price") or {}
        taxes = item_price.get("calculatedTaxes") or []
        items.append(
            CartLineItem(
                id=raw["id"],
                referenced_id=raw.get("referencedId"),
                label=raw.get("label", ""),
                description=raw.get("description"),
                quantity=int(raw.get("quantity") or 0),
                unit_price=float(item_price.get("unitPrice") or 0),
                total_price=float(item_price.get("totalPrice") or 0),
                type=raw.get("type", "product"),
                good=bool(raw.get("good", True)),
                tax=sum(float(t.get("tax") or 0) for t in taxes),
                tax_rate=float(taxes[0]["taxRate"]) if taxes else None,
                payload=raw.get("payload") or {},
            )
        )
    deliveries = [
        CartDelivery(
            shipping_method_id=(d.get("shippingMethod") or {}).get("id", ""),
            shipping_cost=float((d.get("shippingCosts") or {}).get("totalPrice") or 0),
        )
        for d in data.get("deliveries") or []
    ]
    errors = data.get("errors") or []
    if isinstance(errors, dict):
        errors = list(errors.values())
    return Cart(
        token=data.get("token", ""),
        line_items=items,
        position_price=float(price.get("positionPrice") or 0),
        total_price=float(price.get("totalPrice") or 0),
        taxes=[
            CalculatedTax(
                tax=float(t.get("tax") or 0),
                tax_rate=float(t.get("taxRate") or 0),
                price=float(t.get("price") or 0),
            )
            for t in price.get("calculatedTaxes") or []
        ],
        deliveries=deliveries,
        errors=[
            CartError(message_key=e.get("messageKey", "cart-error"), message=e.get("message", ""))
            for e in errors
        ],
    )


def parse_product(data: Dict[str, Any]) -> Product:
    prices = data.get("price") or []
    return Product(
        id=data["id"],
        name=(data.get("translated") or {}).get("name") or data.get("name", ""),
        gross_price=float(prices[0]["gross"]) if prices else 0.0,
        available_stock=int(data.get("availableStock") or 0),
        product_number=data.get("productNumber"),
        description=data.get("description"),
        active=bool(data.get("active", True)),
    )


def parse_shipping_method(data: Dict[str, Any]) -> ShippingMethod:
    translated = data.get("translated") or {}
    delivery_time = data.get("deliveryTime") or {}
    return ShippingMethod(
        id=data["id"],
        name=translated.get("name") or data.get("name", ""),
        description=translated.get("description") or data.get("description"),
        active=bool(data.get("active", True)),
        min_days=delivery_time.get("min"),
        max_days=delivery_time.get("max"),
    )


def parse_order(data: Dict[str, Any]) -> Order:
    deliveries = []
    for d in data.get("deliveries") or []:
        deliveries.append(
            OrderDelivery(
                state=(d.get("stateMachineState") or {}).get("technicalName", "open"),
                shipping_method_name=(d.get("shippingMethod") or {}).get("name"),
                tracking_codes=list(d.get("trackingCodes") or []),
            )
        )
    transactions = data.get("transactions") or []
    return Order(
        id=data["id"],
        order_number=data.get("orderNumber", ""),
        amount_total=float(data.get("amountTotal") or 0),
        state=(data.get("stateMachineState") or {}).get("technicalName", "open"),
        created_at=_parse_dt(data.get("createdAt")),
        deliveries=deliveries,
        transaction_state=(
            (transactions[-1].get("stateMachineState") or {}).get("technicalName")
            if transactions else None
        ),
        custom_fields=data.get("customFields") or {},
    )


class HttpCommerceBackend:
    """Commerce backend for one registered shop."""

    def __init__(
        self,
        credentials: ShopCredentials,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._credentials = credentials
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._credentials.shop_url.rstrip("/"),
                timeout=self._timeout,
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def _get_access_token(self) -> str:
        if self._access_token and self._token_expires_at > time.time():
            return self._access_token
        data = await self._request(
            "POST",
            "/api/oauth/token",
            json={
                "grant_type": "client_credentials",
                "client_id": self._credentials.api_key,
                "client_secret": self._credentials.secret_key,
            },
            auth=False,
        )
        self._access_token = data["access_token"]
        self._token_expires_at = time.time() + int(data.get("expires_in", 600)) - TOKEN_EXPIRY_BUFFER_SECONDS
        return self._access_token

    async def _request(
        self,
        method: str,
        path: str,
        json: Any = None,
        auth: bool = True,
        context_token: Optional[str] = None,
        store_api: bool = False,
    ) -> Any:
        client = await self._get_client()
        headers: Dict[str, str] = {}
        if auth:
            headers["Authorization"] = f"Bearer {await self._get_access_token()}"
        if store_api:
            headers["sw-access-key"] = self._credentials.api_key
        if context_token:
            headers["sw-context-token"] = context_token

        try:
            response = await client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as e:
            logger.error(f"Backend timeout: shop={self._credentials.shop_id}, path={path}")
            raise BackendError(f"Backend API timeout after {self._timeout}s") from e
        except httpx.HTTPError as e:
            logger.error(f"Backend request failed: shop={self._credentials.shop_id}, path={path}, error={e}")
            raise BackendError(f"Backend API request failed: {e}") from e

        if response.status_code >= 400:
            detail = response.reason_phrase
            try:
                body = response.json()
                errors = body.get("errors") or []
                detail = (errors[0].get("detail") if errors else None) or body.get("message") or detail
            except ValueError:
                pass
            logger.error(
                f"Backend API error: shop={self._credentials.shop_id}, "
                f"status={response.status_code}, path={path}, error={detail}"
            )
            raise BackendError(
                f"Backend API error: {response.status_code} - {detail}",
                details={"status": response.status_code},
            )

        if "application/json" not in response.headers.get("content-type", ""):
            return {}
        return response.json()

    async def _store(self, method: str, path: str, cart_token: Optional[str] = None, json: Any = None) -> Any:
        return await self._request(method, path, json=json, context_token=cart_token, store_api=True)

    # Cart

    async def create_cart(self) -> Cart:
        return parse_cart(await self._store("POST", "/store-api/checkout/cart", json={}))

    async def get_cart(self, cart_token: str) -> Cart:
        return parse_cart(await self._store("GET", "/store-api/checkout/cart", cart_token))

    async def add_line_items(self, cart_token: str, items: List[CartItemInput]) -> Cart:
        payload = {
            "items": [
                {"id": i.id, "referencedId": i.referenced_id, "quantity": i.quantity, "type": i.type}
                for i in items
            ]
        }
        return parse_cart(
            await self._store("POST", "/store-api/checkout/cart/line-item", cart_token, payload)
        )

    async def remove_line_items(self, cart_token: str, ids: List[str]) -> Cart:
        return parse_cart(
            await self._store("DELETE", "/store-api/checkout/cart/line-item", cart_token, {"ids": ids})
        )

    async def set_shipping_method(self, cart_token: str, shipping_method_id: str) -> Cart:
        await self._store("PATCH", "/store-api/context", cart_token, {"shippingMethodId": shipping_method_id})
        return await self.get_cart(cart_token)

    async def set_shipping_address(self, cart_token: str, address: BackendAddress) -> None:
        await self._store("PATCH", "/store-api/context", cart_token, {"shippingAddress": address.to_dict()})

    async def set_billing_address(self, cart_token: str, address: BackendAddress) -> None:
        await self._store("PATCH", "/store-api/context", cart_token, {"billingAddress": address.to_dict()})

    # Catalog and reference data

    async def get_product(self, product_id: str) -> Optional[Product]:
        try:
            data = await self._request("GET", f"/api/product/{product_id}")
        except BackendError as e:
            if e.details.get("status") == 404:
                return None
            raise
        return parse_product(data["data"]) if data.get("data") else None

    async def get_shipping_methods(self) -> List[ShippingMethod]:
        data = await self._store("POST", "/store-api/shipping-method", json={"onlyAvailable": True})
        return [parse_shipping_method(m) for m in data.get("elements") or []]

    async def get_country_by_iso(self, iso: str) -> Optional[Country]:
        data = await self._request(
            "POST",
            "/api/search/country",
            json={
                "filter": [
                    {"type": "equals", "field": "iso", "value": iso.upper()},
                    {"type": "equals", "field": "active", "value": True},
                ],
                "limit": 1,
            },
        )
        rows = data.get("data") or []
        if not rows:
            return None
        row = rows[0]
        return Country(
            id=row["id"],
            name=row.get("name", ""),
            iso=row.get("iso", iso.upper()),
            active=bool(row.get("active", True)),
            shipping_available=bool(row.get("shippingAvailable", True)),
        )

    async def get_country_state(self, country_id: str, short_code: str) -> Optional[CountryState]:
        data = await self._request(
            "POST",
            "/api/search/country-state",
            json={
                "filter": [
                    {"type": "equals", "field": "countryId", "value": country_id},
                    {"type": "equals", "field": "shortCode", "value": short_code},
                    {"type": "equals", "field": "active", "value": True},
                ],
                "limit": 1,
            },
        )
        rows = data.get("data") or []
        if not rows:
            return None
        return CountryState(
            id=rows[0]["id"],
            country_id=country_id,
            short_code=rows[0].get("shortCode", short_code),
            name=rows[0].get("name", short_code),
        )

    async def get_default_salutation(self) -> Optional[Salutation]:
        data = await self._request("POST", "/api/search/salutation", json={"limit": 50})
        salutations = [Salutation(id=s["id"], key=s.get("salutationKey", "")) for s in data.get("data") or []]
        for key in ("not_specified", "mr"):
            for salutation in salutations:
                if salutation.key == key:
                    return salutation
        return salutations[0] if salutations else None

    # Orders

    async def create_order(self, cart_token: str) -> Order:
        return parse_order(await self._store("POST", "/store-api/checkout/order", cart_token, {}))

    async def get_order(self, order_id: str) -> Optional[Order]:
        try:
            data = await self._request(
                "GET",
                f"/api/order/{order_id}"
                "?associations[deliveries][associations][shippingMethod][]=*"
                "&associations[transactions][]=*",
            )
        except BackendError as e:
            if e.details.get("status") == 404:
                return None
            raise
        return parse_order(data["data"]) if data.get("data") else None

    async def update_order_custom_fields(self, order_id: str, custom_fields: Dict[str, Any]) -> None:
        await self._request("PATCH", f"/api/order/{order_id}", json={"customFields": custom_fields})

    async def transition_order_state(self, order_id: str, transition: str) -> None:
        await self._request("POST", f"/api/_action/order/{order_id}/state/{transition}", json={})

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
