"""Commerce backend contract.

The server orchestrates carts, orders, shipping and countries held by an
external commerce system. Everything it needs from that system goes through
``CommerceBackend``; amounts on this side of the boundary are gross prices
in major currency units, exactly as the backend reports them.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from ..models.checkout import utcnow


@dataclass(slots=True)
class Product:
    id: str
    name: str
    gross_price: float
    available_stock: int
    product_number: Optional[str] = None
    description: Optional[str] = None
    active: bool = True


@dataclass(slots=True)
class CartItemInput:
    """A line item to push into a backend cart."""

    id: str
    referenced_id: str
    quantity: int = 1
    type: str = "product"


@dataclass(slots=True)
class CartLineItem:
    id: str
    referenced_id: Optional[str]
    label: str
    quantity: int
    unit_price: float
    total_price: float
    type: str = "product"
    good: bool = True
    tax: float = 0.0
    tax_rate: Optional[float] = None
    description: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CalculatedTax:
    tax: float
    tax_rate: float
    price: float


@dataclass(slots=True)
class CartDelivery:
    shipping_method_id: str
    shipping_cost: float = 0.0


@dataclass(slots=True)
class CartError:
    message_key: str
    message: str


@dataclass(slots=True)
class Cart:
    token: str
    line_items: List[CartLineItem] = field(default_factory=list)
    position_price: float = 0.0
    total_price: float = 0.0
    taxes: List[CalculatedTax] = field(default_factory=list)
    deliveries: List[CartDelivery] = field(default_factory=list)
    errors: List[CartError] = field(default_factory=list)


@dataclass(slots=True)
class ShippingMethod:
    id: str
    name: str
    description: Optional[str] = None
    active: bool = True
    min_days: Optional[int] = None
    max_days: Optional[int] = None
    price: float = 0.0


@dataclass(slots=True)
class Country:
    id: str
    name: str
    iso: str
    active: bool = True
    shipping_available: bool = True


@dataclass(slots=True)
class CountryState:
    id: str
    country_id: str
    short_code: str
    name: str


@dataclass(slots=True)
class Salutation:
    id: str
    key: str


@dataclass(slots=True)
class BackendAddress:
    """Address in the backend's shape, with resolved reference ids."""

    country_id: str
    salutation_id: str
    first_name: str
    last_name: str
    street: str
    zipcode: str
    city: str
    country_state_id: Optional[str] = None
    additional_address_line1: Optional[str] = None
    phone_number: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "countryId": self.country_id,
            "salutationId": self.salutation_id,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "street": self.street,
            "zipcode": self.zipcode,
            "city": self.city,
        }
        if self.country_state_id:
            result["countryStateId"] = self.country_state_id
        if self.additional_address_line1:
            result["additionalAddressLine1"] = self.additional_address_line1
        if self.phone_number:
            result["phoneNumber"] = self.phone_number
        return result


@dataclass(slots=True)
class OrderDelivery:
    state: str = "open"
    shipping_method_name: Optional[str] = None
    tracking_codes: List[str] = field(default_factory=list)


@dataclass(slots=True)
class Order:
    id: str
    order_number: str
    amount_total: float
    state: str = "open"
    created_at: datetime = field(default_factory=utcnow)
    deliveries: List[OrderDelivery] = field(default_factory=list)
    transaction_state: Optional[str] = None
    custom_fields: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class CommerceBackend(Protocol):
    """Operations the server needs from the commerce system of record."""

    # Cart
    async def create_cart(self) -> Cart: ...

    async def get_cart(self, cart_token: str) -> Cart: ...

    async def add_line_items(self, cart_token: str, items: List[CartItemInput]) -> Cart: ...

    async def remove_line_items(self, cart_token: str, ids: List[str]) -> Cart: ...

    async def set_shipping_method(self, cart_token: str, shipping_method_id: str) -> Cart: ...

    async def set_shipping_address(self, cart_token: str, address: BackendAddress) -> None: ...

    async def set_billing_address(self, cart_token: str, address: BackendAddress) -> None: ...

    # Catalog and reference data
    async def get_product(self, product_id: str) -> Optional[Product]: ...

    async def get_shipping_methods(self) -> List[ShippingMethod]: ...

    async def get_country_by_iso(self, iso: str) -> Optional[Country]: ...

    async def get_country_state(self, country_id: str, short_code: str) -> Optional[CountryState]: ...

    async def get_default_salutation(self) -> Optional[Salutation]: ...

    # Orders
    async def create_order(self, cart_token: str) -> Order: ...

    async def get_order(self, order_id: str) -> Optional[Order]: ...

    async def update_order_custom_fields(self, order_id: str, custom_fields: Dict[str, Any]) -> None: ...

    async def transition_order_state(self, order_id: str, transition: str) -> None: ...

    async def close(self) -> None: ...
