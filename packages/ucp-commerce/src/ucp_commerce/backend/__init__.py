"""Commerce backend clients."""

from .client import (
    BackendAddress,
    Cart,
    CartItemInput,
    CartLineItem,
    CommerceBackend,
    Country,
    Order,
    OrderDelivery,
    Product,
    ShippingMethod,
)
from .factory import BackendFactory
from .http import HttpCommerceBackend
from .mapper import CartMapper, resolve_address, validate_address
from .memory import InMemoryCommerceBackend

__all__ = [
    "BackendAddress",
    "BackendFactory",
    "Cart",
    "CartItemInput",
    "CartLineItem",
    "CartMapper",
    "CommerceBackend",
    "Country",
    "HttpCommerceBackend",
    "InMemoryCommerceBackend",
    "Order",
    "OrderDelivery",
    "Product",
    "ShippingMethod",
    "resolve_address",
    "validate_address",
]
