"""Mapping between backend carts and the protocol checkout shape.

All protocol amounts are integers in minor currency units.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..exceptions import InvalidAddressError, UCPInternalError
from ..models.checkout import Address, utcnow
from .client import BackendAddress, Cart, CartLineItem, CommerceBackend, ShippingMethod

logger = logging.getLogger(__name__)


def to_minor(amount: float) -> int:
    return int(round(amount * 100))


class CartMapper:
    def __init__(self, currency: str = "EUR") -> None:
        self.currency = currency

    def _total(self, type_: str, label: str, amount: float) -> Dict[str, Any]:
        return {"type": type_, "label": label, "amount": to_minor(amount), "currency": self.currency}

    def line_items(self, cart: Cart) -> List[Dict[str, Any]]:
        return [
            self.line_item(item)
            for item in cart.line_items
            if item.type == "product" and item.good
        ]

    def line_item(self, item: CartLineItem) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "id": item.id,
            "item": {
                "id": item.referenced_id or item.id,
                "title": item.label,
                "unit_price": to_minor(item.unit_price),
                "currency": self.currency,
            },
            "quantity": item.quantity,
            "totals": [self._total("subtotal", "Subtotal", item.total_price)],
        }
        if item.description:
            entry["item"]["description"] = item.description
        if item.payload.get("parentId"):
            entry["item"]["variant_id"] = item.referenced_id
        options = item.payload.get("options") or []
        if options:
            entry["item"]["variant_title"] = " / ".join(o.get("name", "") for o in options)
        if item.tax:
            entry["totals"].append(self._total("tax", f"Tax ({item.tax_rate:g}%)", item.tax))
        return entry

    def totals(self, cart: Cart) -> List[Dict[str, Any]]:
        totals = [self._total("subtotal", "Subtotal", cart.position_price)]
        for item in cart.line_items:
            if item.type == "promotion":
                totals.append(self._total("discount", item.label, abs(item.total_price)))
        shipping = sum(d.shipping_cost for d in cart.deliveries)
        if shipping > 0:
            totals.append(self._total("fulfillment", "Shipping", shipping))
        tax = sum(t.tax for t in cart.taxes)
        if tax > 0:
            totals.append(self._total("tax", "Tax", tax))
        totals.append(self._total("total", "Total", cart.total_price))
        return totals

    def total_amount(self, cart: Cart) -> int:
        return to_minor(cart.total_price)

    def fulfillment_option(self, method: ShippingMethod, cart: Optional[Cart] = None) -> Dict[str, Any]:
        price = method.price
        if cart is not None:
            delivery = next((d for d in cart.deliveries if d.shipping_method_id == method.id), None)
            if delivery is not None:
                price = delivery.shipping_cost
        option: Dict[str, Any] = {
            "id": method.id,
            "label": method.name,
            "carrier": method.name,
            "price": to_minor(price),
            "currency": self.currency,
        }
        if method.description:
            option["description"] = method.description
        if method.min_days is not None and method.max_days is not None:
            today = utcnow().date()
            option["delivery_estimate"] = {
                "min_days": method.min_days,
                "max_days": method.max_days,
                "estimated_date_min": (today + timedelta(days=method.min_days)).isoformat(),
                "estimated_date_max": (today + timedelta(days=method.max_days)).isoformat(),
            }
        return option

    def fulfillment(
        self, methods: List[ShippingMethod], cart: Cart, selected_id: Optional[str] = None
    ) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "type": "shipping",
            "options": [self.fulfillment_option(m, cart) for m in methods if m.active],
        }
        if selected_id:
            result["selected_option_id"] = selected_id
        return result

    def discounts(self, cart: Cart, codes: Optional[List[str]] = None) -> Dict[str, Any]:
        applied = []
        for item in cart.line_items:
            if item.type != "promotion":
                continue
            code = item.payload.get("code")
            applied.append({
                "code": code,
                "type": "coupon" if code else "promotion",
                "label": item.label,
                "amount": to_minor(abs(item.total_price)),
                "currency": self.currency,
            })
        return {"codes": list(codes or []), "applied": applied}

    def messages(self, cart: Cart) -> List[Dict[str, Any]]:
        return [
            {"type": "error", "code": e.message_key, "message": e.message, "severity": "recoverable"}
            for e in cart.errors
        ]

    @staticmethod
    def to_backend_address(
        address: Address,
        country_id: str,
        salutation_id: str,
        country_state_id: Optional[str] = None,
    ) -> BackendAddress:
        return BackendAddress(
            country_id=country_id,
            salutation_id=salutation_id,
            country_state_id=country_state_id,
            first_name=address.first_name,
            last_name=address.last_name,
            street=address.street_address,
            additional_address_line1=address.extended_address,
            zipcode=address.postal_code,
            city=address.address_locality,
            phone_number=address.phone,
        )


REQUIRED_ADDRESS_FIELDS = {
    "first_name": "First name is required",
    "last_name": "Last name is required",
    "street_address": "Street address is required",
    "address_locality": "City is required",
    "postal_code": "Postal code is required",
    "address_country": "Country is required",
}


def validate_address(address: Address) -> List[Dict[str, str]]:
    """Field-level problems with an address; empty when it is usable."""
    errors = []
    for name, message in REQUIRED_ADDRESS_FIELDS.items():
        if not (getattr(address, name) or "").strip():
            errors.append({"field": name, "code": "required", "message": message})
    country = (address.address_country or "").strip()
    if country and len(country) != 2:
        errors.append({
            "field": "address_country",
            "code": "invalid_format",
            "message": 'Country must be ISO 3166-1 alpha-2 code (e.g., "NL", "DE")',
        })
    return errors


async def resolve_address(
    backend: CommerceBackend, address: Address, mapper: CartMapper, kind: str = "shipping"
) -> BackendAddress:
    """Validate an address and resolve its country, region and salutation."""
    errors = validate_address(address)
    if errors:
        raise InvalidAddressError(
            f"Invalid {kind} address", field=errors[0]["field"], details={"errors": errors}
        )

    country = await backend.get_country_by_iso(address.address_country)
    if country is None or not country.shipping_available:
        label = "Country not found" if kind == "shipping" else "Billing country not found"
        raise InvalidAddressError(label, field="address_country")

    state_id = None
    if address.address_region:
        state = await backend.get_country_state(country.id, address.address_region)
        if state is None:
            logger.warning(
                f"Country state not found, continuing without state: "
                f"country={country.id}, region={address.address_region}"
            )
        else:
            state_id = state.id

    salutation = await backend.get_default_salutation()
    if salutation is None:
        raise UCPInternalError("Default salutation not found")

    return mapper.to_backend_address(address, country.id, salutation.id, state_id)
