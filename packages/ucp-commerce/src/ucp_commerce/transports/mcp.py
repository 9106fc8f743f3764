"""UCP MCP tool registry.

Maps checkout operations to Model Context Protocol (MCP) tool calls:
- create_checkout - Create checkout
- get_checkout - Get checkout
- update_checkout - Update checkout
- complete_checkout - Complete checkout
- cancel_checkout - Cancel checkout
- list_shipping_options - Shipping options for a session
- list_payment_methods - Payment handlers for a session

Every call returns an MCP content block; service errors come back with
``isError`` set rather than as transport faults, so the calling model always
gets a parseable answer.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..exceptions import UCPException, UCPValidationError
from ..models.checkout import Address, Buyer, LineItemRequest
from ..models.payments import PaymentAttempt
from ..services.checkout import CheckoutSessionService

logger = logging.getLogger(__name__)

ADDRESS_SCHEMA = {
    "type": "object",
    "properties": {
        "first_name": {"type": "string", "description": "First name"},
        "last_name": {"type": "string", "description": "Last name"},
        "street_address": {"type": "string", "description": "Street address"},
        "extended_address": {"type": "string", "description": "Apartment, suite, etc."},
        "address_locality": {"type": "string", "description": "City"},
        "address_region": {"type": "string", "description": "State or province"},
        "postal_code": {"type": "string", "description": "Postal/ZIP code"},
        "address_country": {
            "type": "string",
            "description": "ISO 3166-1 alpha-2 country code",
            "minLength": 2,
            "maxLength": 2,
        },
        "phone": {"type": "string", "description": "Phone number"},
    },
    "required": [
        "first_name", "last_name", "street_address",
        "address_locality", "postal_code", "address_country",
    ],
}

SESSION_ONLY_SCHEMA = {
    "type": "object",
    "properties": {
        "session_id": {"type": "string", "description": "The checkout session ID"},
    },
    "required": ["session_id"],
}


@dataclass(slots=True)
class McpContext:
    """Caller metadata for a tool call."""

    shop_id: str = "default"
    profile_url: Optional[str] = None
    capabilities: Optional[List[str]] = None
    request_id: Any = None


@dataclass(slots=True)
class McpTool:
    name: str
    description: str
    input_schema: Dict[str, Any]
    handler: Callable[[Dict[str, Any], McpContext], Awaitable[Dict[str, Any]]] = field(repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}


def text_result(payload: Any, is_error: bool = False) -> Dict[str, Any]:
    text = payload if isinstance(payload, str) else json.dumps(payload, indent=2, default=str)
    result: Dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["isError"] = True
    return result


def _require(args: Dict[str, Any], name: str) -> Any:
    value = args.get(name)
    if value in (None, ""):
        raise UCPValidationError(f"{name} is required", field=name)
    return value


def _format_price(amount_minor: int, currency: str) -> str:
    return f"{amount_minor / 100:.2f} {currency}"


class McpToolRegistry:
    """Tool catalog and dispatcher over the checkout session service."""

    TOOL_CREATE_CHECKOUT = {
        "type": "object",
        "properties": {
            "line_items": {
                "type": "array",
                "description": "Array of items to add to checkout",
                "items": {
                    "type": "object",
                    "properties": {
                        "product_id": {"type": "string", "description": "The product ID"},
                        "quantity": {"type": "integer", "description": "Quantity to purchase", "minimum": 1},
                        "variant_id": {"type": "string", "description": "Optional variant ID"},
                    },
                    "required": ["product_id", "quantity"],
                },
            },
            "buyer": {
                "type": "object",
                "description": "Optional buyer information",
                "properties": {
                    "email": {"type": "string", "format": "email", "description": "Buyer email address"},
                    "phone": {"type": "string", "description": "Buyer phone number"},
                },
            },
        },
        "required": ["line_items"],
    }

    TOOL_UPDATE_CHECKOUT = {
        "type": "object",
        "properties": {
            "session_id": {"type": "string", "description": "The checkout session ID"},
            "shipping_address": ADDRESS_SCHEMA,
            "billing_address": ADDRESS_SCHEMA,
            "selected_fulfillment_option_id": {
                "type": "string",
                "description": "ID of selected shipping method",
            },
            "discount_codes": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Coupon codes to apply",
            },
        },
        "required": ["session_id"],
    }

    TOOL_COMPLETE_CHECKOUT = {
        "type": "object",
        "properties": {
            "session_id": {"type": "string", "description": "The checkout session ID"},
            "payment_data": {
                "type": "object",
                "properties": {
                    "handler_id": {
                        "type": "string",
                        "description": 'Payment handler ID (e.g., "google-pay", "mollie")',
                    },
                    "type": {
                        "type": "string",
                        "enum": ["card", "wallet", "bank_transfer"],
                        "description": "Payment type",
                    },
                    "brand": {"type": "string", "description": "Card brand (visa, mastercard, etc.)"},
                    "last_digits": {"type": "string", "description": "Last 4 digits of card"},
                    "credential": {
                        "type": "object",
                        "properties": {
                            "type": {"type": "string", "description": "Credential type"},
                            "token": {"type": "string", "description": "Payment token"},
                            "issuer": {"type": "string", "description": "Bank issuer for iDEAL"},
                        },
                        "required": ["type", "token"],
                    },
                },
                "required": ["handler_id", "type", "credential"],
            },
        },
        "required": ["session_id", "payment_data"],
    }

    def __init__(self, checkout: CheckoutSessionService) -> None:
        self._checkout = checkout
        self._tools: Dict[str, McpTool] = {}
        self._register_default_tools()

    def _register_default_tools(self) -> None:
        self.register(McpTool(
            name="create_checkout",
            description="Create a new checkout session with line items. Call this when a user wants to purchase products.",
            input_schema=self.TOOL_CREATE_CHECKOUT,
            handler=self._create_checkout,
        ))
        self.register(McpTool(
            name="get_checkout",
            description="Get the current state of a checkout session including items, totals, shipping options, and status.",
            input_schema=SESSION_ONLY_SCHEMA,
            handler=self._get_checkout,
        ))
        self.register(McpTool(
            name="update_checkout",
            description="Update a checkout session with shipping address, billing address, shipping method, or discount codes.",
            input_schema=self.TOOL_UPDATE_CHECKOUT,
            handler=self._update_checkout,
        ))
        self.register(McpTool(
            name="complete_checkout",
            description="Complete the checkout with payment information. Returns order confirmation or redirect URL for 3DS.",
            input_schema=self.TOOL_COMPLETE_CHECKOUT,
            handler=self._complete_checkout,
        ))
        self.register(McpTool(
            name="cancel_checkout",
            description="Cancel an active checkout session.",
            input_schema=SESSION_ONLY_SCHEMA,
            handler=self._cancel_checkout,
        ))
        self.register(McpTool(
            name="list_shipping_options",
            description="Get available shipping options for a checkout session.",
            input_schema=SESSION_ONLY_SCHEMA,
            handler=self._list_shipping_options,
        ))
        self.register(McpTool(
            name="list_payment_methods",
            description="Get available payment methods for a checkout session.",
            input_schema=SESSION_ONLY_SCHEMA,
            handler=self._list_payment_methods,
        ))
        logger.info(f"MCP tools registered: count={len(self._tools)}")

    def register(self, tool: McpTool) -> None:
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get_tools(self) -> List[Dict[str, Any]]:
        return [tool.to_dict() for tool in self._tools.values()]

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    async def execute_tool(
        self, name: str, arguments: Optional[Dict[str, Any]], context: McpContext
    ) -> Dict[str, Any]:
        tool = self._tools.get(name)
        if tool is None:
            return text_result(f"Unknown tool: {name}", is_error=True)

        logger.debug(f"Executing MCP tool: tool={name}, shop={context.shop_id}")
        try:
            return await tool.handler(arguments or {}, context)
        except UCPException as e:
            logger.info(f"MCP tool returned error: tool={name}, error={e.error_code}")
            return text_result(e.to_dict(), is_error=True)
        except Exception as e:
            logger.exception(f"MCP tool execution failed: tool={name}")
            return text_result({"error": "internal_error", "message": str(e) or "Unknown error"}, is_error=True)

    # Tool handlers

    async def _create_checkout(self, args: Dict[str, Any], context: McpContext) -> Dict[str, Any]:
        raw_items = _require(args, "line_items")
        try:
            items = [
                LineItemRequest(
                    product_id=str(item["product_id"]),
                    quantity=int(item.get("quantity", 1)),
                    variant_id=item.get("variant_id"),
                )
                for item in raw_items
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise UCPValidationError(f"Invalid line items: {e}", field="line_items", error_code="invalid_quantity")

        buyer_data = args.get("buyer") or {}
        buyer = Buyer(email=buyer_data.get("email"), phone=buyer_data.get("phone")) if buyer_data else None

        session = await self._checkout.create(
            context.shop_id,
            items,
            buyer=buyer,
            platform_profile_url=context.profile_url,
            platform_capabilities=context.capabilities,
        )
        return text_result({
            "session_id": session["id"],
            "status": session["status"],
            "totals": session["totals"],
            "fulfillment_options": len(session["fulfillment"]["options"]),
            "payment_handlers": len(session["payment"]["handlers"]),
            "expires_at": session["expires_at"],
        })

    async def _get_checkout(self, args: Dict[str, Any], context: McpContext) -> Dict[str, Any]:
        session = await self._checkout.get(_require(args, "session_id"))
        if session is None:
            return text_result("Checkout session not found or expired", is_error=True)
        return text_result(session)

    async def _update_checkout(self, args: Dict[str, Any], context: McpContext) -> Dict[str, Any]:
        session_id = _require(args, "session_id")
        shipping = args.get("shipping_address")
        billing = args.get("billing_address")
        session = await self._checkout.update(
            session_id,
            shipping_address=Address.from_dict(shipping) if shipping else None,
            billing_address=Address.from_dict(billing) if billing else None,
            selected_fulfillment_id=args.get("selected_fulfillment_option_id"),
            discount_codes=args.get("discount_codes"),
        )
        return text_result({
            "session_id": session["id"],
            "status": session["status"],
            "totals": session["totals"],
            "shipping_address": "Set" if session.get("shipping_address") else "Not set",
            "selected_shipping": session["fulfillment"].get("selected_option_id", "Not selected"),
            "messages": session["messages"],
        })

    async def _complete_checkout(self, args: Dict[str, Any], context: McpContext) -> Dict[str, Any]:
        session_id = _require(args, "session_id")
        payment_data = dict(_require(args, "payment_data"))
        payment_data.setdefault("id", f"pay_{uuid.uuid4().hex[:12]}")
        attempt = PaymentAttempt.from_dict(payment_data)
        if not attempt.handler_id:
            raise UCPValidationError("payment_data.handler_id is required", field="handler_id")

        session = await self._checkout.complete(session_id, attempt)
        if session["status"] == "requires_escalation":
            return text_result({
                "status": "requires_action",
                "message": "Payment requires additional verification",
                "continue_url": session.get("continue_url"),
            })

        order = session.get("order") or {}
        return text_result({
            "status": session["status"],
            "order_id": order.get("id"),
            "order_number": order.get("order_number"),
        })

    async def _cancel_checkout(self, args: Dict[str, Any], context: McpContext) -> Dict[str, Any]:
        await self._checkout.cancel(_require(args, "session_id"))
        return text_result("Checkout session canceled successfully")

    async def _list_shipping_options(self, args: Dict[str, Any], context: McpContext) -> Dict[str, Any]:
        session = await self._checkout.get(_require(args, "session_id"))
        if session is None:
            return text_result("Checkout session not found", is_error=True)

        options = []
        for option in session["fulfillment"]["options"]:
            estimate = option.get("delivery_estimate")
            options.append({
                "id": option["id"],
                "label": option["label"],
                "description": option.get("description"),
                "carrier": option.get("carrier"),
                "price": _format_price(option["price"], option["currency"]),
                "delivery_estimate": (
                    f"{estimate['min_days']}-{estimate['max_days']} days" if estimate else "Unknown"
                ),
            })
        return text_result({
            "shipping_options": options,
            "selected": session["fulfillment"].get("selected_option_id"),
        })

    async def _list_payment_methods(self, args: Dict[str, Any], context: McpContext) -> Dict[str, Any]:
        session = await self._checkout.get(_require(args, "session_id"))
        if session is None:
            return text_result("Checkout session not found", is_error=True)

        methods = []
        for handler in session["payment"]["handlers"]:
            config = handler.get("config") or {}
            methods.append({
                "id": handler["id"],
                "name": handler["name"],
                "version": handler.get("version"),
                "supported_types": config.get("supported_brands") or config.get("supported_methods") or [],
            })
        return text_result({"payment_methods": methods})
