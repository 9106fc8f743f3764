"""Checkout session service.

Owns the session lifecycle:

    incomplete -> ready_for_complete -> complete_in_progress
        -> completed | requires_escalation | incomplete (revert)
    incomplete | ready_for_complete | requires_escalation -> canceled

Cart contents, totals and shipping options live in the commerce backend; the
protocol view returned by every operation is projected from the live cart.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..backend.client import Cart, CartItemInput, CommerceBackend
from ..backend.factory import BackendFactory
from ..backend.mapper import CartMapper, resolve_address
from ..config import UCPSettings
from ..exceptions import (
    BackendError,
    CheckoutInProgressError,
    InsufficientInventoryError,
    InvalidSessionStateError,
    ProductUnavailableError,
    SessionExpiredError,
    SessionNotFoundError,
    UCPValidationError,
)
from ..handlers.registry import PaymentHandlerRegistry
from ..metrics import record_checkout_cancelled, record_checkout_created, record_checkout_expired
from ..models.checkout import (
    EXPIRABLE_STATUSES,
    Address,
    Buyer,
    CheckoutSession,
    CheckoutStatus,
    LineItemRequest,
)
from ..models.payments import PaymentAttempt, RiskSignals
from ..stores.sessions import CheckoutSessionStore, new_session_id, session_expiry
from .payments import CompletionResult, PaymentProcessor

logger = logging.getLogger(__name__)

SERVER_CAPABILITIES = [
    "dev.ucp.shopping.checkout",
    "dev.ucp.shopping.order",
    "dev.ucp.shopping.checkout.fulfillment",
    "dev.ucp.shopping.checkout.discounts",
]

# Sessions in these states accept updates
MUTABLE_STATUSES = frozenset({
    CheckoutStatus.INCOMPLETE,
    CheckoutStatus.READY_FOR_COMPLETE,
    CheckoutStatus.REQUIRES_ESCALATION,
})


def capability_matches(server_capability: str, platform_capability: str) -> bool:
    """True when equal or when one is a dot-prefix of the other."""
    if server_capability == platform_capability:
        return True
    return server_capability.startswith(platform_capability + ".") or platform_capability.startswith(
        server_capability + "."
    )


def negotiate_capabilities(
    platform_capabilities: Optional[List[str]],
    server_capabilities: Optional[List[str]] = None,
) -> List[str]:
    """Intersect server and platform capabilities.

    A platform that declares nothing gets every server capability.
    """
    server = list(server_capabilities or SERVER_CAPABILITIES)
    if not platform_capabilities:
        return server
    return [c for c in server if any(capability_matches(c, p) for p in platform_capabilities)]


def _terminal_error(session: CheckoutSession) -> InvalidSessionStateError:
    if session.status == CheckoutStatus.COMPLETED:
        return InvalidSessionStateError("Session already completed", error_code="session_completed")
    return InvalidSessionStateError("Session was cancelled", error_code="session_cancelled")


class CheckoutSessionService:
    def __init__(
        self,
        store: CheckoutSessionStore,
        backends: BackendFactory,
        registry: PaymentHandlerRegistry,
        processor: PaymentProcessor,
        settings: UCPSettings,
    ) -> None:
        self._store = store
        self._backends = backends
        self._registry = registry
        self._processor = processor
        self._settings = settings
        self.mapper = CartMapper(currency=settings.default_currency)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create(
        self,
        shop_id: str,
        line_items: List[LineItemRequest],
        buyer: Optional[Buyer] = None,
        platform_profile_url: Optional[str] = None,
        platform_capabilities: Optional[List[str]] = None,
        platform_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not line_items:
            raise UCPValidationError("At least one line item is required", field="line_items")

        backend = await self._backends.for_shop(shop_id)

        # Same product requested twice counts against stock once
        quantities: Dict[str, int] = {}
        for item in line_items:
            quantities[item.referenced_id] = quantities.get(item.referenced_id, 0) + item.quantity

        for product_id, quantity in quantities.items():
            product = await backend.get_product(product_id)
            if product is None or not product.active:
                raise ProductUnavailableError(product_id)
            if product.available_stock < quantity:
                raise InsufficientInventoryError(product.name, quantity, product.available_stock)

        cart = await backend.create_cart()
        cart = await backend.add_line_items(
            cart.token,
            [CartItemInput(id=pid, referenced_id=pid, quantity=qty) for pid, qty in quantities.items()],
        )

        session = CheckoutSession(
            session_id=new_session_id(),
            shop_id=shop_id,
            cart_token=cart.token,
            status=CheckoutStatus.INCOMPLETE,
            platform_profile_url=platform_profile_url,
            platform_id=platform_id,
            platform_capabilities=list(platform_capabilities or []),
            active_capabilities=negotiate_capabilities(platform_capabilities),
            buyer_email=buyer.email if buyer else None,
            buyer_phone=buyer.phone if buyer else None,
            expires_at=session_expiry(self._settings.session_expiry_hours),
        )
        session = await self._store.create(session)
        logger.info(
            f"Checkout session created: session_id={session.session_id}, shop={shop_id}, "
            f"items={len(quantities)}, capabilities={len(session.active_capabilities)}"
        )
        record_checkout_created(shop_id)
        return await self.project(session, backend=backend, cart=cart)

    async def get_record(self, session_id: str) -> Optional[CheckoutSession]:
        """Stored session, or None when missing or expired.

        An expired session that is not yet terminal is canceled as a side
        effect.
        """
        session = await self._store.get(session_id)
        if session is None:
            return None
        if session.is_expired():
            if session.status in EXPIRABLE_STATUSES and await self._store.expire(session_id) is not None:
                logger.info(f"Checkout session expired: session_id={session_id}")
                record_checkout_expired(session.shop_id)
            return None
        return session

    async def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        session = await self.get_record(session_id)
        if session is None:
            return None
        return await self.project(session)

    async def update(
        self,
        session_id: str,
        shipping_address: Optional[Address] = None,
        billing_address: Optional[Address] = None,
        selected_fulfillment_id: Optional[str] = None,
        discount_codes: Optional[List[str]] = None,
        buyer: Optional[Buyer] = None,
    ) -> Dict[str, Any]:
        session = await self._store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.is_expired():
            if session.status in EXPIRABLE_STATUSES:
                await self._store.expire(session_id)
            raise SessionExpiredError(session_id)
        if session.status.is_terminal:
            raise _terminal_error(session)
        if session.status == CheckoutStatus.COMPLETE_IN_PROGRESS:
            raise CheckoutInProgressError(session_id)

        backend = await self._backends.for_shop(session.shop_id)
        fields: Dict[str, Any] = {}

        if shipping_address is not None:
            resolved = await resolve_address(backend, shipping_address, self.mapper, kind="shipping")
            await backend.set_shipping_address(session.cart_token, resolved)
            fields["shipping_address"] = shipping_address

        if billing_address is not None:
            resolved = await resolve_address(backend, billing_address, self.mapper, kind="billing")
            await backend.set_billing_address(session.cart_token, resolved)
            fields["billing_address"] = billing_address

        if selected_fulfillment_id is not None:
            try:
                await backend.set_shipping_method(session.cart_token, selected_fulfillment_id)
            except BackendError as e:
                raise UCPValidationError(
                    "Shipping method not available",
                    field="selected_fulfillment_id",
                    error_code="shipping_unavailable",
                    details={"fulfillment_id": selected_fulfillment_id},
                ) from e
            fields["selected_fulfillment_id"] = selected_fulfillment_id

        if discount_codes is not None:
            fields["discount_codes"] = await self._apply_discounts(backend, session, discount_codes)

        if buyer is not None:
            if buyer.email:
                fields["buyer_email"] = buyer.email
            if buyer.phone:
                fields["buyer_phone"] = buyer.phone

        has_shipping = fields.get("shipping_address") or session.shipping_address
        has_fulfillment = fields.get("selected_fulfillment_id") or session.selected_fulfillment_id
        new_status = (
            CheckoutStatus.READY_FOR_COMPLETE
            if has_shipping and has_fulfillment
            else CheckoutStatus.INCOMPLETE
        )
        if new_status != session.status and session.status == CheckoutStatus.REQUIRES_ESCALATION:
            fields["pending_transaction_id"] = None

        updated = await self._store.transition_status(session_id, MUTABLE_STATUSES, new_status, **fields)
        if updated is None:
            current = await self._store.get(session_id)
            if current is None:
                raise SessionNotFoundError(session_id)
            if current.status.is_terminal:
                raise _terminal_error(current)
            raise CheckoutInProgressError(session_id)

        logger.info(
            f"Checkout session updated: session_id={session_id}, status={updated.status.value}, "
            f"fields={sorted(fields)}"
        )
        return await self.project(updated, backend=backend)

    async def _apply_discounts(
        self, backend: CommerceBackend, session: CheckoutSession, codes: List[str]
    ) -> List[str]:
        """Push new promotion codes into the cart; returns the codes the cart accepted."""
        wanted = [c.strip() for c in codes if c and c.strip()]
        new_codes = [c for c in wanted if c not in session.discount_codes]
        if new_codes:
            cart = await backend.add_line_items(
                session.cart_token,
                [CartItemInput(id=code, referenced_id=code, type="promotion") for code in new_codes],
            )
        else:
            cart = await backend.get_cart(session.cart_token)
        applied = {li.payload.get("code") for li in cart.line_items if li.type == "promotion"}
        merged = list(dict.fromkeys([*session.discount_codes, *wanted]))
        return [c for c in merged if c in applied]

    async def complete(
        self,
        session_id: str,
        attempt: PaymentAttempt,
        risk: Optional[RiskSignals] = None,
    ) -> Dict[str, Any]:
        result = await self._processor.process_checkout(session_id, attempt, risk)
        return await self._completion_view(result)

    async def resume(self, session_id: str, action_result: Dict[str, Any]) -> Dict[str, Any]:
        result = await self._processor.resume_payment(session_id, action_result)
        return await self._completion_view(result)

    async def _completion_view(self, result: CompletionResult) -> Dict[str, Any]:
        view = await self.project(result.session)
        if result.requires_escalation:
            view["continue_url"] = result.continue_url
            view["messages"].append({
                "type": "error",
                "code": "requires_3ds",
                "content": "Payment requires additional authentication",
                "severity": "requires_buyer_input",
            })
        return view

    async def cancel(self, session_id: str) -> CheckoutSession:
        session = await self._store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        canceled = await self._store.cancel(session_id)
        if canceled is None:
            current = await self._store.get(session_id)
            if current is None:
                raise SessionNotFoundError(session_id)
            if current.status.is_terminal:
                raise _terminal_error(current)
            raise CheckoutInProgressError(session_id)
        logger.info(f"Checkout session canceled: session_id={session_id}, previous={session.status.value}")
        record_checkout_cancelled(session.shop_id)
        return canceled

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def shipping_options(self, session_id: str) -> List[Dict[str, Any]]:
        session = await self.get_record(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        backend = await self._backends.for_shop(session.shop_id)
        cart = await backend.get_cart(session.cart_token)
        methods = await backend.get_shipping_methods()
        return [self.mapper.fulfillment_option(m, cart) for m in methods if m.active]

    def payment_handlers(self, shop_id: str) -> List[Dict[str, Any]]:
        return self._registry.handlers_for_shop(shop_id)

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    async def project(
        self,
        session: CheckoutSession,
        backend: Optional[CommerceBackend] = None,
        cart: Optional[Cart] = None,
    ) -> Dict[str, Any]:
        """Protocol view of a session hydrated from the live backend cart."""
        if backend is None:
            backend = await self._backends.for_shop(session.shop_id)
        if cart is None:
            cart = await backend.get_cart(session.cart_token)
        methods = await backend.get_shipping_methods()

        view: Dict[str, Any] = {
            "ucp": {
                "version": self._settings.ucp_version,
                "capabilities": [
                    {"name": name, "version": self._settings.ucp_version}
                    for name in session.active_capabilities
                ],
            },
            "id": session.session_id,
            "status": session.status.value,
            "currency": self.mapper.currency,
            "line_items": self.mapper.line_items(cart),
            "totals": self.mapper.totals(cart),
            "fulfillment": self.mapper.fulfillment(methods, cart, session.selected_fulfillment_id),
            "discounts": self.mapper.discounts(cart, session.discount_codes),
            "payment": {"handlers": self._registry.handlers_for_shop(session.shop_id)},
            "messages": self.mapper.messages(cart),
            "links": self._legal_links(),
            "expires_at": session.expires_at.isoformat(),
            "created_at": session.created_at.isoformat(),
            "updated_at": session.updated_at.isoformat(),
        }

        buyer = Buyer(email=session.buyer_email, phone=session.buyer_phone).to_dict()
        if buyer:
            view["buyer"] = buyer
        if session.shipping_address:
            view["shipping_address"] = session.shipping_address.to_dict()
        if session.billing_address:
            view["billing_address"] = session.billing_address.to_dict()
        if session.order_id:
            view["order"] = {"id": session.order_id, "order_number": session.order_number}
        return view

    def _legal_links(self) -> List[Dict[str, str]]:
        base = self._settings.server_url
        return [
            {"type": "terms_of_service", "url": f"{base}/legal/terms"},
            {"type": "privacy_policy", "url": f"{base}/legal/privacy"},
            {"type": "return_policy", "url": f"{base}/legal/returns"},
        ]
