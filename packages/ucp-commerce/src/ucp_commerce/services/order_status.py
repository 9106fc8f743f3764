"""
Order status synchronisation between the commerce backend and platforms.

The backend runs three independent state machines per order (order,
delivery, transaction). ``OrderStatusTranslator`` maps each transition to a
protocol event and status; ``OrderStatusSyncService`` resolves the owning
checkout session and queues the platform webhook.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from ..backend.factory import BackendFactory
from ..models.orders import (
    OrderStateChange,
    OrderStateType,
    OrderSyncResult,
    TrackingInfo,
    UCPOrderStatus,
)
from ..models.webhooks import OrderEvent
from ..stores.sessions import CheckoutSessionStore
from .webhooks import WebhookDeliveryService

logger = logging.getLogger(__name__)

DELIVERY_EVENTS: Dict[str, Tuple[OrderEvent, UCPOrderStatus]] = {
    "shipped": (OrderEvent.SHIPPED, UCPOrderStatus.SHIPPED),
    "shipped_partially": (OrderEvent.SHIPPED, UCPOrderStatus.SHIPPED),
    "delivered": (OrderEvent.DELIVERED, UCPOrderStatus.DELIVERED),
    "returned": (OrderEvent.UPDATED, UCPOrderStatus.RETURNED),
    "returned_partially": (OrderEvent.UPDATED, UCPOrderStatus.RETURNED),
    "cancelled": (OrderEvent.CANCELED, UCPOrderStatus.CANCELED),
}

TRANSACTION_EVENTS: Dict[str, Tuple[OrderEvent, UCPOrderStatus]] = {
    "paid": (OrderEvent.UPDATED, UCPOrderStatus.CONFIRMED),
    "refunded": (OrderEvent.UPDATED, UCPOrderStatus.REFUNDED),
    "refunded_partially": (OrderEvent.UPDATED, UCPOrderStatus.REFUNDED),
    "cancelled": (OrderEvent.CANCELED, UCPOrderStatus.CANCELED),
    "failed": (OrderEvent.CANCELED, UCPOrderStatus.CANCELED),
}

ORDER_EVENTS: Dict[str, Tuple[OrderEvent, UCPOrderStatus]] = {
    "open": (OrderEvent.UPDATED, UCPOrderStatus.CONFIRMED),
    "in_progress": (OrderEvent.UPDATED, UCPOrderStatus.PROCESSING),
    "completed": (OrderEvent.DELIVERED, UCPOrderStatus.DELIVERED),
    "cancelled": (OrderEvent.CANCELED, UCPOrderStatus.CANCELED),
}

# Generic backend state -> protocol status
BACKEND_STATUS: Dict[str, UCPOrderStatus] = {
    "open": UCPOrderStatus.CONFIRMED,
    "in_progress": UCPOrderStatus.PROCESSING,
    "completed": UCPOrderStatus.DELIVERED,
    "cancelled": UCPOrderStatus.CANCELED,
    "shipped": UCPOrderStatus.SHIPPED,
    "delivered": UCPOrderStatus.DELIVERED,
    "paid": UCPOrderStatus.CONFIRMED,
    "refunded": UCPOrderStatus.REFUNDED,
}

# Protocol status -> backend order transition. Shipped and refunded only
# ever originate from the backend's delivery and transaction machines.
BACKEND_ACTIONS: Dict[UCPOrderStatus, Optional[str]] = {
    UCPOrderStatus.PENDING: None,
    UCPOrderStatus.CONFIRMED: "process",
    UCPOrderStatus.PROCESSING: "process",
    UCPOrderStatus.SHIPPED: None,
    UCPOrderStatus.DELIVERED: "complete",
    UCPOrderStatus.CANCELED: "cancel",
    UCPOrderStatus.REFUNDED: None,
    UCPOrderStatus.RETURNED: None,
}

TRACKING_URLS = {
    "dhl": "https://www.dhl.com/en/express/tracking.html?AWB={number}",
    "ups": "https://www.ups.com/track?tracknum={number}",
    "fedex": "https://www.fedex.com/fedextrack/?trknbr={number}",
    "postnl": "https://postnl.nl/tracktrace/?B={number}",
    "dpd": "https://tracking.dpd.de/status/en_US/parcel/{number}",
    "gls": "https://gls-group.eu/track/{number}",
}


class OrderStatusTranslator:
    """Pure mapping between backend transitions and protocol order events."""

    def translate(
        self, state_type: OrderStateType, new_state: str
    ) -> Tuple[Optional[OrderEvent], str]:
        """Event and status for a transition; the event is None when nothing is emitted."""
        if state_type == OrderStateType.DELIVERY:
            table = DELIVERY_EVENTS
        elif state_type == OrderStateType.TRANSACTION:
            table = TRANSACTION_EVENTS
        else:
            mapped = ORDER_EVENTS.get(new_state)
            if mapped is None:
                return OrderEvent.UPDATED, self.backend_state_to_status(new_state).value
            return mapped[0], mapped[1].value

        mapped = table.get(new_state)
        if mapped is None:
            return None, new_state
        return mapped[0], mapped[1].value

    def backend_state_to_status(self, state: str) -> UCPOrderStatus:
        return BACKEND_STATUS.get(state, UCPOrderStatus.PENDING)

    def to_backend_action(self, status: UCPOrderStatus) -> Optional[str]:
        return BACKEND_ACTIONS.get(status)

    def tracking_url(self, carrier: Optional[str], tracking_number: str) -> Optional[str]:
        if not carrier:
            return None
        carrier_lower = carrier.lower()
        for key, template in TRACKING_URLS.items():
            if key in carrier_lower:
                return template.format(number=tracking_number)
        return None

    def build_tracking(self, codes: List[str], carrier: Optional[str]) -> List[TrackingInfo]:
        return [
            TrackingInfo(
                carrier=carrier or "Unknown",
                tracking_number=code,
                tracking_url=self.tracking_url(carrier, code),
            )
            for code in codes
        ]


class OrderStatusSyncService:
    def __init__(
        self,
        sessions: CheckoutSessionStore,
        webhooks: WebhookDeliveryService,
        backends: BackendFactory,
        translator: Optional[OrderStatusTranslator] = None,
    ) -> None:
        self._sessions = sessions
        self._webhooks = webhooks
        self._backends = backends
        self.translator = translator or OrderStatusTranslator()

    async def handle_state_change(self, shop_id: str, change: OrderStateChange) -> OrderSyncResult:
        """Push a backend transition to the platform that placed the order."""
        session = await self._sessions.find_by_order_id(shop_id, change.order_id)
        if session is None:
            logger.debug(f"No UCP session found for order: order_id={change.order_id}, shop={shop_id}")
            return OrderSyncResult(success=False, error="No UCP session for this order")

        event, status = self.translator.translate(change.state_type, change.new_state)
        if event is None:
            logger.debug(
                f"No UCP event for state change: order_id={change.order_id}, "
                f"type={change.state_type.value}, state={change.new_state}"
            )
            return OrderSyncResult(success=True, status=status)

        order: Dict[str, Any] = {
            "id": change.order_id,
            "order_number": change.order_number or session.order_number or "",
            "status": status,
        }
        if change.tracking_codes:
            order["tracking"] = [
                t.to_dict() for t in self.translator.build_tracking(change.tracking_codes, change.carrier)
            ]

        result = await self._webhooks.queue_order_webhook(shop_id, event.value, session.session_id, order)
        logger.info(
            f"Order status synced to platform: order_id={change.order_id}, "
            f"session_id={session.session_id}, event={event.value}, status={status}, "
            f"delivery_id={result.delivery_id}"
        )
        return OrderSyncResult(
            success=result.success,
            event=event.value,
            status=status,
            delivery_id=result.delivery_id or None,
            error=result.error,
        )

    async def handle_order_placed(
        self, shop_id: str, order_id: str, order_number: Optional[str] = None
    ) -> OrderSyncResult:
        """Announce a new order, but only when it was placed through a UCP session."""
        backend = await self._backends.for_shop(shop_id)
        order = await backend.get_order(order_id)
        if order is None or not order.custom_fields.get("ucp_session_id"):
            logger.debug(f"Order not created via UCP: order_id={order_id}, shop={shop_id}")
            return OrderSyncResult(success=True)

        return await self.handle_state_change(
            shop_id,
            OrderStateChange(
                order_id=order_id,
                order_number=order_number or order.order_number,
                previous_state="",
                new_state="open",
                state_type=OrderStateType.ORDER,
            ),
        )

    async def sync_from_platform(self, shop_id: str, order_id: str, status: str) -> OrderSyncResult:
        """Apply a platform-initiated status to the backend order."""
        try:
            target = UCPOrderStatus(status)
        except ValueError:
            return OrderSyncResult(success=False, error=f"Unknown order status {status}")

        action = self.translator.to_backend_action(target)
        if action is None:
            return OrderSyncResult(success=False, error=f"Cannot map status {status} to backend")

        try:
            backend = await self._backends.for_shop(shop_id)
            await backend.transition_order_state(order_id, action)
        except Exception as e:
            logger.error(
                f"Failed to sync order status to backend: order_id={order_id}, "
                f"shop={shop_id}, status={status}, error={e}"
            )
            return OrderSyncResult(success=False, error=str(e))

        logger.info(
            f"Order status synced from platform: order_id={order_id}, shop={shop_id}, "
            f"status={status}, action={action}"
        )
        return OrderSyncResult(success=True, status=target.value)

    async def get_order_status(self, shop_id: str, order_id: str) -> Optional[Dict[str, Any]]:
        try:
            backend = await self._backends.for_shop(shop_id)
            order = await backend.get_order(order_id)
        except Exception as e:
            logger.error(f"Failed to get order status: order_id={order_id}, shop={shop_id}, error={e}")
            return None
        if order is None:
            return None

        tracking: List[TrackingInfo] = []
        for delivery in order.deliveries:
            tracking.extend(self.translator.build_tracking(delivery.tracking_codes, delivery.shipping_method_name))

        result: Dict[str, Any] = {"status": self.translator.backend_state_to_status(order.state or "open").value}
        if tracking:
            result["tracking"] = [t.to_dict() for t in tracking]
        return result
