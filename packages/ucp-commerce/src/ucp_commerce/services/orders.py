"""Backend order creation for completed checkouts."""

from __future__ import annotations

import logging
from typing import Optional

from ..backend.client import Order
from ..backend.factory import BackendFactory
from ..models.checkout import CheckoutSession, utcnow

logger = logging.getLogger(__name__)


class OrderService:
    """Turns a paid checkout session's cart into a backend order."""

    def __init__(self, backends: BackendFactory) -> None:
        self._backends = backends

    async def create_order(
        self,
        session: CheckoutSession,
        transaction_id: Optional[str],
        payment_handler_id: Optional[str],
    ) -> Order:
        backend = await self._backends.for_shop(session.shop_id)
        order = await backend.create_order(session.cart_token)

        custom_fields = {
            "ucp_session_id": session.session_id,
            "ucp_platform": session.platform_id or session.platform_profile_url,
            "ucp_payment_handler": payment_handler_id,
            "ucp_transaction_id": transaction_id,
            "ucp_completed_at": utcnow().isoformat(),
        }
        try:
            await backend.update_order_custom_fields(order.id, custom_fields)
        except Exception as e:
            # The order exists; correlation can be repaired from logs
            logger.error(
                f"Failed to attach UCP fields to order: order_id={order.id}, "
                f"session_id={session.session_id}, error={e}"
            )
        else:
            order.custom_fields.update(custom_fields)

        logger.info(
            f"Created order for checkout: session_id={session.session_id}, "
            f"order_id={order.id}, order_number={order.order_number}"
        )
        return order
