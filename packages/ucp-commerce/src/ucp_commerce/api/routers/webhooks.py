"""Inbound backend order events and outbound delivery inspection.

Backend events arrive as ``{"source": {"shopId"}, "data": {"payload": [...]}}``
signed with ``shopware-shop-signature``: the hex HMAC-SHA256 of the raw body
under the shop secret.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request

from ...exceptions import ShopNotFoundError, UCPValidationError, WebhookSignatureError
from ...metrics import record_webhook_received
from ...models.orders import OrderStateChange, OrderStateType
from ...models.webhooks import WebhookDeliveryStatus
from ...signing import verify_hmac_signature
from ..dependencies import ServiceContainer, get_container

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "shopware-shop-signature"


async def _verified_event(request: Request, container: ServiceContainer) -> Dict[str, Any]:
    """Parse the body and check the shop signature; returns the event with ``shop_id``."""
    raw = await request.body()
    try:
        event = json.loads(raw)
    except ValueError:
        raise UCPValidationError("Invalid JSON body")
    if not isinstance(event, dict):
        raise UCPValidationError("Invalid event payload")

    shop_id = (event.get("source") or {}).get("shopId")
    if not shop_id:
        raise UCPValidationError("source.shopId is required", field="source.shopId")

    shop = await container.shops.get(shop_id)
    if shop is not None:
        secret = shop.secret_key
    elif container.backends.uses_mock:
        # Mock deployments accept events signed with the app secret
        secret = container.settings.app_secret
    else:
        logger.warning(f"Unknown shop for webhook: shop={shop_id}")
        raise ShopNotFoundError(shop_id)

    if not verify_hmac_signature(secret, raw, request.headers.get(SIGNATURE_HEADER)):
        logger.warning(f"Invalid webhook signature: shop={shop_id}, path={request.url.path}")
        raise WebhookSignatureError()

    record_webhook_received(request.url.path.rsplit("/", 1)[-1], shop_id)
    event["shop_id"] = shop_id
    return event


def _entries(event: Dict[str, Any]) -> List[Dict[str, Any]]:
    payload = (event.get("data") or {}).get("payload") or []
    return [e for e in payload if isinstance(e, dict)]


def _state_name(entry: Dict[str, Any], key: str) -> str:
    return ((entry.get(key) or {}).get("technicalName")) or ""


def _state_change(entry: Dict[str, Any], order_id: str, state_type: OrderStateType) -> OrderStateChange:
    order = entry.get("order") or {}
    return OrderStateChange(
        order_id=order_id,
        order_number=order.get("orderNumber"),
        previous_state=_state_name(entry, "fromStateMachineState"),
        new_state=_state_name(entry, "toStateMachineState"),
        state_type=state_type,
    )


@router.post("/backend/order-placed")
async def order_placed(request: Request, container: ServiceContainer = Depends(get_container)):
    event = await _verified_event(request, container)
    shop_id = event["shop_id"]
    results = []

    for order in _entries(event):
        order_id = order.get("id")
        if not order_id:
            continue
        custom_fields = order.get("customFields")
        if custom_fields is not None and not custom_fields.get("ucp_session_id"):
            continue
        if custom_fields is None:
            result = await container.order_status.handle_order_placed(shop_id, order_id, order.get("orderNumber"))
        else:
            logger.info(f"UCP order placed: order_id={order_id}, session_id={custom_fields['ucp_session_id']}")
            result = await container.order_status.handle_state_change(
                shop_id,
                OrderStateChange(
                    order_id=order_id,
                    order_number=order.get("orderNumber"),
                    previous_state="",
                    new_state="open",
                    state_type=OrderStateType.ORDER,
                ),
            )
        results.append(result.to_dict())

    return {"received": True, "results": results}


@router.post("/backend/order-state-changed")
async def order_state_changed(request: Request, container: ServiceContainer = Depends(get_container)):
    event = await _verified_event(request, container)
    results = []
    for entry in _entries(event):
        order_id = entry.get("entityId") or (entry.get("order") or {}).get("id")
        if not order_id:
            continue
        change = _state_change(entry, order_id, OrderStateType.ORDER)
        results.append((await container.order_status.handle_state_change(event["shop_id"], change)).to_dict())
    return {"received": True, "results": results}


@router.post("/backend/order-delivery-state-changed")
async def order_delivery_state_changed(request: Request, container: ServiceContainer = Depends(get_container)):
    event = await _verified_event(request, container)
    results = []
    for entry in _entries(event):
        order_id = (entry.get("order") or {}).get("id")
        if not order_id:
            continue
        change = _state_change(entry, order_id, OrderStateType.DELIVERY)
        change.tracking_codes = list(entry.get("trackingCodes") or [])
        change.carrier = (entry.get("shippingMethod") or {}).get("name")
        results.append((await container.order_status.handle_state_change(event["shop_id"], change)).to_dict())
    return {"received": True, "results": results}


@router.post("/backend/order-transaction-state-changed")
async def order_transaction_state_changed(request: Request, container: ServiceContainer = Depends(get_container)):
    event = await _verified_event(request, container)
    results = []
    for entry in _entries(event):
        order_id = (entry.get("order") or {}).get("id")
        if not order_id:
            continue
        change = _state_change(entry, order_id, OrderStateType.TRANSACTION)
        results.append((await container.order_status.handle_state_change(event["shop_id"], change)).to_dict())
    return {"received": True, "results": results}


# Outbound delivery inspection

@router.get("/deliveries")
async def list_deliveries(
    shop_id: Optional[str] = None,
    status: Optional[WebhookDeliveryStatus] = None,
    limit: int = Query(default=50, ge=1, le=500),
    container: ServiceContainer = Depends(get_container),
):
    deliveries = await container.webhooks.recent_deliveries(shop_id=shop_id, status=status, limit=limit)
    return {"deliveries": [d.to_dict() for d in deliveries], "count": len(deliveries)}


@router.get("/stats")
async def delivery_stats(
    shop_id: Optional[str] = None,
    container: ServiceContainer = Depends(get_container),
):
    shop = shop_id or container.settings.default_shop_id
    return {"shop_id": shop, "stats": await container.webhooks.get_stats(shop)}


@router.post("/deliveries/{delivery_id}/retry")
async def retry_delivery(delivery_id: str, container: ServiceContainer = Depends(get_container)):
    result = await container.webhooks.retry_delivery(delivery_id)
    return result.to_dict()
