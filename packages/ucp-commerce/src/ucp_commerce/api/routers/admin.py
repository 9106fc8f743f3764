"""Administrative endpoints for payment handler management.

Every change to a shop's handler configuration invalidates the cached
discovery profile so agents see it on their next lookup.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ...exceptions import HandlerNotFoundError
from ...handlers.registry import HandlerConfiguration
from ..dependencies import ServiceContainer, get_container

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class ShopHandlerEntry(BaseModel):
    handler_id: str
    enabled: bool = True
    config: Dict[str, Any] = Field(default_factory=dict)


class ShopHandlersUpdate(BaseModel):
    handlers: List[ShopHandlerEntry] = Field(default_factory=list)


class HandlerToggle(BaseModel):
    enabled: bool
    config: Optional[Dict[str, Any]] = None


@router.get("/payment-handlers")
async def list_payment_handlers(container: ServiceContainer = Depends(get_container)):
    return {"handlers": container.registry.available_handler_types()}


@router.get("/payment-handlers/{handler_id}")
async def get_payment_handler(handler_id: str, container: ServiceContainer = Depends(get_container)):
    registry = container.registry
    handler = registry.get_handler(handler_id)
    if handler is None:
        raise HandlerNotFoundError(handler_id)

    descriptor = handler.get_handler_config()
    return {
        "handler": {
            "id": handler.id,
            "name": descriptor["name"],
            "version": descriptor.get("version"),
            "description": getattr(handler, "description", ""),
            "configured": handler.is_configured(),
            "config_schema": registry.handler_config_schema(handler.id),
        },
        "config": descriptor.get("config") or {},
    }


@router.post("/payment-handlers/{handler_id}/test")
async def test_payment_handler(handler_id: str, container: ServiceContainer = Depends(get_container)):
    logger.info(f"Admin: testing handler connection: handler_id={handler_id}")
    return await container.registry.test_handler_connection(handler_id)


@router.get("/shops/{shop_id}/payment-handlers")
async def get_shop_payment_handlers(shop_id: str, container: ServiceContainer = Depends(get_container)):
    registry = container.registry
    if registry.has_shop_configuration(shop_id):
        handlers = [entry.to_dict() for entry in registry.get_shop_configuration(shop_id)]
    else:
        # No override: every configured handler is active with its defaults
        handlers = [
            {"handler_id": h["id"], "enabled": h["configured"], "config": {}}
            for h in registry.available_handler_types()
        ]
    return {"shop_id": shop_id, "customized": registry.has_shop_configuration(shop_id), "handlers": handlers}


@router.put("/shops/{shop_id}/payment-handlers")
async def put_shop_payment_handlers(
    shop_id: str,
    body: ShopHandlersUpdate,
    container: ServiceContainer = Depends(get_container),
):
    container.registry.configure_shop_handlers(
        shop_id,
        [HandlerConfiguration(handler_id=h.handler_id, enabled=h.enabled, config=h.config) for h in body.handlers],
    )
    await container.profile.invalidate_cache()
    return {"success": True, "message": "Shop handler configuration updated"}


@router.post("/shops/{shop_id}/payment-handlers/{handler_id}/enable")
async def toggle_shop_payment_handler(
    shop_id: str,
    handler_id: str,
    body: HandlerToggle,
    container: ServiceContainer = Depends(get_container),
):
    registry = container.registry
    if body.enabled:
        registry.enable_handler_for_shop(shop_id, handler_id, body.config)
    elif not registry.disable_handler_for_shop(shop_id, handler_id):
        raise HandlerNotFoundError(handler_id)

    await container.profile.invalidate_cache()
    return {"success": True, "message": "Handler enabled" if body.enabled else "Handler disabled"}
